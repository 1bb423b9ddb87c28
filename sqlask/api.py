from __future__ import annotations

import os
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, ValidationError

from .audit import QueryHistoryReporter
from .cache import CacheClient
from .config import Settings, get_settings
from .db import PoolManager
from .errors import SqlAskError
from .executor import ExecutionSandbox
from .llm_client import LLMClient, build_llm_client
from .logging_utils import configure_logging, get_logger
from .models import (
    ConnectionCredentials,
    ConnectionSummary,
    HistoryTurn,
    ProbeResult,
    QueryRequest,
    QueryResponse,
    SchemaSnapshot,
    SqlValidation,
)
from .observability import init_metrics_server
from .pipeline import QueryPipeline
from .prompts import PromptResources
from .query_synthesizer import QuerySynthesizer
from .registry import ConnectionRegistry
from .schema_cache import SchemaCache
from .schema_extractor import SchemaExtractor
from .schema_ranker import SchemaRanker
from .sql_validator import SQLValidator
from .store import ConnectionStore, build_store
from .vault import CredentialVault, vault_from_env

logger = get_logger(__name__)

STATUS_BY_KIND = {
    "connection_not_found": 404,
    "connection_unreachable": 503,
    "schema_unavailable": 409,
    "schema_discovery": 502,
    "generation": 422,
    "safety_violation": 400,
    "execution": 502,
    "llm_unavailable": 503,
    "credential_integrity": 500,
    "config": 500,
}

EXPORT_MEDIA_TYPES = {"csv": "text/csv", "json": "application/json"}


class CreateConnectionBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    credentials: ConnectionCredentials


class UpdateConnectionBody(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    credentials: Optional[ConnectionCredentials] = None


class QueryBody(BaseModel):
    connection_id: str
    question: str
    history: List[HistoryTurn] = Field(default_factory=list)
    timeout_s: Optional[float] = None
    max_rows: Optional[int] = None


class ExecuteSqlBody(BaseModel):
    connection_id: str
    sql: str = Field(..., min_length=1)
    question: Optional[str] = None
    timeout_s: Optional[float] = None
    max_rows: Optional[int] = None


class ValidateSqlBody(BaseModel):
    sql: str


async def tenant_id(x_tenant_id: str = Header(...)) -> str:
    return x_tenant_id


def create_app(
    settings: Settings | None = None,
    *,
    llm: LLMClient | None = None,
    vault: CredentialVault | None = None,
    pools: PoolManager | None = None,
    store: ConnectionStore | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.app.log_level)
    init_metrics_server(settings.observability)

    app = FastAPI(title="sqlask", version="0.1.0")

    store = store or build_store(settings.store)
    cache = CacheClient(settings.redis)
    vault = vault or vault_from_env()
    pools = pools or PoolManager(settings.targets)
    llm_client = llm or build_llm_client(settings.llm, os.environ.get("LLM_API_KEY"))

    registry = ConnectionRegistry(store, vault, pools, cache)
    validator = SQLValidator()
    schema_cache = SchemaCache(settings.schema_cache, registry, store, SchemaExtractor(settings.schema_cache), cache)
    synthesizer = QuerySynthesizer(
        settings.synthesis,
        llm_client,
        PromptResources(settings.synthesis),
        validator,
        SchemaRanker(settings.schema_cache),
        settings.schema_cache,
    )
    pipeline = QueryPipeline(
        settings.app,
        settings.presentation,
        registry,
        schema_cache,
        synthesizer,
        ExecutionSandbox(registry, settings.execution),
        QueryHistoryReporter(settings.observability),
        validator,
    )

    @app.on_event("startup")
    async def _startup() -> None:
        await store.connect()
        await cache.connect()
        logger.info("app_started", store=settings.store.backend)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await registry.close()
        await store.close()
        await cache.close()
        await llm_client.aclose()
        logger.info("app_shutdown")

    @app.exception_handler(SqlAskError)
    async def _sqlask_error(_: Request, exc: SqlAskError) -> JSONResponse:
        status = STATUS_BY_KIND.get(exc.kind, 500)
        if status >= 500:
            logger.error("request_failed", kind=exc.kind, error=str(exc))
        return JSONResponse(status_code=status, content={"error": exc.kind, "detail": exc.user_message})

    @app.exception_handler(ValidationError)
    async def _validation_error(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"error": "invalid_request", "detail": str(exc)})

    @app.post("/connections", response_model=ConnectionSummary, status_code=201)
    async def create_connection(body: CreateConnectionBody, tenant: str = Depends(tenant_id)) -> ConnectionSummary:
        return await registry.create(tenant, body.name, body.credentials, body.description)

    @app.get("/connections", response_model=List[ConnectionSummary])
    async def list_connections(tenant: str = Depends(tenant_id)) -> List[ConnectionSummary]:
        return await registry.list(tenant)

    @app.get("/connections/{connection_id}", response_model=ConnectionSummary)
    async def get_connection(connection_id: str, tenant: str = Depends(tenant_id)) -> ConnectionSummary:
        return await registry.get(tenant, connection_id)

    @app.patch("/connections/{connection_id}", response_model=ConnectionSummary)
    async def update_connection(
        connection_id: str, body: UpdateConnectionBody, tenant: str = Depends(tenant_id)
    ) -> ConnectionSummary:
        return await registry.update(tenant, connection_id, body.name, body.description, body.credentials)

    @app.delete("/connections/{connection_id}", status_code=204)
    async def delete_connection(connection_id: str, tenant: str = Depends(tenant_id)) -> Response:
        await registry.delete(tenant, connection_id)
        return Response(status_code=204)

    @app.post("/connections/{connection_id}/test", response_model=ProbeResult)
    async def test_connection(connection_id: str, tenant: str = Depends(tenant_id)) -> ProbeResult:
        return await registry.test_connection(tenant, connection_id)

    @app.post("/connections/{connection_id}/schema", response_model=SchemaSnapshot)
    async def discover_schema(connection_id: str, tenant: str = Depends(tenant_id)) -> SchemaSnapshot:
        await registry.ensure_usable(tenant, connection_id)
        return await schema_cache.discover(tenant, connection_id)

    @app.delete("/connections/{connection_id}/schema", status_code=204)
    async def invalidate_schema(connection_id: str, tenant: str = Depends(tenant_id)) -> Response:
        await schema_cache.invalidate(tenant, connection_id)
        return Response(status_code=204)

    @app.post("/query", response_model=QueryResponse)
    async def run_query(body: QueryBody, tenant: str = Depends(tenant_id)) -> QueryResponse:
        return await pipeline.handle(QueryRequest(tenant_id=tenant, **body.model_dump()))

    @app.post("/query/generate", response_model=QueryResponse)
    async def generate_query(body: QueryBody, tenant: str = Depends(tenant_id)) -> QueryResponse:
        return await pipeline.generate(QueryRequest(tenant_id=tenant, **body.model_dump()))

    @app.post("/query/execute-sql", response_model=QueryResponse)
    async def execute_sql(body: ExecuteSqlBody, tenant: str = Depends(tenant_id)) -> QueryResponse:
        return await pipeline.execute_sql(tenant, **body.model_dump())

    @app.post("/query/validate", response_model=SqlValidation)
    async def validate_sql(body: ValidateSqlBody, tenant: str = Depends(tenant_id)) -> SqlValidation:
        return pipeline.validate_sql(body.sql)

    @app.post("/query/export")
    async def export_query(
        body: QueryBody,
        fmt: str = Query("csv", alias="format", pattern="^(csv|json)$"),
        tenant: str = Depends(tenant_id),
    ) -> PlainTextResponse:
        payload = await pipeline.export(QueryRequest(tenant_id=tenant, **body.model_dump()), fmt)
        return PlainTextResponse(payload, media_type=EXPORT_MEDIA_TYPES[fmt])

    app.state.pipeline = pipeline
    app.state.registry = registry
    return app


__all__ = ["STATUS_BY_KIND", "create_app"]
