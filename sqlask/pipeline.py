from __future__ import annotations

import asyncio
import time
from typing import Optional

from .audit import QueryHistoryEntry, QueryHistoryReporter
from .config import AppConfig, PresentationConfig
from .errors import QueryExecutionError, QueryGenerationError, QuerySafetyViolation, SchemaUnavailableError, SqlAskError
from .executor import ExecutionSandbox
from .logging_utils import get_logger
from .models import (
    ClarifyOutcome,
    ExecutionResult,
    FailedOutcome,
    GeneratedQuery,
    QueryRequest,
    QueryResponse,
    ResponseMetadata,
    SchemaSnapshot,
    SqlValidation,
    SynthesisOutcome,
)
from .observability import REQUEST_COUNTER, record_latency
from .presenter import failure_message, present, to_csv, to_json
from .query_synthesizer import QuerySynthesizer
from .registry import ConnectionRegistry
from .schema_cache import SchemaCache
from .sql_validator import SQLValidator

logger = get_logger(__name__)

SYNTHESIS_TIMEOUT_MESSAGE = "Generating a query took too long. Please try again."
GENERATED_ANSWER = "Here is the SQL for your question. It has not been run."


class QueryPipeline:
    """Question in, presented answer out.

    Failures the tenant has to act on (unknown or unreachable connection,
    failed discovery, unsafe SQL, generator outage) are raised as
    ``SqlAskError`` after being reported to query history. Clarification,
    unparseable generation output and execution failures are answers, and
    come back as a ``QueryResponse``.

    Every request gets one deadline of ``request_timeout_s``. Discovery and
    synthesis spend from it, and execution is given whatever is left.
    """

    def __init__(
        self,
        app_cfg: AppConfig,
        presentation_cfg: PresentationConfig,
        registry: ConnectionRegistry,
        schema_cache: SchemaCache,
        synthesizer: QuerySynthesizer,
        sandbox: ExecutionSandbox,
        reporter: QueryHistoryReporter,
        validator: Optional[SQLValidator] = None,
    ):
        self._app_cfg = app_cfg
        self._presentation_cfg = presentation_cfg
        self._registry = registry
        self._schema_cache = schema_cache
        self._synthesizer = synthesizer
        self._sandbox = sandbox
        self._reporter = reporter
        self._validator = validator or SQLValidator()

    async def handle(self, request: QueryRequest) -> QueryResponse:
        deadline = self._deadline()
        with record_latency("total"):
            outcome = await self._prepare(request, deadline)
            if isinstance(outcome, ClarifyOutcome):
                return self._clarification(request, outcome)
            if isinstance(outcome, FailedOutcome):
                return self._generation_failure(request, outcome)
            return await self._answer(request, outcome.query, deadline, "executed")

    async def generate(self, request: QueryRequest) -> QueryResponse:
        """Dry run: the validated SQL and its explanation, never executed."""
        with record_latency("total"):
            outcome = await self._prepare(request, self._deadline())
        if isinstance(outcome, ClarifyOutcome):
            return self._clarification(request, outcome)
        if isinstance(outcome, FailedOutcome):
            return self._generation_failure(request, outcome)

        query = outcome.query
        REQUEST_COUNTER.labels(status="generated").inc()
        self._report(request, "generated", success=True, sql=query.sql)
        return QueryResponse(
            success=True,
            answer=query.explanation or GENERATED_ANSWER,
            metadata=ResponseMetadata(
                generated_sql=query.sql,
                explanation=query.explanation or None,
                connection_used=request.connection_id,
                warnings=query.warnings,
            ),
        )

    async def execute_sql(
        self,
        tenant_id: str,
        connection_id: str,
        sql: str,
        timeout_s: Optional[float] = None,
        max_rows: Optional[int] = None,
        question: Optional[str] = None,
    ) -> QueryResponse:
        """Run tenant-written SQL through the same gate, bounds and presentation as generated SQL."""
        request = QueryRequest(
            tenant_id=tenant_id,
            connection_id=connection_id,
            question=question or sql,
            timeout_s=timeout_s,
            max_rows=max_rows,
        )
        deadline = self._deadline()
        with record_latency("total"):
            try:
                await self._registry.ensure_usable(tenant_id, connection_id)
                checked = self._validator.ensure_read_only(sql)
            except QuerySafetyViolation as exc:
                self._rejected(request, exc)
                raise
            except SqlAskError as exc:
                self._errored(request, exc)
                raise
            return await self._answer(request, GeneratedQuery(sql=checked, confidence=100), deadline, "executed_sql")

    def validate_sql(self, sql: str) -> SqlValidation:
        try:
            checked = self._validator.ensure_read_only(sql)
        except QuerySafetyViolation as exc:
            return SqlValidation(valid=False, reason=str(exc))
        return SqlValidation(valid=True, sql=checked)

    async def export(self, request: QueryRequest, fmt: str) -> str:
        """Answer a question with the full row set as CSV or JSON instead of prose."""
        if fmt not in {"csv", "json"}:
            raise ValueError(f"unsupported export format {fmt!r}")
        deadline = self._deadline()
        outcome = await self._prepare(request, deadline)
        if isinstance(outcome, ClarifyOutcome):
            self._report(request, "clarify", success=True)
            raise QueryGenerationError("export needs clarification", user_message=outcome.question)
        if isinstance(outcome, FailedOutcome):
            self._report(request, "failed", success=False, error_kind=QueryGenerationError.kind, error=outcome.error)
            raise QueryGenerationError(outcome.error, user_message=outcome.user_message)

        result = await self._execute(request, outcome.query, deadline)
        self._report(
            request,
            "exported",
            success=result.success,
            sql=outcome.query.sql,
            result=result,
            error_kind=result.error_kind,
            error=result.error,
        )
        if not result.success:
            raise QueryExecutionError(result.error or "execution failed", user_message=failure_message(result))
        return to_csv(result) if fmt == "csv" else to_json(result)

    async def _prepare(self, request: QueryRequest, deadline: float) -> SynthesisOutcome:
        try:
            # Fail fast on connections whose last probe failed; never discover against them.
            await self._registry.ensure_usable(request.tenant_id, request.connection_id)
            snapshot = await self._schema_cache.get_cached(request.tenant_id, request.connection_id)
            try:
                return await self._synthesize(request, snapshot, deadline)
            except SchemaUnavailableError:
                logger.info("schema_discover_and_retry", connection_id=request.connection_id)
                with record_latency("discovery"):
                    snapshot = await self._schema_cache.discover(request.tenant_id, request.connection_id)
                return await self._synthesize(request, snapshot, deadline)
        except QuerySafetyViolation as exc:
            self._rejected(request, exc)
            raise
        except SqlAskError as exc:
            self._errored(request, exc)
            raise

    async def _synthesize(
        self, request: QueryRequest, snapshot: Optional[SchemaSnapshot], deadline: float
    ) -> SynthesisOutcome:
        with record_latency("synthesis"):
            try:
                remaining = _remaining(deadline)
                if remaining <= 0:
                    raise asyncio.TimeoutError
                return await asyncio.wait_for(self._synthesizer.synthesize(request, snapshot), timeout=remaining)
            except asyncio.TimeoutError:
                logger.warning("synthesis_timeout", connection_id=request.connection_id)
                return FailedOutcome(error="query synthesis timed out", user_message=SYNTHESIS_TIMEOUT_MESSAGE)

    async def _answer(self, request: QueryRequest, query: GeneratedQuery, deadline: float, label: str) -> QueryResponse:
        result = await self._execute(request, query, deadline)
        with record_latency("presentation"):
            answer, table = present(result, request.question, self._presentation_cfg)

        status = "success" if result.success else "execution_failed"
        REQUEST_COUNTER.labels(status=status).inc()
        self._report(
            request,
            label,
            success=result.success,
            sql=query.sql,
            result=result,
            error_kind=result.error_kind,
            error=result.error,
        )
        return QueryResponse(
            success=result.success,
            answer=answer,
            table_view=table,
            error_kind=result.error_kind,
            metadata=ResponseMetadata(
                generated_sql=query.sql,
                explanation=query.explanation or None,
                execution_time_ms=result.execution_time_ms,
                row_count=result.row_count if result.success else None,
                connection_used=request.connection_id,
                limited=result.limited,
                warnings=query.warnings,
            ),
        )

    async def _execute(self, request: QueryRequest, query: GeneratedQuery, deadline: float) -> ExecutionResult:
        with record_latency("execution"):
            return await self._sandbox.execute(
                request.tenant_id,
                request.connection_id,
                query.sql,
                timeout_s=request.timeout_s,
                max_rows=request.max_rows,
                budget_s=_remaining(deadline),
            )

    def _clarification(self, request: QueryRequest, outcome: ClarifyOutcome) -> QueryResponse:
        REQUEST_COUNTER.labels(status="clarify").inc()
        self._report(request, "clarify", success=True)
        return QueryResponse(
            success=True,
            answer=outcome.question,
            needs_clarification=True,
            clarification_question=outcome.question,
            metadata=ResponseMetadata(
                explanation=outcome.query.explanation or None,
                connection_used=request.connection_id,
                warnings=outcome.query.warnings,
            ),
        )

    def _generation_failure(self, request: QueryRequest, outcome: FailedOutcome) -> QueryResponse:
        REQUEST_COUNTER.labels(status="failed").inc()
        self._report(request, "failed", success=False, error_kind=QueryGenerationError.kind, error=outcome.error)
        return QueryResponse(
            success=False,
            answer=outcome.user_message,
            error_kind=QueryGenerationError.kind,
            metadata=ResponseMetadata(connection_used=request.connection_id),
        )

    def _rejected(self, request: QueryRequest, exc: QuerySafetyViolation) -> None:
        logger.error(
            "query_safety_violation",
            tenant_id=request.tenant_id,
            connection_id=request.connection_id,
            question=request.question,
            reason=str(exc),
        )
        REQUEST_COUNTER.labels(status="rejected").inc()
        self._report(request, "rejected", success=False, error_kind=exc.kind, error=str(exc))

    def _errored(self, request: QueryRequest, exc: SqlAskError) -> None:
        REQUEST_COUNTER.labels(status="error").inc()
        self._report(request, "error", success=False, error_kind=exc.kind, error=str(exc))

    def _deadline(self) -> float:
        return time.monotonic() + self._app_cfg.request_timeout_s

    def _report(
        self,
        request: QueryRequest,
        outcome: str,
        success: bool,
        sql: Optional[str] = None,
        result: Optional[ExecutionResult] = None,
        error_kind: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self._reporter.record(
            QueryHistoryEntry(
                tenant_id=request.tenant_id,
                connection_id=request.connection_id,
                question=request.question,
                generated_sql=sql,
                success=success,
                outcome=outcome,
                row_count=result.row_count if result is not None and result.success else None,
                execution_time_ms=result.execution_time_ms if result is not None else None,
                error_kind=error_kind,
                error=error,
            )
        )


def _remaining(deadline: float) -> float:
    return deadline - time.monotonic()


__all__ = ["GENERATED_ANSWER", "QueryPipeline", "SYNTHESIS_TIMEOUT_MESSAGE"]
