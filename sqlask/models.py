from __future__ import annotations

import datetime as dt
import enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .values import Cell


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ConnectionStatus(str, enum.Enum):
    VALIDATING = "validating"
    ACTIVE = "active"
    FAILED = "failed"


class ConnectionCredentials(BaseModel):
    """Plaintext credentials as submitted by the tenant. Never persisted."""

    db_type: Literal["postgresql"] = "postgresql"
    host: Optional[str] = None
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    connection_string: Optional[str] = None

    @model_validator(mode="after")
    def exactly_one_representation(self) -> "ConnectionCredentials":
        has_string = bool(self.connection_string)
        has_fields = any((self.host, self.database, self.username, self.password))
        if has_string and has_fields:
            raise ValueError("provide either a connection string or individual fields, not both")
        if not has_string and not (self.host and self.database):
            raise ValueError("host and database are required when no connection string is given")
        return self

    def secrets(self) -> List[str]:
        return [s for s in (self.password, self.connection_string, self.host, self.username, self.database) if s]

    def __repr__(self) -> str:
        target = "connection_string" if self.connection_string else f"{self.host}:{self.port or 5432}/{self.database}"
        return f"ConnectionCredentials({self.db_type}, {target})"

    __str__ = __repr__


class EncryptedCredentials(BaseModel):
    host_encrypted: Optional[str] = None
    port_encrypted: Optional[str] = None
    database_encrypted: Optional[str] = None
    username_encrypted: Optional[str] = None
    password_encrypted: Optional[str] = None
    connection_string_encrypted: Optional[str] = None


class ColumnInfo(BaseModel):
    name: str
    data_type: str
    nullable: bool = True
    is_primary_key: bool = False

    model_config = ConfigDict(frozen=True)


class TableInfo(BaseModel):
    schema_name: str = "public"
    name: str
    columns: List[ColumnInfo] = Field(default_factory=list)
    row_estimate: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.name}"


class ForeignKey(BaseModel):
    from_table: str
    from_column: str
    to_table: str
    to_column: str

    model_config = ConfigDict(frozen=True)


class SchemaSnapshot(BaseModel):
    tables: List[TableInfo] = Field(default_factory=list)
    foreign_keys: List[ForeignKey] = Field(default_factory=list)
    generated_at: dt.datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    def table_names(self) -> List[str]:
        return [t.name for t in self.tables]

    def find_table(self, name: str) -> Optional[TableInfo]:
        lowered = name.lower()
        for table in self.tables:
            if table.name.lower() == lowered or table.qualified_name.lower() == lowered:
                return table
        return None


class ConnectionRecord(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    db_type: str = "postgresql"
    credentials: EncryptedCredentials
    status: ConnectionStatus = ConnectionStatus.VALIDATING
    last_validated_at: Optional[dt.datetime] = None
    last_error: Optional[str] = None
    schema_refreshed_at: Optional[dt.datetime] = None
    schema_stale: bool = False
    created_at: dt.datetime = Field(default_factory=utcnow)
    updated_at: dt.datetime = Field(default_factory=utcnow)

    def summary(self) -> "ConnectionSummary":
        return ConnectionSummary(
            id=self.id,
            tenant_id=self.tenant_id,
            name=self.name,
            description=self.description,
            db_type=self.db_type,
            status=self.status,
            last_validated_at=self.last_validated_at,
            last_error=self.last_error,
            has_schema=self.schema_refreshed_at is not None and not self.schema_stale,
            schema_refreshed_at=self.schema_refreshed_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class ConnectionSummary(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    db_type: str
    status: ConnectionStatus
    last_validated_at: Optional[dt.datetime] = None
    last_error: Optional[str] = None
    has_schema: bool = False
    schema_refreshed_at: Optional[dt.datetime] = None
    created_at: dt.datetime
    updated_at: dt.datetime


class ProbeResult(BaseModel):
    success: bool
    error: Optional[str] = None
    latency_ms: int = 0


class HistoryTurn(BaseModel):
    question: str
    sql: str = ""
    result_summary: Optional[str] = None


class QueryRequest(BaseModel):
    tenant_id: str = Field(..., min_length=1)
    connection_id: str = Field(..., min_length=1)
    question: str = Field(..., min_length=1)
    history: List[HistoryTurn] = Field(default_factory=list)
    timeout_s: Optional[float] = Field(default=None, gt=0)
    max_rows: Optional[int] = Field(default=None, ge=1)

    @field_validator("question")
    @classmethod
    def strip_question(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("question must not be blank")
        return v


class GeneratedQuery(BaseModel):
    sql: str = ""
    explanation: str = ""
    confidence: int = Field(default=0, ge=0, le=100)
    warnings: List[str] = Field(default_factory=list)
    needs_clarification: bool = False
    clarification_question: Optional[str] = None
    referenced_tables: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def clarification_has_no_sql(self) -> "GeneratedQuery":
        if self.needs_clarification and self.sql:
            raise ValueError("a query that needs clarification must not carry SQL")
        return self


class QueryOutcome(BaseModel):
    kind: Literal["query"] = "query"
    query: GeneratedQuery


class ClarifyOutcome(BaseModel):
    kind: Literal["clarify"] = "clarify"
    query: GeneratedQuery

    @property
    def question(self) -> str:
        return self.query.clarification_question or ""


class FailedOutcome(BaseModel):
    kind: Literal["failed"] = "failed"
    error: str
    user_message: str


SynthesisOutcome = Union[QueryOutcome, ClarifyOutcome, FailedOutcome]


class ColumnMeta(BaseModel):
    name: str
    source_type: str = "unknown"


class ExecutionResult(BaseModel):
    success: bool
    rows: Optional[List[Dict[str, Cell]]] = None
    columns: List[ColumnMeta] = Field(default_factory=list)
    row_count: int = 0
    execution_time_ms: int = 0
    limited: bool = False
    error: Optional[str] = None
    error_kind: Optional[Literal["timeout", "connection", "database"]] = None

    @model_validator(mode="after")
    def rows_only_on_success(self) -> "ExecutionResult":
        if not self.success and self.rows is not None:
            raise ValueError("rows must be absent when execution failed")
        return self


class ResponseMetadata(BaseModel):
    generated_sql: Optional[str] = None
    explanation: Optional[str] = None
    execution_time_ms: Optional[int] = None
    row_count: Optional[int] = None
    connection_used: Optional[str] = None
    limited: bool = False
    warnings: List[str] = Field(default_factory=list)


class QueryResponse(BaseModel):
    success: bool
    answer: str
    table_view: Optional[str] = None
    needs_clarification: bool = False
    clarification_question: Optional[str] = None
    error_kind: Optional[str] = None
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)


class SqlValidation(BaseModel):
    valid: bool
    sql: Optional[str] = None
    reason: Optional[str] = None


__all__ = [
    "ClarifyOutcome",
    "ColumnInfo",
    "ColumnMeta",
    "ConnectionCredentials",
    "ConnectionRecord",
    "ConnectionStatus",
    "ConnectionSummary",
    "EncryptedCredentials",
    "ExecutionResult",
    "FailedOutcome",
    "ForeignKey",
    "GeneratedQuery",
    "HistoryTurn",
    "ProbeResult",
    "QueryOutcome",
    "QueryRequest",
    "QueryResponse",
    "ResponseMetadata",
    "SchemaSnapshot",
    "SqlValidation",
    "SynthesisOutcome",
    "TableInfo",
    "utcnow",
]
