from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional, Tuple

import asyncpg

from .config import ExecutionConfig
from .errors import ConnectionUnreachable, CredentialIntegrityError
from .logging_utils import get_logger, sanitize_error
from .models import ColumnMeta, ExecutionResult
from .registry import ConnectionRegistry
from .values import Cell, to_cell

logger = get_logger(__name__)

_CONNECTION_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    ConnectionError,
    OSError,
)


class ExecutionSandbox:
    """Runs an already-validated SELECT against a tenant database under bounds.

    Each execution holds one pooled connection inside a read-only transaction
    with a server-side statement timeout, and reads at most ``max_rows`` rows
    through a cursor. Failures come back as an unsuccessful ``ExecutionResult``
    rather than an exception.
    """

    def __init__(self, registry: ConnectionRegistry, cfg: ExecutionConfig):
        self._registry = registry
        self._cfg = cfg

    async def execute(
        self,
        tenant_id: str,
        connection_id: str,
        sql: str,
        timeout_s: Optional[float] = None,
        max_rows: Optional[int] = None,
        budget_s: Optional[float] = None,
    ) -> ExecutionResult:
        """``budget_s`` is what is left of the caller's own deadline; it can only shorten the timeout."""
        timeout = min(timeout_s or self._cfg.default_timeout_s, self._cfg.max_timeout_s)
        if budget_s is not None:
            timeout = min(timeout, round(budget_s, 3))
        cap = max_rows or self._cfg.default_max_rows
        start = time.perf_counter()
        if timeout <= 0:
            logger.warning("sql_execution_budget_exhausted", connection_id=connection_id)
            return self._failure(start, "The request ran out of time before the query could run.", "timeout")
        try:
            columns, rows = await asyncio.wait_for(
                self._run(tenant_id, connection_id, sql, timeout, cap), timeout=timeout
            )
        except (asyncio.TimeoutError, asyncpg.QueryCanceledError):
            logger.warning("sql_execution_timeout", connection_id=connection_id, timeout_s=timeout)
            return self._failure(start, f"The query exceeded the {timeout:g} second time limit.", "timeout")
        except ConnectionUnreachable as exc:
            return self._failure(start, str(exc), "connection")
        except _CONNECTION_ERRORS as exc:
            message = await self._scrub(tenant_id, connection_id, exc)
            logger.warning("sql_execution_connection_lost", connection_id=connection_id, error=message)
            return self._failure(start, message, "connection")
        except asyncpg.PostgresError as exc:
            message = await self._scrub(tenant_id, connection_id, exc)
            logger.warning("sql_execution_failed", connection_id=connection_id, error=message)
            return self._failure(start, message, "database")

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        limited = len(rows) == cap
        logger.info(
            "sql_executed",
            connection_id=connection_id,
            rows=len(rows),
            limited=limited,
            execution_time_ms=elapsed_ms,
        )
        return ExecutionResult(
            success=True,
            rows=rows,
            columns=columns,
            row_count=len(rows),
            execution_time_ms=elapsed_ms,
            limited=limited,
        )

    async def _run(
        self, tenant_id: str, connection_id: str, sql: str, timeout: float, cap: int
    ) -> Tuple[List[ColumnMeta], List[Dict[str, Cell]]]:
        async with self._registry.acquire(tenant_id, connection_id) as conn:
            async with conn.transaction(readonly=True):
                await conn.execute(f"SET LOCAL statement_timeout = {max(int(timeout * 1000), 1)}")
                statement = await conn.prepare(sql)
                columns = [ColumnMeta(name=a.name, source_type=a.type.name) for a in statement.get_attributes()]
                cursor = await statement.cursor()
                records = await cursor.fetch(cap)
        rows = [{key: to_cell(value) for key, value in record.items()} for record in records]
        return columns, rows

    async def _scrub(self, tenant_id: str, connection_id: str, exc: BaseException) -> str:
        try:
            secrets = await self._registry.known_secrets(tenant_id, connection_id)
        except CredentialIntegrityError:
            secrets = []
        return sanitize_error(str(exc) or type(exc).__name__, secrets)

    def _failure(self, start: float, message: str, kind: str) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            execution_time_ms=int((time.perf_counter() - start) * 1000),
            error=message,
            error_kind=kind,
        )


__all__ = ["ExecutionSandbox"]
