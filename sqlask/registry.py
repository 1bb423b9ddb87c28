"""Tenant-scoped catalog of external database connections.

The registry is the only component that decrypts credentials. It also owns
the "is this connection usable" decision: probe failures are recorded on the
record instead of being raised, so a connection stays registered in the
``failed`` state until the tenant retries or edits it.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import asyncpg

from .cache import CacheClient
from .db import PoolManager, build_dsn
from .errors import ConnectionNotFound, ConnectionUnreachable
from .logging_utils import get_logger, sanitize_error
from .models import (
    ConnectionCredentials,
    ConnectionRecord,
    ConnectionStatus,
    ConnectionSummary,
    ProbeResult,
    utcnow,
)
from .store import ConnectionStore
from .vault import CredentialVault

logger = get_logger(__name__)

# Raised by asyncpg/asyncio/socket layers when a host cannot be reached or refuses us.
PROBE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
)


class ConnectionRegistry:
    def __init__(
        self,
        store: ConnectionStore,
        vault: CredentialVault,
        pools: PoolManager,
        cache: Optional[CacheClient] = None,
    ):
        self._store = store
        self._vault = vault
        self._pools = pools
        self._cache = cache

    async def create(
        self,
        tenant_id: str,
        name: str,
        credentials: ConnectionCredentials,
        description: Optional[str] = None,
    ) -> ConnectionSummary:
        record = ConnectionRecord(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            name=name,
            description=description,
            db_type=credentials.db_type,
            credentials=self._vault.encrypt_credentials(credentials),
            status=ConnectionStatus.VALIDATING,
        )
        await self._store.insert(record)
        logger.info("connection_created", connection_id=record.id, tenant_id=tenant_id)
        record, _ = await self._probe_and_record(record, credentials)
        return record.summary()

    async def list(self, tenant_id: str) -> List[ConnectionSummary]:
        records = await self._store.list_for_tenant(tenant_id)
        return [r.summary() for r in records]

    async def get(self, tenant_id: str, connection_id: str) -> ConnectionSummary:
        return (await self.get_record(tenant_id, connection_id)).summary()

    async def get_record(self, tenant_id: str, connection_id: str) -> ConnectionRecord:
        record = await self._store.get(connection_id)
        # A foreign tenant's connection is indistinguishable from a missing one.
        if record is None or record.tenant_id != tenant_id:
            raise ConnectionNotFound(f"connection {connection_id} not found for tenant {tenant_id}")
        return record

    async def update(
        self,
        tenant_id: str,
        connection_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        credentials: Optional[ConnectionCredentials] = None,
    ) -> ConnectionSummary:
        record = await self.get_record(tenant_id, connection_id)
        changes = {"updated_at": utcnow()}
        if name:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if credentials is not None:
            changes.update(
                credentials=self._vault.encrypt_credentials(credentials),
                db_type=credentials.db_type,
                status=ConnectionStatus.VALIDATING,
                schema_refreshed_at=None,
                schema_stale=False,
            )
        record = record.model_copy(update=changes)
        await self._store.save(record)
        if credentials is not None:
            await self._pools.close_pool(connection_id)
            await self._store.clear_snapshot(connection_id)
            await self._evict_snapshot(connection_id)
            record, _ = await self._probe_and_record(record, credentials)
        logger.info("connection_updated", connection_id=connection_id, credentials_changed=credentials is not None)
        return record.summary()

    async def test_connection(self, tenant_id: str, connection_id: str) -> ProbeResult:
        record = await self.get_record(tenant_id, connection_id)
        credentials = self._vault.decrypt_credentials(record.credentials)
        _, result = await self._probe_and_record(record, credentials)
        return result

    async def delete(self, tenant_id: str, connection_id: str) -> None:
        await self.get_record(tenant_id, connection_id)
        await self._pools.close_pool(connection_id)
        await self._store.delete(connection_id)
        await self._evict_snapshot(connection_id)
        logger.info("connection_deleted", connection_id=connection_id, tenant_id=tenant_id)

    async def ensure_usable(self, tenant_id: str, connection_id: str) -> ConnectionRecord:
        record = await self.get_record(tenant_id, connection_id)
        if record.status == ConnectionStatus.FAILED:
            raise ConnectionUnreachable(
                f"connection {connection_id} is in failed state: {record.last_error or 'unknown error'}"
            )
        return record

    @asynccontextmanager
    async def acquire(self, tenant_id: str, connection_id: str) -> AsyncIterator[asyncpg.Connection]:
        """Scoped live handle on the tenant's database, released on every exit path."""
        record = await self.get_record(tenant_id, connection_id)
        credentials = self._vault.decrypt_credentials(record.credentials)
        acquired = False
        try:
            async with self._pools.acquire(connection_id, build_dsn(credentials)) as conn:
                acquired = True
                yield conn
        except PROBE_ERRORS as exc:
            if acquired:
                raise
            message = sanitize_error(str(exc) or type(exc).__name__, credentials.secrets())
            logger.warning("connection_acquire_failed", connection_id=connection_id, error=message)
            raise ConnectionUnreachable(message) from exc

    async def known_secrets(self, tenant_id: str, connection_id: str) -> List[str]:
        """Plaintext secrets of a connection, for scrubbing error text only."""
        record = await self.get_record(tenant_id, connection_id)
        return self._vault.decrypt_credentials(record.credentials).secrets()

    async def close(self) -> None:
        await self._pools.close_all()

    async def _probe_and_record(
        self, record: ConnectionRecord, credentials: ConnectionCredentials
    ) -> tuple[ConnectionRecord, ProbeResult]:
        try:
            latency_ms = await self._pools.probe(build_dsn(credentials))
            result = ProbeResult(success=True, latency_ms=latency_ms)
        except PROBE_ERRORS as exc:
            message = sanitize_error(str(exc) or type(exc).__name__, credentials.secrets())
            result = ProbeResult(success=False, error=message)

        now = utcnow()
        record = record.model_copy(
            update={
                "status": ConnectionStatus.ACTIVE if result.success else ConnectionStatus.FAILED,
                "last_validated_at": now,
                "last_error": result.error,
                "updated_at": now,
            }
        )
        await self._store.save(record)
        if result.success:
            logger.info("connection_probe_succeeded", connection_id=record.id, latency_ms=result.latency_ms)
        else:
            await self._pools.close_pool(record.id)
            logger.warning("connection_probe_failed", connection_id=record.id, error=result.error)
        return record, result

    async def _evict_snapshot(self, connection_id: str) -> None:
        if self._cache is not None:
            await self._cache.delete(schema_cache_key(connection_id))


def schema_cache_key(connection_id: str) -> str:
    return f"schema:{connection_id}"


__all__ = ["ConnectionRegistry", "PROBE_ERRORS", "schema_cache_key"]
