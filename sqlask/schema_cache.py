"""Per-connection schema snapshots.

Reading and discovering are separate calls. ``get_cached`` never talks to the
target database; only ``discover`` does.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections import Counter
from typing import AsyncIterator, Dict, Optional

import asyncpg

from .cache import CacheClient
from .config import SchemaConfig
from .errors import SchemaDiscoveryError
from .logging_utils import get_logger
from .models import SchemaSnapshot, utcnow
from .observability import SCHEMA_DISCOVERIES
from .registry import ConnectionRegistry, schema_cache_key
from .schema_extractor import SchemaExtractor
from .store import ConnectionStore

logger = get_logger(__name__)


class SchemaCache:
    def __init__(
        self,
        cfg: SchemaConfig,
        registry: ConnectionRegistry,
        store: ConnectionStore,
        extractor: SchemaExtractor,
        cache: CacheClient,
    ):
        self._cfg = cfg
        self._registry = registry
        self._store = store
        self._extractor = extractor
        self._cache = cache
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Counter = Counter()

    async def get_cached(self, tenant_id: str, connection_id: str) -> Optional[SchemaSnapshot]:
        record = await self._registry.get_record(tenant_id, connection_id)
        if record.schema_refreshed_at is None or record.schema_stale:
            return None

        key = schema_cache_key(connection_id)
        mirrored = await self._cache.get_json(key)
        snapshot: Optional[SchemaSnapshot] = None
        if mirrored is not None:
            snapshot = SchemaSnapshot.model_validate(mirrored)
            if snapshot.generated_at != record.schema_refreshed_at:
                snapshot = None
        if snapshot is None:
            stored = await self._store.get_snapshot(connection_id)
            if stored is None or stored[1]:
                return None
            snapshot = stored[0]
            await self._cache.set_json(key, _to_json(snapshot))

        if self._is_expired(snapshot):
            logger.info("schema_snapshot_expired", connection_id=connection_id)
            return None
        return snapshot

    async def discover(self, tenant_id: str, connection_id: str) -> SchemaSnapshot:
        async with self._serialized(connection_id):
            async with self._registry.acquire(tenant_id, connection_id) as conn:
                try:
                    snapshot = await self._extractor.extract(conn)
                except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, ValueError) as exc:
                    SCHEMA_DISCOVERIES.labels(status="failed").inc()
                    logger.warning("schema_discovery_failed", connection_id=connection_id, error=str(exc))
                    raise SchemaDiscoveryError(
                        f"schema discovery failed for connection {connection_id}: {type(exc).__name__}"
                    ) from exc
            # Whole-value replacement: the previous snapshot stays visible until this point.
            await self._store.put_snapshot(connection_id, snapshot)
            await self._cache.set_json(schema_cache_key(connection_id), _to_json(snapshot))
        SCHEMA_DISCOVERIES.labels(status="success").inc()
        logger.info("schema_snapshot_replaced", connection_id=connection_id, tables=len(snapshot.tables))
        return snapshot

    async def invalidate(self, tenant_id: str, connection_id: str) -> None:
        await self._registry.get_record(tenant_id, connection_id)
        async with self._serialized(connection_id):
            await self._store.clear_snapshot(connection_id)
            await self._cache.delete(schema_cache_key(connection_id))
        logger.info("schema_snapshot_invalidated", connection_id=connection_id)

    async def mark_stale(self, tenant_id: str, connection_id: str) -> None:
        await self._registry.get_record(tenant_id, connection_id)
        await self._store.mark_snapshot_stale(connection_id)
        await self._cache.delete(schema_cache_key(connection_id))

    @contextlib.asynccontextmanager
    async def _serialized(self, connection_id: str) -> AsyncIterator[None]:
        # One lock per connection with work in flight; dropped once the last holder leaves.
        lock = self._locks.setdefault(connection_id, asyncio.Lock())
        self._holders[connection_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[connection_id] -= 1
            if self._holders[connection_id] <= 0:
                del self._holders[connection_id]
                del self._locks[connection_id]

    def _is_expired(self, snapshot: SchemaSnapshot) -> bool:
        if self._cfg.max_age_s is None:
            return False
        return (utcnow() - snapshot.generated_at).total_seconds() > self._cfg.max_age_s


def _to_json(snapshot: SchemaSnapshot) -> dict:
    return json.loads(snapshot.model_dump_json())


__all__ = ["SchemaCache"]
