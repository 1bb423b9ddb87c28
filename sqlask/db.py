from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict
from urllib.parse import quote

import asyncpg

from .config import TargetPoolConfig
from .logging_utils import get_logger
from .models import ConnectionCredentials

logger = get_logger(__name__)


def build_dsn(creds: ConnectionCredentials) -> str:
    if creds.connection_string:
        return creds.connection_string
    auth = ""
    if creds.username:
        auth = quote(creds.username, safe="")
        if creds.password:
            auth += ":" + quote(creds.password, safe="")
        auth += "@"
    return f"postgresql://{auth}{creds.host}:{creds.port or 5432}/{quote(creds.database or '', safe='')}"


class PoolManager:
    """Per-connection asyncpg pools for tenant target databases."""

    def __init__(self, cfg: TargetPoolConfig):
        self._cfg = cfg
        self._pools: Dict[str, asyncpg.pool.Pool] = {}
        self._lock = asyncio.Lock()

    async def probe(self, dsn: str) -> int:
        """Open and immediately close one connection. Returns latency in ms."""
        start = time.perf_counter()
        conn = await asyncpg.connect(dsn=dsn, timeout=self._cfg.connect_timeout_s)
        try:
            await conn.fetchval("SELECT 1", timeout=self._cfg.connect_timeout_s)
        finally:
            await conn.close()
        return int((time.perf_counter() - start) * 1000)

    async def _pool_for(self, connection_id: str, dsn: str) -> asyncpg.pool.Pool:
        async with self._lock:
            pool = self._pools.get(connection_id)
            if pool is None:
                pool = await asyncpg.create_pool(
                    dsn=dsn,
                    min_size=self._cfg.min_pool_size,
                    max_size=self._cfg.max_pool_size,
                    timeout=self._cfg.connect_timeout_s,
                    max_inactive_connection_lifetime=self._cfg.idle_lifetime_s,
                )
                self._pools[connection_id] = pool
                logger.info("target_pool_created", connection_id=connection_id)
            return pool

    @asynccontextmanager
    async def acquire(self, connection_id: str, dsn: str) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._pool_for(connection_id, dsn)
        conn = await pool.acquire(timeout=self._cfg.connect_timeout_s)
        try:
            yield conn
        finally:
            await pool.release(conn)

    async def close_pool(self, connection_id: str) -> None:
        async with self._lock:
            pool = self._pools.pop(connection_id, None)
        if pool is not None:
            await pool.close()
            logger.info("target_pool_closed", connection_id=connection_id)

    async def close_all(self) -> None:
        async with self._lock:
            pools = list(self._pools.items())
            self._pools.clear()
        for connection_id, pool in pools:
            try:
                await pool.close()
            except (OSError, asyncpg.PostgresError) as exc:
                logger.warning("target_pool_close_failed", connection_id=connection_id, error=str(exc))


__all__ = ["PoolManager", "build_dsn"]
