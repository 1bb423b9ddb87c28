from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

from redis import asyncio as redis_async
from redis.exceptions import RedisError

from .config import RedisConfig
from .logging_utils import get_logger

logger = get_logger(__name__)


class CacheClient:
    """Async Redis mirror for schema snapshots, with an in-process fallback.

    The mirror only ever holds whole JSON documents written with a single SET,
    so a reader gets either the previous snapshot or the new one.
    """

    def __init__(self, cfg: RedisConfig):
        self._cfg = cfg
        self._redis: Optional[redis_async.Redis] = None
        self._lock = asyncio.Lock()
        self._fallback: Dict[str, Any] = {}
        self._unavailable = not cfg.enabled

    async def connect(self) -> None:
        if self._unavailable:
            return
        async with self._lock:
            if self._redis is None:
                try:
                    self._redis = redis_async.from_url(
                        self._cfg.url,
                        encoding="utf-8",
                        decode_responses=True,
                    )
                except RedisError as exc:
                    logger.warning("redis_unavailable", error=str(exc))
                    self._unavailable = True

    async def close(self) -> None:
        async with self._lock:
            if self._redis is not None:
                await self._redis.close()
                self._redis = None

    async def get_json(self, key: str) -> Optional[Any]:
        if self._unavailable:
            return self._fallback.get(key)
        try:
            redis = await self._ensure()
            payload = await redis.get(key)
        except RedisError as exc:
            self._degrade(exc)
            return self._fallback.get(key)
        if payload is None:
            return None
        return json.loads(payload)

    async def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl_seconds = ttl_seconds or self._cfg.schema_cache_ttl_s
        if self._unavailable:
            self._fallback[key] = value
            return
        try:
            redis = await self._ensure()
            await redis.set(key, json.dumps(value), ex=ttl_seconds)
        except RedisError as exc:
            self._degrade(exc)
            self._fallback[key] = value

    async def delete(self, key: str) -> None:
        self._fallback.pop(key, None)
        if self._unavailable:
            return
        try:
            redis = await self._ensure()
            await redis.delete(key)
        except RedisError as exc:
            self._degrade(exc)

    def _degrade(self, exc: Exception) -> None:
        if not self._unavailable:
            logger.warning("redis_degraded_to_memory", error=str(exc))
        # Anything mirrored before the outage is no longer trustworthy.
        self._fallback.clear()
        self._unavailable = True

    async def _ensure(self) -> redis_async.Redis:
        if self._redis is None:
            await self.connect()
        if self._redis is None:
            raise RedisError("redis client could not be created")
        return self._redis


__all__ = ["CacheClient"]
