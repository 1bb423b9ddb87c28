from __future__ import annotations

import abc
import asyncio
import json
from typing import Dict, List, Optional, Tuple

import asyncpg

from .config import StoreConfig
from .logging_utils import get_logger
from .models import ConnectionRecord, ConnectionStatus, EncryptedCredentials, SchemaSnapshot

logger = get_logger(__name__)


_DDL = """
CREATE TABLE IF NOT EXISTS database_connections (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    db_type TEXT NOT NULL DEFAULT 'postgresql',
    host_encrypted TEXT,
    port_encrypted TEXT,
    database_encrypted TEXT,
    username_encrypted TEXT,
    password_encrypted TEXT,
    connection_string_encrypted TEXT,
    status TEXT NOT NULL CHECK (status IN ('validating', 'active', 'failed')),
    last_validated_at TIMESTAMPTZ,
    last_error TEXT,
    schema_snapshot JSONB,
    schema_refreshed_at TIMESTAMPTZ,
    schema_stale BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    CONSTRAINT one_credential_form CHECK (
        (connection_string_encrypted IS NULL) <> (database_encrypted IS NULL)
    )
);
CREATE INDEX IF NOT EXISTS ix_database_connections_tenant ON database_connections (tenant_id);
"""

# schema_snapshot is read only by get_snapshot; record reads never load it.
_RECORD_COLUMNS = (
    "id, tenant_id, name, description, db_type, host_encrypted, port_encrypted, "
    "database_encrypted, username_encrypted, password_encrypted, connection_string_encrypted, "
    "status, last_validated_at, last_error, schema_refreshed_at, schema_stale, created_at, updated_at"
)

_UPSERT = """
INSERT INTO database_connections (
    id, tenant_id, name, description, db_type, host_encrypted, port_encrypted,
    database_encrypted, username_encrypted, password_encrypted, connection_string_encrypted,
    status, last_validated_at, last_error, created_at, updated_at
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
ON CONFLICT (id) DO UPDATE SET
    name = EXCLUDED.name,
    description = EXCLUDED.description,
    db_type = EXCLUDED.db_type,
    host_encrypted = EXCLUDED.host_encrypted,
    port_encrypted = EXCLUDED.port_encrypted,
    database_encrypted = EXCLUDED.database_encrypted,
    username_encrypted = EXCLUDED.username_encrypted,
    password_encrypted = EXCLUDED.password_encrypted,
    connection_string_encrypted = EXCLUDED.connection_string_encrypted,
    status = EXCLUDED.status,
    last_validated_at = EXCLUDED.last_validated_at,
    last_error = EXCLUDED.last_error,
    updated_at = EXCLUDED.updated_at
"""

_PUT_SNAPSHOT = """
UPDATE database_connections
SET schema_snapshot = $2::jsonb, schema_refreshed_at = $3, schema_stale = FALSE
WHERE id = $1
"""

_CLEAR_SNAPSHOT = """
UPDATE database_connections
SET schema_snapshot = NULL, schema_refreshed_at = NULL, schema_stale = FALSE
WHERE id = $1
"""


class ConnectionStore(abc.ABC):
    """Durable catalog of connection records and their schema snapshots.

    ``save`` replaces the whole record (credentials, status, timestamps) and
    never touches the snapshot. Snapshots are written by ``put_snapshot`` as a
    single value, so readers see either the previous snapshot or the new one.
    """

    @abc.abstractmethod
    async def insert(self, record: ConnectionRecord) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    async def list_for_tenant(self, tenant_id: str) -> List[ConnectionRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    async def save(self, record: ConnectionRecord) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, connection_id: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_snapshot(self, connection_id: str) -> Optional[Tuple[SchemaSnapshot, bool]]:
        """Return ``(snapshot, stale)`` or None when never discovered."""
        raise NotImplementedError

    @abc.abstractmethod
    async def put_snapshot(self, connection_id: str, snapshot: SchemaSnapshot) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def clear_snapshot(self, connection_id: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def mark_snapshot_stale(self, connection_id: str) -> None:
        raise NotImplementedError

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None


class InMemoryConnectionStore(ConnectionStore):
    def __init__(self) -> None:
        self._records: Dict[str, ConnectionRecord] = {}
        self._snapshots: Dict[str, Tuple[SchemaSnapshot, bool]] = {}
        self._lock = asyncio.Lock()

    async def insert(self, record: ConnectionRecord) -> None:
        async with self._lock:
            if record.id in self._records:
                raise KeyError(f"connection {record.id} already exists")
            self._records[record.id] = record

    async def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        record = self._records.get(connection_id)
        if record is None:
            return None
        return self._with_snapshot_state(record)

    async def list_for_tenant(self, tenant_id: str) -> List[ConnectionRecord]:
        records = [self._with_snapshot_state(r) for r in self._records.values() if r.tenant_id == tenant_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def save(self, record: ConnectionRecord) -> None:
        async with self._lock:
            if record.id not in self._records:
                raise KeyError(f"connection {record.id} does not exist")
            self._records[record.id] = record

    async def delete(self, connection_id: str) -> bool:
        async with self._lock:
            self._snapshots.pop(connection_id, None)
            return self._records.pop(connection_id, None) is not None

    async def get_snapshot(self, connection_id: str) -> Optional[Tuple[SchemaSnapshot, bool]]:
        return self._snapshots.get(connection_id)

    async def put_snapshot(self, connection_id: str, snapshot: SchemaSnapshot) -> None:
        async with self._lock:
            if connection_id in self._records:
                self._snapshots[connection_id] = (snapshot, False)

    async def clear_snapshot(self, connection_id: str) -> None:
        async with self._lock:
            self._snapshots.pop(connection_id, None)

    async def mark_snapshot_stale(self, connection_id: str) -> None:
        async with self._lock:
            entry = self._snapshots.get(connection_id)
            if entry is not None:
                self._snapshots[connection_id] = (entry[0], True)

    def _with_snapshot_state(self, record: ConnectionRecord) -> ConnectionRecord:
        entry = self._snapshots.get(record.id)
        if entry is None:
            return record.model_copy(update={"schema_refreshed_at": None, "schema_stale": False})
        return record.model_copy(update={"schema_refreshed_at": entry[0].generated_at, "schema_stale": entry[1]})


class PostgresConnectionStore(ConnectionStore):
    def __init__(self, cfg: StoreConfig):
        self._cfg = cfg
        self._pool: asyncpg.pool.Pool | None = None

    async def connect(self) -> None:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                dsn=self._cfg.dsn,
                min_size=self._cfg.min_pool_size,
                max_size=self._cfg.max_pool_size,
            )
            await self.ensure_schema()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._ensure()
        async with pool.acquire() as conn:
            await conn.execute(_DDL)

    async def insert(self, record: ConnectionRecord) -> None:
        await self.save(record)

    async def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        pool = await self._ensure()
        row = await pool.fetchrow(f"SELECT {_RECORD_COLUMNS} FROM database_connections WHERE id = $1", connection_id)
        return _row_to_record(row) if row else None

    async def list_for_tenant(self, tenant_id: str) -> List[ConnectionRecord]:
        pool = await self._ensure()
        rows = await pool.fetch(
            f"SELECT {_RECORD_COLUMNS} FROM database_connections WHERE tenant_id = $1 ORDER BY created_at DESC",
            tenant_id,
        )
        return [_row_to_record(row) for row in rows]

    async def save(self, record: ConnectionRecord) -> None:
        pool = await self._ensure()
        creds = record.credentials
        await pool.execute(
            _UPSERT,
            record.id,
            record.tenant_id,
            record.name,
            record.description,
            record.db_type,
            creds.host_encrypted,
            creds.port_encrypted,
            creds.database_encrypted,
            creds.username_encrypted,
            creds.password_encrypted,
            creds.connection_string_encrypted,
            record.status.value,
            record.last_validated_at,
            record.last_error,
            record.created_at,
            record.updated_at,
        )

    async def delete(self, connection_id: str) -> bool:
        pool = await self._ensure()
        result = await pool.execute("DELETE FROM database_connections WHERE id = $1", connection_id)
        return result.endswith(" 1")

    async def get_snapshot(self, connection_id: str) -> Optional[Tuple[SchemaSnapshot, bool]]:
        pool = await self._ensure()
        row = await pool.fetchrow(
            "SELECT schema_snapshot, schema_stale FROM database_connections WHERE id = $1",
            connection_id,
        )
        if row is None or row["schema_snapshot"] is None:
            return None
        payload = row["schema_snapshot"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return SchemaSnapshot.model_validate(payload), row["schema_stale"]

    async def put_snapshot(self, connection_id: str, snapshot: SchemaSnapshot) -> None:
        pool = await self._ensure()
        await pool.execute(_PUT_SNAPSHOT, connection_id, snapshot.model_dump_json(), snapshot.generated_at)

    async def clear_snapshot(self, connection_id: str) -> None:
        pool = await self._ensure()
        await pool.execute(_CLEAR_SNAPSHOT, connection_id)

    async def mark_snapshot_stale(self, connection_id: str) -> None:
        pool = await self._ensure()
        await pool.execute("UPDATE database_connections SET schema_stale = TRUE WHERE id = $1", connection_id)

    async def _ensure(self) -> asyncpg.pool.Pool:
        if self._pool is None:
            await self.connect()
        assert self._pool is not None
        return self._pool


def _row_to_record(row: asyncpg.Record) -> ConnectionRecord:
    return ConnectionRecord(
        id=row["id"],
        tenant_id=row["tenant_id"],
        name=row["name"],
        description=row["description"],
        db_type=row["db_type"],
        credentials=EncryptedCredentials(
            host_encrypted=row["host_encrypted"],
            port_encrypted=row["port_encrypted"],
            database_encrypted=row["database_encrypted"],
            username_encrypted=row["username_encrypted"],
            password_encrypted=row["password_encrypted"],
            connection_string_encrypted=row["connection_string_encrypted"],
        ),
        status=ConnectionStatus(row["status"]),
        last_validated_at=row["last_validated_at"],
        last_error=row["last_error"],
        schema_refreshed_at=row["schema_refreshed_at"],
        schema_stale=row["schema_stale"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def build_store(cfg: StoreConfig) -> ConnectionStore:
    if cfg.backend == "postgres":
        return PostgresConnectionStore(cfg)
    return InMemoryConnectionStore()


__all__ = ["ConnectionStore", "InMemoryConnectionStore", "PostgresConnectionStore", "build_store"]
