from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

import asyncpg

from .config import SchemaConfig
from .logging_utils import get_logger
from .models import ColumnInfo, ForeignKey, SchemaSnapshot, TableInfo, utcnow

logger = get_logger(__name__)


_TABLES_SQL = """
SELECT
    t.table_schema AS schema_name,
    t.table_name AS table_name,
    GREATEST(c.reltuples, 0)::bigint AS row_estimate
FROM information_schema.tables t
LEFT JOIN pg_namespace n ON n.nspname = t.table_schema
LEFT JOIN pg_class c ON c.relname = t.table_name AND c.relnamespace = n.oid
WHERE t.table_type IN ('BASE TABLE', 'VIEW')
  AND t.table_schema = ANY($1::text[])
ORDER BY t.table_schema, t.table_name
"""

_COLUMNS_SQL = """
SELECT
    table_schema AS schema_name,
    table_name,
    column_name,
    data_type,
    is_nullable = 'YES' AS nullable
FROM information_schema.columns
WHERE table_schema = ANY($1::text[])
ORDER BY table_schema, table_name, ordinal_position
"""

_PRIMARY_KEYS_SQL = """
SELECT
    kcu.table_schema AS schema_name,
    kcu.table_name,
    kcu.column_name
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name
 AND tc.table_schema = kcu.table_schema
WHERE tc.constraint_type = 'PRIMARY KEY'
  AND tc.table_schema = ANY($1::text[])
"""

_FOREIGN_KEYS_SQL = """
SELECT
    kcu.table_schema AS schema_name,
    kcu.table_name AS from_table,
    kcu.column_name AS from_column,
    ccu.table_name AS to_table,
    ccu.column_name AS to_column
FROM information_schema.table_constraints tc
JOIN information_schema.key_column_usage kcu
  ON tc.constraint_name = kcu.constraint_name
 AND tc.table_schema = kcu.table_schema
JOIN information_schema.constraint_column_usage ccu
  ON ccu.constraint_name = tc.constraint_name
 AND ccu.constraint_schema = tc.table_schema
WHERE tc.constraint_type = 'FOREIGN KEY'
  AND tc.table_schema = ANY($1::text[])
ORDER BY kcu.table_name, kcu.column_name
"""


class SchemaExtractor:
    """Introspects a live PostgreSQL connection into a SchemaSnapshot.

    Every catalog query runs before the snapshot is assembled; an error in any
    of them propagates and nothing is built.
    """

    def __init__(self, cfg: SchemaConfig):
        self._cfg = cfg

    async def extract(self, conn: asyncpg.Connection) -> SchemaSnapshot:
        schemas = list(self._cfg.include_schemas)
        async with conn.transaction(readonly=True):
            tables = await conn.fetch(_TABLES_SQL, schemas)
            columns = await conn.fetch(_COLUMNS_SQL, schemas)
            primary_keys = await conn.fetch(_PRIMARY_KEYS_SQL, schemas)
            foreign_keys = await conn.fetch(_FOREIGN_KEYS_SQL, schemas)
        snapshot = build_snapshot(tables, columns, primary_keys, foreign_keys)
        logger.info("schema_extracted", tables=len(snapshot.tables), foreign_keys=len(snapshot.foreign_keys))
        return snapshot


def build_snapshot(
    tables: Sequence,
    columns: Sequence,
    primary_keys: Sequence,
    foreign_keys: Sequence,
) -> SchemaSnapshot:
    pk_set = {(row["schema_name"], row["table_name"], row["column_name"]) for row in primary_keys}

    ordered: List[Tuple[str, str]] = []
    estimates: Dict[Tuple[str, str], int | None] = {}
    for row in tables:
        key = (row["schema_name"], row["table_name"])
        ordered.append(key)
        estimates[key] = row["row_estimate"]

    table_columns: Dict[Tuple[str, str], List[ColumnInfo]] = {key: [] for key in ordered}
    for row in columns:
        key = (row["schema_name"], row["table_name"])
        if key not in table_columns:
            continue
        table_columns[key].append(
            ColumnInfo(
                name=row["column_name"],
                data_type=row["data_type"],
                nullable=bool(row["nullable"]),
                is_primary_key=(key[0], key[1], row["column_name"]) in pk_set,
            )
        )

    return SchemaSnapshot(
        tables=[
            TableInfo(
                schema_name=schema_name,
                name=table_name,
                columns=table_columns[(schema_name, table_name)],
                row_estimate=estimates[(schema_name, table_name)],
            )
            for schema_name, table_name in ordered
        ],
        foreign_keys=[
            ForeignKey(
                from_table=row["from_table"],
                from_column=row["from_column"],
                to_table=row["to_table"],
                to_column=row["to_column"],
            )
            for row in foreign_keys
        ],
        generated_at=utcnow(),
    )


__all__ = ["SchemaExtractor", "build_snapshot"]
