from __future__ import annotations

from typing import Iterable, List, Set

from .models import SchemaSnapshot, TableInfo


def render_schema(snapshot: SchemaSnapshot, ranked: Iterable[TableInfo], max_chars: int) -> str:
    """Render the most relevant tables as prompt text, stopping at ``max_chars``.

    The first table is always rendered, even when it alone exceeds the budget,
    so the model never sees an empty schema for a non-empty database.
    """
    blocks: List[str] = []
    included: Set[str] = set()
    total = 0
    for table in ranked:
        block = _render_table(table)
        if blocks and total + len(block) > max_chars:
            break
        blocks.append(block)
        included.add(table.name)
        total += len(block) + 2

    omitted = len(snapshot.tables) - len(included)
    if omitted > 0:
        blocks.append(f"({omitted} less relevant tables omitted)")

    relationships = [
        f"  {fk.from_table}.{fk.from_column} -> {fk.to_table}.{fk.to_column}"
        for fk in snapshot.foreign_keys
        if fk.from_table in included and fk.to_table in included
    ]
    if relationships:
        blocks.append("Relationships:\n" + "\n".join(relationships))
    return "\n\n".join(blocks)


def _render_table(table: TableInfo) -> str:
    rows = f" (~{table.row_estimate} rows)" if table.row_estimate is not None and table.row_estimate >= 0 else ""
    lines = [f"Table: {table.qualified_name}{rows}"]
    for column in table.columns:
        parts = [f"  - {column.name}", f"({column.data_type})"]
        if column.is_primary_key:
            parts.append("PRIMARY KEY")
        if not column.nullable:
            parts.append("NOT NULL")
        lines.append(" ".join(parts))
    return "\n".join(lines)


__all__ = ["render_schema"]
