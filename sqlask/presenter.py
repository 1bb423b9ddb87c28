"""Deterministic rendering of execution results.

Nothing here talks to the network or the language model: the same
``ExecutionResult`` always yields the same summary, table, CSV and JSON.
"""

from __future__ import annotations

import csv
import io
import json
from typing import Dict, List, Optional, Tuple

from .config import PresentationConfig
from .models import ExecutionResult
from .values import Cell, FloatValue, IntValue, NullValue, display

_AGGREGATES = (("count", "count"), ("sum", "sum"), ("avg", "average"))
_SUMMARY_COLUMNS = 3

FAILURE_PREFIX = "Sorry, I couldn't execute your query."
_FAILURE_DETAIL = {
    "timeout": "It took too long and was stopped. Try a narrower question.",
    "connection": "The database could not be reached. Test or edit the connection and try again.",
    "database": "The database rejected the query.",
}


def summarize(result: ExecutionResult, question: Optional[str] = None, max_preview_rows: int = 5) -> str:
    if not result.success:
        return failure_message(result)

    rows = result.rows or []
    columns = _column_names(result)
    if not rows:
        text = (
            f'I found no results for your query about "{question}".' if question else "The query returned no results."
        )
    elif len(rows) == 1:
        text = _single_row(rows[0], columns)
    else:
        text = _many_rows(rows, columns, question, max_preview_rows)

    if result.limited:
        text += f"\n\nNote: Results were limited to {result.row_count} rows. There may be more data available."
    return text


def failure_message(result: ExecutionResult) -> str:
    """Fixed tenant-facing text for a failed execution; the driver detail stays in logs and history."""
    detail = _FAILURE_DETAIL.get(result.error_kind or "")
    return f"{FAILURE_PREFIX} {detail}" if detail else FAILURE_PREFIX


def render_table(result: ExecutionResult, cap_width: int = 50, max_rows: int = 100) -> str:
    rows = result.rows or []
    columns = _column_names(result)
    if not rows or not columns:
        return ""

    text_rows = [[_cell_text(row.get(col)) for col in columns] for row in rows]
    widths = [
        min(max([len(col)] + [len(r[i]) for r in text_rows]), cap_width) for i, col in enumerate(columns)
    ]

    lines = [
        _table_line([_truncate(col, cap_width) for col in columns], widths),
        _table_line(["-" * w for w in widths], widths),
    ]
    for text_row in text_rows[:max_rows]:
        lines.append(_table_line([_truncate(v, cap_width) for v in text_row], widths))
    if len(rows) > max_rows:
        lines.append("")
        lines.append(f"... {len(rows) - max_rows} more rows not shown")
    return "\n".join(lines)


def to_csv(result: ExecutionResult) -> str:
    columns = _column_names(result)
    if not columns:
        return ""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(columns)
    for row in result.rows or []:
        writer.writerow([_csv_text(row.get(col)) for col in columns])
    return buffer.getvalue()


def to_json(result: ExecutionResult) -> str:
    payload = [{key: cell.plain() for key, cell in row.items()} for row in result.rows or []]
    return json.dumps(payload, indent=2, default=str)


def present(
    result: ExecutionResult, question: Optional[str] = None, cfg: Optional[PresentationConfig] = None
) -> Tuple[str, Optional[str]]:
    cfg = cfg or PresentationConfig()
    answer = summarize(result, question, max_preview_rows=cfg.preview_rows)
    if not result.success:
        return answer, None
    table = render_table(result, cap_width=cfg.cap_width, max_rows=cfg.table_max_rows)
    return answer, table or None


def _single_row(row: Dict[str, Cell], columns: List[str]) -> str:
    if not columns:
        return "Found 1 result."
    if len(columns) == 1:
        name = columns[0]
        lowered = name.lower()
        for marker, label in _AGGREGATES:
            if marker in lowered:
                return f"The {label} is {_friendly(row.get(name))}."
        return f"The result is: {_friendly(row.get(name))}"
    lines = ["Here's what I found:"]
    for name in columns:
        lines.append(f"- {_title(name)}: {_friendly(row.get(name))}")
    return "\n".join(lines)


def _many_rows(rows: List[Dict[str, Cell]], columns: List[str], question: Optional[str], preview: int) -> str:
    header = f'Found {len(rows)} results for "{question}":' if question else f"Found {len(rows)} results:"
    lines = [header, ""]
    shown = columns[:_SUMMARY_COLUMNS]
    for index, row in enumerate(rows[:preview], start=1):
        line = f"{index}. " + ", ".join(f"{_title(col)}: {_friendly(row.get(col))}" for col in shown)
        if len(columns) > _SUMMARY_COLUMNS:
            line += f" (and {len(columns) - _SUMMARY_COLUMNS} more fields)"
        lines.append(line)
    if len(rows) > preview:
        lines.append("")
        lines.append(f"...and {len(rows) - preview} more results.")
    lines.append("")
    lines.append("See the table view for the complete data.")
    return "\n".join(lines)


def _column_names(result: ExecutionResult) -> List[str]:
    if result.columns:
        return [c.name for c in result.columns]
    if result.rows:
        return list(result.rows[0].keys())
    return []


def _cell_text(cell: Optional[Cell]) -> str:
    if cell is None:
        return "null"
    return display(cell).replace("\r", " ").replace("\n", " ")


def _csv_text(cell: Optional[Cell]) -> str:
    if cell is None or isinstance(cell, NullValue):
        return ""
    return display(cell)


def _truncate(text: str, cap: int) -> str:
    if len(text) <= cap:
        return text
    return text[: max(cap - 3, 0)] + "..."


def _table_line(cells: List[str], widths: List[int]) -> str:
    return "| " + " | ".join(cell.ljust(width) for cell, width in zip(cells, widths)) + " |"


def _friendly(cell: Optional[Cell]) -> str:
    # Thousands separators for readability; the table and exports keep raw values.
    if isinstance(cell, IntValue):
        return f"{cell.value:,}"
    if isinstance(cell, FloatValue):
        return f"{round(cell.value, 2):,}"
    text = _cell_text(cell)
    return text if len(text) <= 100 else text[:97] + "..."


def _title(name: str) -> str:
    return " ".join(part.capitalize() for part in name.split("_") if part) or name


__all__ = ["FAILURE_PREFIX", "failure_message", "present", "render_table", "summarize", "to_csv", "to_json"]
