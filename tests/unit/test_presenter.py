from __future__ import annotations

import decimal
import json
from typing import Any, Dict, List

import pytest

from sqlask.config import PresentationConfig
from sqlask.models import ColumnMeta, ExecutionResult
from sqlask.presenter import FAILURE_PREFIX, failure_message, present, render_table, summarize, to_csv, to_json
from sqlask.values import to_cell


def _result(rows: List[Dict[str, Any]], columns: List[str] = None, limited: bool = False) -> ExecutionResult:
    names = columns if columns is not None else (list(rows[0].keys()) if rows else [])
    return ExecutionResult(
        success=True,
        rows=[{k: to_cell(v) for k, v in row.items()} for row in rows],
        columns=[ColumnMeta(name=n) for n in names],
        row_count=len(rows),
        limited=limited,
    )


def test_single_aggregate_reads_as_a_sentence() -> None:
    assert summarize(_result([{"count": 42}])) == "The count is 42."
    assert summarize(_result([{"total_sum": 1234567}])) == "The sum is 1,234,567."
    assert summarize(_result([{"avg_total": 12.3456}])) == "The average is 12.35."
    assert summarize(_result([{"email": "a@example.com"}])) == "The result is: a@example.com"


def test_no_rows() -> None:
    empty = _result([], columns=["id"])
    assert summarize(empty, "inactive customers") == 'I found no results for your query about "inactive customers".'
    assert summarize(empty) == "The query returned no results."
    assert render_table(empty) == ""


def test_single_row_with_several_columns_is_labelled() -> None:
    text = summarize(_result([{"customer_id": 7, "email": "a@example.com", "inactive": None}]))
    assert text == "Here's what I found:\n- Customer Id: 7\n- Email: a@example.com\n- Inactive: null"


def test_many_rows_preview() -> None:
    rows = [{"id": i, "email": f"u{i}@example.com", "total": i * 10, "status": "open", "region": "eu"} for i in range(8)]
    text = summarize(_result(rows), "open orders")

    lines = text.split("\n")
    assert lines[0] == 'Found 8 results for "open orders":'
    assert lines[2] == "1. Id: 0, Email: u0@example.com, Total: 0 (and 2 more fields)"
    assert "5. Id: 4" in text and "6. Id: 5" not in text
    assert "...and 3 more results." in text
    assert lines[-1] == "See the table view for the complete data."


def test_limited_results_carry_a_note() -> None:
    rows = [{"id": i} for i in range(3)]
    text = summarize(_result(rows, limited=True))
    assert text.endswith("\n\nNote: Results were limited to 3 rows. There may be more data available.")


def test_failure_is_apologetic_and_never_echoes_the_driver() -> None:
    failed = ExecutionResult(
        success=False,
        error="could not connect to postgresql://app:hunter2@db:5432/shop",
        error_kind="connection",
    )
    text = summarize(failed)
    assert text == (
        "Sorry, I couldn't execute your query. "
        "The database could not be reached. Test or edit the connection and try again."
    )
    for fragment in ("hunter2", "app", "db:5432", "shop", "postgresql"):
        assert fragment not in text
    assert present(failed) == (text, None)


@pytest.mark.parametrize(
    "kind, detail",
    [
        ("timeout", "It took too long and was stopped. Try a narrower question."),
        ("database", "The database rejected the query."),
        (None, ""),
    ],
)
def test_failure_text_is_fixed_per_kind(kind, detail) -> None:
    failed = ExecutionResult(success=False, error='relation "secret_table" does not exist', error_kind=kind)
    assert failure_message(failed) == f"{FAILURE_PREFIX} {detail}".rstrip()
    assert "secret_table" not in summarize(failed)


def test_table_pads_caps_and_truncates() -> None:
    rows = [{"id": 1, "note": "x" * 80}, {"id": 22, "note": "short"}]
    table = render_table(_result(rows), cap_width=10)

    lines = table.split("\n")
    assert lines[0] == "| id | note       |"
    assert lines[1] == "| -- | ---------- |"
    assert lines[2] == "| 1  | xxxxxxx... |"
    assert lines[3] == "| 22 | short      |"


def test_table_row_limit_footer() -> None:
    rows = [{"id": i} for i in range(7)]
    lines = render_table(_result(rows), max_rows=5).split("\n")

    assert len(lines) == 2 + 5 + 2
    assert lines[-2] == ""
    assert lines[-1] == "... 2 more rows not shown"


def test_csv_quotes_everything_and_blanks_nulls() -> None:
    rows = [{"id": 1, "note": 'say "hi", ok', "flag": True}, {"id": 2, "note": None, "flag": False}]
    assert to_csv(_result(rows)) == (
        '"id","note","flag"\n'
        '"1","say ""hi"", ok","true"\n'
        '"2","","false"\n'
    )


def test_json_export_uses_plain_values() -> None:
    rows = [{"id": 1, "meta": {"a": [1, 2]}, "note": None}]
    assert json.loads(to_json(_result(rows))) == [{"id": 1, "meta": {"a": [1, 2]}, "note": None}]


def test_present_returns_table_for_success() -> None:
    answer, table = present(_result([{"count": 5}]), "how many", PresentationConfig())
    assert answer == "The count is 5."
    assert table == "| count |\n| ----- |\n| 5     |"


def _reject_constant(token: str) -> Any:
    raise ValueError(f"non-standard JSON token {token}")


def test_json_export_stays_valid_for_non_finite_numbers() -> None:
    rows = [{"x": decimal.Decimal("NaN"), "y": float("inf"), "z": {"w": float("-inf")}}]
    text = to_json(_result(rows))
    assert json.loads(text, parse_constant=_reject_constant) == [{"x": "NaN", "y": "Infinity", "z": {"w": "-Infinity"}}]


def test_rendering_is_deterministic() -> None:
    rows = [
        {"id": i, "email": f"u{i}@example.com", "total": decimal.Decimal("1.5") * i, "meta": {"b": 1, "a": i}}
        for i in range(12)
    ]
    first, second = _result(rows), _result(rows)

    assert render_table(first, cap_width=12, max_rows=5) == render_table(second, cap_width=12, max_rows=5)
    assert summarize(first, "emails") == summarize(second, "emails")
    assert to_csv(first) == to_csv(second)
    assert to_json(first) == to_json(second)
