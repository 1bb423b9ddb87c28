from __future__ import annotations

import pytest

from sqlask.errors import QuerySafetyViolation
from sqlask.sql_validator import SQLValidator


@pytest.fixture
def validator() -> SQLValidator:
    return SQLValidator()


@pytest.mark.parametrize(
    "sql",
    [
        "DELETE FROM customers WHERE inactive",
        "UPDATE orders SET total = 0",
        "INSERT INTO orders (id) VALUES (1)",
        "DROP TABLE orders",
        "ALTER TABLE orders ADD COLUMN x int",
        "CREATE TABLE x (id int)",
        "TRUNCATE orders",
        "GRANT SELECT ON orders TO public",
        "delete from customers",
        "SELECT 1; DROP TABLE orders",
        "SELECT * INTO backup FROM orders",
        "WITH gone AS (DELETE FROM orders RETURNING *) SELECT * FROM gone",
        "SELECT 'a\\'; DELETE FROM customers; --'",
        "SELECT 'a\\' FROM orders INTO backup --'",
        "SELECT 1; /* trailing */ SELECT 2",
        "SELECT 'unterminated FROM orders",
    ],
)
def test_rejects_write_statements(validator: SQLValidator, sql: str) -> None:
    with pytest.raises(QuerySafetyViolation):
        validator.ensure_read_only(sql)


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT COUNT(*) AS count FROM orders",
        "select id, email from customers where email like '%@example.com' order by id limit 10",
        "WITH recent AS (SELECT * FROM orders WHERE created_at > NOW() - INTERVAL '1 day') SELECT COUNT(*) FROM recent",
        "SELECT id FROM customers UNION SELECT customer_id FROM orders",
    ],
)
def test_accepts_read_only_statements(validator: SQLValidator, sql: str) -> None:
    assert validator.ensure_read_only(sql) == sql


def test_keywords_inside_literals_and_comments_are_ignored(validator: SQLValidator) -> None:
    sql = "SELECT 'please DELETE me' AS note, \"update\" FROM customers -- DROP TABLE customers"
    assert validator.ensure_read_only(sql) == sql


def test_single_trailing_semicolon_is_stripped(validator: SQLValidator) -> None:
    assert validator.ensure_read_only("  SELECT 1;  ") == "SELECT 1"


def test_empty_and_non_select_statements_are_rejected(validator: SQLValidator) -> None:
    with pytest.raises(QuerySafetyViolation):
        validator.ensure_read_only("   ")
    with pytest.raises(QuerySafetyViolation):
        validator.ensure_read_only("SHOW search_path")


def test_escape_strings_and_quoted_semicolons_are_accepted(validator: SQLValidator) -> None:
    sql = "SELECT E'it\\'s' AS quote, 'a;b' AS pair, \"odd;name\" FROM customers"
    assert validator.ensure_read_only(sql) == sql


def test_trailing_comment_after_terminator_is_allowed(validator: SQLValidator) -> None:
    assert validator.ensure_read_only("SELECT 1; -- done") == "SELECT 1; -- done"
