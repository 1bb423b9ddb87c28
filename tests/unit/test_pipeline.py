from __future__ import annotations

import asyncio
import json
import pathlib

import asyncpg
import pytest

from sqlask.errors import (
    ConnectionNotFound,
    ConnectionUnreachable,
    QueryExecutionError,
    QueryGenerationError,
    QuerySafetyViolation,
)
from sqlask.llm_client import LLMClient
from sqlask.models import QueryRequest, SqlValidation
from sqlask.pipeline import GENERATED_ANSWER, SYNTHESIS_TIMEOUT_MESSAGE

from fakes import OTHER_TENANT, SECRET_PASSWORD, TENANT, FakeConnection, FakeLLM, credentials, llm_json

COUNT_SQL = "SELECT COUNT(*) AS count FROM orders WHERE created_at >= CURRENT_DATE - INTERVAL '1 day'"


class SlowLLM(LLMClient):
    async def complete(self, messages):
        await asyncio.sleep(5)
        return llm_json(sql="SELECT 1")


class DelayedLLM(LLMClient):
    def __init__(self, delay: float, reply: str):
        self.delay = delay
        self.reply = reply

    async def complete(self, messages):
        await asyncio.sleep(self.delay)
        return self.reply


def _history(path: str) -> list:
    return [json.loads(line) for line in pathlib.Path(path).read_text(encoding="utf-8").splitlines()]


async def _connection(registry) -> str:
    return (await registry.create(TENANT, "shop", credentials())).id


def _request(connection_id: str, question: str, **extra) -> QueryRequest:
    return QueryRequest(tenant_id=TENANT, connection_id=connection_id, question=question, **extra)


@pytest.mark.asyncio
async def test_count_question_end_to_end(registry, pools, make_pipeline, history_path) -> None:
    connection_id = await _connection(registry)
    pools.conn = FakeConnection(rows=[{"count": 42}], columns=[("count", "int8")])
    llm = FakeLLM(llm_json(sql=COUNT_SQL, explanation="Counts orders since yesterday."))

    response = await make_pipeline(llm).handle(_request(connection_id, "How many orders were placed yesterday?"))

    assert response.success is True
    assert response.answer == "The count is 42."
    assert response.table_view == "| count |\n| ----- |\n| 42    |"
    assert response.metadata.generated_sql == COUNT_SQL
    assert response.metadata.row_count == 1
    assert response.metadata.connection_used == connection_id
    # The first synthesis attempt found no snapshot, so discovery ran once before the model was asked.
    assert len(llm.calls) == 1
    assert "Table: public.orders" in llm.calls[0][-1]["content"]
    assert pools.conn.prepared == [COUNT_SQL]

    entries = _history(history_path)
    assert [e["outcome"] for e in entries] == ["executed"]
    assert entries[0]["generated_sql"] == COUNT_SQL
    assert entries[0]["row_count"] == 1


@pytest.mark.asyncio
async def test_unresolved_follow_up_is_a_clarification(registry, pools, make_pipeline, history_path) -> None:
    connection_id = await _connection(registry)
    llm = FakeLLM(llm_json(sql="SELECT * FROM customers"))

    response = await make_pipeline(llm).handle(_request(connection_id, "list them"))

    assert response.success is True
    assert response.needs_clarification is True
    assert response.answer == response.clarification_question
    assert '"them"' in response.answer
    assert response.metadata.generated_sql is None
    assert llm.calls == []
    assert pools.conn.prepared == []
    assert [e["outcome"] for e in _history(history_path)] == ["clarify"]


@pytest.mark.asyncio
async def test_destructive_request_never_reaches_the_database(registry, pools, make_pipeline, history_path) -> None:
    connection_id = await _connection(registry)
    llm = FakeLLM(llm_json(sql="DELETE FROM customers WHERE inactive"))

    with pytest.raises(QuerySafetyViolation):
        await make_pipeline(llm).handle(_request(connection_id, "Delete all inactive customers"))

    assert pools.conn.prepared == []
    entry = _history(history_path)[-1]
    assert entry["outcome"] == "rejected"
    assert entry["error_kind"] == "safety_violation"
    assert entry["success"] is False


@pytest.mark.asyncio
async def test_failed_connection_fails_fast(registry, pools, make_pipeline, history_path) -> None:
    pools.unreachable.add("db.internal")
    connection_id = await _connection(registry)
    llm = FakeLLM(llm_json(sql=COUNT_SQL))

    with pytest.raises(ConnectionUnreachable):
        await make_pipeline(llm).handle(_request(connection_id, "How many orders were placed yesterday?"))

    assert llm.calls == []
    assert pools.acquired == 0
    assert _history(history_path)[-1]["error_kind"] == "connection_unreachable"


@pytest.mark.asyncio
async def test_large_result_is_capped_and_noted(registry, pools, make_pipeline) -> None:
    connection_id = await _connection(registry)
    pools.conn = FakeConnection(rows=[{"id": i} for i in range(1500)], columns=[("id", "int4")])
    llm = FakeLLM(llm_json(sql="SELECT id FROM orders"))

    response = await make_pipeline(llm).handle(_request(connection_id, "all order ids"))

    assert response.success is True
    assert response.metadata.limited is True
    assert response.metadata.row_count == 1000
    assert "Note: Results were limited to 1000 rows." in response.answer
    assert response.table_view.endswith("... 900 more rows not shown")


@pytest.mark.asyncio
async def test_unknown_connection_is_not_found(make_pipeline) -> None:
    with pytest.raises(ConnectionNotFound):
        await make_pipeline(FakeLLM(llm_json(sql="SELECT 1"))).handle(_request("missing", "how many orders?"))


@pytest.mark.asyncio
async def test_other_tenant_cannot_query(registry, make_pipeline) -> None:
    connection_id = await _connection(registry)
    request = QueryRequest(tenant_id=OTHER_TENANT, connection_id=connection_id, question="how many orders?")
    with pytest.raises(ConnectionNotFound):
        await make_pipeline(FakeLLM(llm_json(sql="SELECT 1"))).handle(request)


@pytest.mark.asyncio
async def test_unparseable_generation_is_a_soft_failure(registry, make_pipeline, history_path) -> None:
    connection_id = await _connection(registry)

    response = await make_pipeline(FakeLLM("no idea")).handle(_request(connection_id, "orders by weekday"))

    assert response.success is False
    assert response.error_kind == "generation"
    assert response.answer == QueryGenerationError.default_user_message
    assert _history(history_path)[-1]["outcome"] == "failed"


@pytest.mark.asyncio
async def test_execution_error_is_answered(registry, pools, make_pipeline) -> None:
    connection_id = await _connection(registry)
    llm = FakeLLM(llm_json(sql="SELECT * FROM ordrs"))
    pipeline = make_pipeline(llm)
    # Discover against a healthy catalog first, then break the target.
    await pipeline.handle(_request(connection_id, "how many orders?"))
    pools.conn = FakeConnection(error=asyncpg.UndefinedTableError('relation "ordrs" does not exist'))

    response = await pipeline.handle(_request(connection_id, "how many orders?"))

    assert response.success is False
    assert response.error_kind == "database"
    assert response.answer == "Sorry, I couldn't execute your query. The database rejected the query."
    assert "ordrs" not in response.answer
    assert response.table_view is None


@pytest.mark.asyncio
async def test_slow_generation_times_out(registry, make_pipeline) -> None:
    connection_id = await _connection(registry)

    response = await make_pipeline(SlowLLM(), request_timeout_s=1).handle(_request(connection_id, "orders by weekday"))

    assert response.success is False
    assert response.answer == SYNTHESIS_TIMEOUT_MESSAGE


@pytest.mark.asyncio
async def test_export_csv_and_json(registry, pools, make_pipeline, history_path) -> None:
    connection_id = await _connection(registry)
    pools.conn = FakeConnection(rows=[{"id": 1, "email": "a@example.com"}], columns=[("id", "int4"), ("email", "text")])
    pipeline = make_pipeline(FakeLLM(llm_json(sql="SELECT id, email FROM customers")))

    csv_text = await pipeline.export(_request(connection_id, "customer emails"), "csv")
    json_text = await pipeline.export(_request(connection_id, "customer emails"), "json")

    assert csv_text == '"id","email"\n"1","a@example.com"\n'
    assert json.loads(json_text) == [{"id": 1, "email": "a@example.com"}]
    assert [e["outcome"] for e in _history(history_path)] == ["exported", "exported"]


@pytest.mark.asyncio
async def test_export_refuses_clarifications_and_failures(registry, pools, make_pipeline) -> None:
    connection_id = await _connection(registry)

    with pytest.raises(QueryGenerationError):
        await make_pipeline(FakeLLM(llm_json(sql="SELECT 1"))).export(_request(connection_id, "list them"), "csv")

    pipeline = make_pipeline(FakeLLM(llm_json(sql="SELECT * FROM ordrs")))
    await pipeline.export(_request(connection_id, "orders"), "csv")
    pools.conn = FakeConnection(error=asyncpg.UndefinedTableError('relation "ordrs" does not exist'))
    with pytest.raises(QueryExecutionError):
        await pipeline.export(_request(connection_id, "orders"), "json")


@pytest.mark.asyncio
async def test_lost_connection_answer_names_no_connection_details(registry, pools, make_pipeline, history_path) -> None:
    connection_id = await _connection(registry)
    pipeline = make_pipeline(FakeLLM(llm_json(sql="SELECT id FROM orders")))
    await pipeline.handle(_request(connection_id, "order ids"))
    pools.unreachable.add("db.internal")

    response = await pipeline.handle(_request(connection_id, "order ids"))

    assert response.success is False
    assert response.error_kind == "connection"
    assert response.answer == (
        "Sorry, I couldn't execute your query. "
        "The database could not be reached. Test or edit the connection and try again."
    )
    entry = _history(history_path)[-1]
    assert entry["error_kind"] == "connection"
    for fragment in ("db.internal", SECRET_PASSWORD):
        assert fragment not in entry["error"]


@pytest.mark.asyncio
async def test_generate_returns_sql_without_running_it(registry, pools, make_pipeline, history_path) -> None:
    connection_id = await _connection(registry)
    llm = FakeLLM(llm_json(sql=COUNT_SQL, explanation="Counts orders since yesterday."))

    response = await make_pipeline(llm).generate(_request(connection_id, "How many orders were placed yesterday?"))

    assert response.success is True
    assert response.answer == "Counts orders since yesterday."
    assert response.table_view is None
    assert response.metadata.generated_sql == COUNT_SQL
    assert response.metadata.row_count is None
    assert pools.conn.prepared == []
    assert [e["outcome"] for e in _history(history_path)] == ["generated"]


@pytest.mark.asyncio
async def test_generate_without_explanation_says_it_did_not_run(registry, make_pipeline) -> None:
    connection_id = await _connection(registry)
    response = await make_pipeline(FakeLLM(llm_json(sql="SELECT id FROM orders"))).generate(
        _request(connection_id, "order ids")
    )
    assert response.answer == GENERATED_ANSWER


@pytest.mark.asyncio
async def test_generate_still_rejects_unsafe_sql(registry, pools, make_pipeline) -> None:
    connection_id = await _connection(registry)
    with pytest.raises(QuerySafetyViolation):
        await make_pipeline(FakeLLM(llm_json(sql="DROP TABLE orders"))).generate(_request(connection_id, "drop it"))
    assert pools.conn.prepared == []


@pytest.mark.asyncio
async def test_tenant_sql_runs_behind_the_same_gate(registry, pools, make_pipeline, history_path) -> None:
    connection_id = await _connection(registry)
    pools.conn = FakeConnection(rows=[{"count": 7}], columns=[("count", "int8")])
    llm = FakeLLM(llm_json(sql="SELECT 1"))
    pipeline = make_pipeline(llm)

    response = await pipeline.execute_sql(TENANT, connection_id, "SELECT COUNT(*) AS count FROM customers;", max_rows=10)

    assert response.success is True
    assert response.answer == "The count is 7."
    assert response.metadata.generated_sql == "SELECT COUNT(*) AS count FROM customers"
    assert pools.conn.prepared == ["SELECT COUNT(*) AS count FROM customers"]
    assert pools.conn.transactions == [True]
    assert pools.conn.fetch_sizes == [10]
    assert llm.calls == []

    with pytest.raises(QuerySafetyViolation):
        await pipeline.execute_sql(TENANT, connection_id, "SELECT 'a\\'; DELETE FROM customers; --'")
    assert len(pools.conn.prepared) == 1
    assert [e["outcome"] for e in _history(history_path)] == ["executed_sql", "rejected"]


@pytest.mark.asyncio
async def test_tenant_sql_respects_tenancy_and_failed_connections(registry, pools, make_pipeline) -> None:
    connection_id = await _connection(registry)
    pipeline = make_pipeline(FakeLLM(llm_json(sql="SELECT 1")))

    with pytest.raises(ConnectionNotFound):
        await pipeline.execute_sql(OTHER_TENANT, connection_id, "SELECT 1")

    pools.unreachable.add("db.internal")
    await registry.test_connection(TENANT, connection_id)
    with pytest.raises(ConnectionUnreachable):
        await pipeline.execute_sql(TENANT, connection_id, "SELECT 1")
    assert pools.acquired == 0


@pytest.mark.asyncio
async def test_validate_sql_gives_a_verdict(make_pipeline) -> None:
    pipeline = make_pipeline(FakeLLM(llm_json(sql="SELECT 1")))

    assert pipeline.validate_sql("  SELECT 1; ") == SqlValidation(valid=True, sql="SELECT 1")
    verdict = pipeline.validate_sql("DROP TABLE orders")
    assert verdict.valid is False
    assert verdict.sql is None
    assert "DROP" in verdict.reason


@pytest.mark.asyncio
async def test_execution_gets_only_what_synthesis_left(registry, pools, schema_cache, make_pipeline) -> None:
    connection_id = await _connection(registry)
    await schema_cache.discover(TENANT, connection_id)
    pools.conn = FakeConnection(rows=[{"id": 1}], columns=[("id", "int4")], delay=0.8)
    llm = DelayedLLM(0.6, llm_json(sql="SELECT id FROM orders"))

    response = await make_pipeline(llm, request_timeout_s=1).handle(_request(connection_id, "order ids"))

    assert response.success is False
    assert response.error_kind == "timeout"
    statement_timeout_ms = int(pools.conn.executed[0].rsplit(" ", 1)[1])
    assert 0 < statement_timeout_ms < 1000
