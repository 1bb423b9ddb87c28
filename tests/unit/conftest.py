from __future__ import annotations

import base64
import os
from typing import Any

import pytest

from sqlask.audit import QueryHistoryReporter
from sqlask.cache import CacheClient
from sqlask.config import (
    AppConfig,
    ExecutionConfig,
    ObservabilityConfig,
    PresentationConfig,
    RedisConfig,
    SchemaConfig,
    SynthesisConfig,
)
from sqlask.executor import ExecutionSandbox
from sqlask.llm_client import LLMClient
from sqlask.pipeline import QueryPipeline
from sqlask.prompts import PromptResources
from sqlask.query_synthesizer import QuerySynthesizer
from sqlask.registry import ConnectionRegistry
from sqlask.schema_cache import SchemaCache
from sqlask.schema_extractor import SchemaExtractor
from sqlask.schema_ranker import SchemaRanker
from sqlask.sql_validator import SQLValidator
from sqlask.store import InMemoryConnectionStore
from sqlask.vault import CredentialVault

from fakes import FakePoolManager


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(os.urandom(32))


@pytest.fixture
def vault_key_env(monkeypatch: pytest.MonkeyPatch) -> str:
    key = base64.b64encode(os.urandom(32)).decode("ascii")
    monkeypatch.setenv("SQLASK_VAULT_KEY", key)
    return key


@pytest.fixture
def store() -> InMemoryConnectionStore:
    return InMemoryConnectionStore()


@pytest.fixture
def pools() -> FakePoolManager:
    return FakePoolManager()


@pytest.fixture
def cache() -> CacheClient:
    return CacheClient(RedisConfig(enabled=False))


@pytest.fixture
def registry(store, vault, pools, cache) -> ConnectionRegistry:
    return ConnectionRegistry(store, vault, pools, cache)


@pytest.fixture
def schema_cache(registry, store, cache) -> SchemaCache:
    return SchemaCache(SchemaConfig(), registry, store, SchemaExtractor(SchemaConfig()), cache)


@pytest.fixture
def prompts() -> PromptResources:
    return PromptResources(SynthesisConfig())


@pytest.fixture
def make_synthesizer(prompts):
    def _make(llm: LLMClient, **overrides: Any) -> QuerySynthesizer:
        return QuerySynthesizer(
            SynthesisConfig(**overrides),
            llm,
            prompts,
            SQLValidator(),
            SchemaRanker(SchemaConfig()),
        )

    return _make


@pytest.fixture
def sandbox(registry) -> ExecutionSandbox:
    return ExecutionSandbox(registry, ExecutionConfig())


@pytest.fixture
def history_path(tmp_path) -> str:
    return str(tmp_path / "history" / "query_history.log")


@pytest.fixture
def make_pipeline(registry, schema_cache, sandbox, make_synthesizer, history_path):
    def _make(llm: LLMClient, request_timeout_s: int = 60) -> QueryPipeline:
        return QueryPipeline(
            AppConfig(request_timeout_s=request_timeout_s),
            PresentationConfig(),
            registry,
            schema_cache,
            make_synthesizer(llm),
            sandbox,
            QueryHistoryReporter(ObservabilityConfig(history_log_path=history_path)),
            SQLValidator(),
        )

    return _make
