from __future__ import annotations

import json
import pathlib
import time
from typing import Optional

from pydantic import BaseModel

from .config import ObservabilityConfig
from .logging_utils import get_logger

logger = get_logger(__name__)


class QueryHistoryEntry(BaseModel):
    tenant_id: str
    connection_id: str
    question: str
    generated_sql: Optional[str] = None
    success: bool
    outcome: str
    row_count: Optional[int] = None
    execution_time_ms: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None


class QueryHistoryReporter:
    """Appends one JSON line per question attempt; retention is decided elsewhere."""

    def __init__(self, cfg: ObservabilityConfig):
        self._path = pathlib.Path(cfg.history_log_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def record(self, entry: QueryHistoryEntry) -> None:
        payload = entry.model_dump()
        line = {"timestamp": time.time(), **payload}
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(line) + "\n")
        logger.info("query_history", **payload)


__all__ = ["QueryHistoryEntry", "QueryHistoryReporter"]
