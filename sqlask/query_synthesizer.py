"""Question to candidate query.

The synthesizer owns three gates that the language model cannot bypass:
the safety gate (``SQLValidator``), the confidence gate and the
unresolved-reference gate. Everything it returns is one of the three
``SynthesisOutcome`` variants. A safety violation is raised instead and
aborts the request.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Dict, List, Optional

from .config import SchemaConfig, SynthesisConfig
from .errors import QueryGenerationError, SchemaUnavailableError
from .llm_client import LLMClient
from .logging_utils import get_logger
from .models import (
    ClarifyOutcome,
    FailedOutcome,
    GeneratedQuery,
    QueryOutcome,
    QueryRequest,
    SchemaSnapshot,
    SynthesisOutcome,
)
from .observability import record_latency
from .prompts import PromptResources, user_message
from .schema_ranker import SchemaRanker
from .schema_selector import render_schema
from .sql_validator import SQLValidator

logger = get_logger(__name__)

CONFIDENCE_WORDS = {"high": 90, "medium": 70, "low": 30}

DEFAULT_CLARIFICATION = (
    "I'm not confident I understood the question. Could you rephrase it, "
    "or name the table and columns you are interested in?"
)
LOW_CONFIDENCE_WARNING = "Confidence in this query is moderate; verify the results before relying on them."
FALLBACK_WARNING = "The generator did not return structured output; the SQL was recovered from a code block."

_REFERENT_WORDS = {"them", "those", "these", "they", "it", "that", "ones", "previous", "same", "above", "earlier"}
_FILLER_WORDS = {
    "a",
    "about",
    "again",
    "all",
    "an",
    "and",
    "are",
    "details",
    "display",
    "for",
    "get",
    "give",
    "is",
    "just",
    "list",
    "me",
    "more",
    "of",
    "only",
    "please",
    "print",
    "see",
    "show",
    "tell",
    "the",
    "us",
    "what",
}

_JSON_FENCE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.S | re.I)
_SQL_FENCE = re.compile(r"```sql\s*(.*?)```", re.S | re.I)
_WORD = re.compile(r"[a-z0-9_]+")


class QuerySynthesizer:
    def __init__(
        self,
        cfg: SynthesisConfig,
        llm: LLMClient,
        prompts: PromptResources,
        validator: SQLValidator,
        ranker: SchemaRanker,
        schema_cfg: Optional[SchemaConfig] = None,
    ):
        self._cfg = cfg
        self._llm = llm
        self._prompts = prompts
        self._validator = validator
        self._ranker = ranker
        self._schema_cfg = schema_cfg or SchemaConfig()

    async def synthesize(self, request: QueryRequest, snapshot: Optional[SchemaSnapshot]) -> SynthesisOutcome:
        if snapshot is None:
            raise SchemaUnavailableError(f"no schema snapshot for connection {request.connection_id}")

        history = request.history[-self._cfg.history_window :] if self._cfg.history_window else []
        unresolved = self._unresolved_reference(request.question, bool(history))
        if unresolved is not None:
            logger.info("synthesis_unresolved_reference", connection_id=request.connection_id, word=unresolved)
            return ClarifyOutcome(query=self._reference_clarification(unresolved, snapshot))

        messages = self._build_messages(request, snapshot, history)
        with record_latency("llm"):
            raw = await self._llm.complete(messages)

        try:
            generated = self._parse_response(raw)
        except QueryGenerationError as exc:
            logger.warning("synthesis_unparseable_output", connection_id=request.connection_id, error=str(exc))
            return FailedOutcome(error=str(exc), user_message=exc.user_message)

        if generated.sql:
            generated = generated.model_copy(update={"sql": self._validator.ensure_read_only(generated.sql)})

        if generated.needs_clarification or generated.confidence < self._cfg.clarification_threshold:
            logger.info(
                "synthesis_needs_clarification",
                connection_id=request.connection_id,
                confidence=generated.confidence,
                requested=generated.needs_clarification,
            )
            return ClarifyOutcome(
                query=generated.model_copy(
                    update={
                        "sql": "",
                        "needs_clarification": True,
                        "clarification_question": generated.clarification_question or DEFAULT_CLARIFICATION,
                    }
                )
            )

        if not generated.sql:
            exc = QueryGenerationError("generator returned no SQL and asked no clarification")
            logger.warning("synthesis_empty_sql", connection_id=request.connection_id)
            return FailedOutcome(error=str(exc), user_message=exc.user_message)

        if generated.confidence < self._cfg.low_confidence_warning:
            generated = generated.model_copy(update={"warnings": [*generated.warnings, LOW_CONFIDENCE_WARNING]})

        logger.info("query_synthesized", connection_id=request.connection_id, confidence=generated.confidence)
        return QueryOutcome(query=generated)

    def _build_messages(
        self, request: QueryRequest, snapshot: SchemaSnapshot, history: List[Any]
    ) -> List[Dict[str, str]]:
        ranked = self._ranker.rank_tables(request.question, snapshot)
        schema_text = render_schema(snapshot, ranked, self._schema_cfg.max_prompt_chars)
        system_msg = {"role": "system", "content": self._prompts.system_prompt()}
        user_msg = {
            "role": "user",
            "content": user_message(schema_text, [turn.model_dump() for turn in history], request.question),
        }
        return [system_msg, *self._prompts.few_shot_messages(), user_msg]

    def _parse_response(self, raw: str) -> GeneratedQuery:
        payload = _extract_json(raw)
        if payload is None:
            match = _SQL_FENCE.search(raw or "")
            if match and match.group(1).strip():
                return GeneratedQuery(
                    sql=match.group(1).strip(),
                    explanation="Recovered from a fenced SQL block.",
                    confidence=self._cfg.fallback_confidence,
                    warnings=[FALLBACK_WARNING],
                )
            raise QueryGenerationError("generation output is neither a JSON object nor a fenced SQL block")

        errors = list(self._prompts.response_validator.iter_errors(payload))
        if errors:
            details = "; ".join(err.message for err in errors)
            raise QueryGenerationError(f"generation output failed validation: {details}")

        needs_clarification = bool(payload.get("needsClarification"))
        return GeneratedQuery(
            sql="" if needs_clarification else (payload.get("sql") or "").strip(),
            explanation=payload.get("explanation") or "",
            confidence=normalize_confidence(payload.get("confidence")),
            warnings=list(payload.get("warnings") or []),
            needs_clarification=needs_clarification,
            clarification_question=payload.get("clarificationQuestion") or None,
            referenced_tables=list(payload.get("referencedTables") or []),
        )

    def _unresolved_reference(self, question: str, has_history: bool) -> Optional[str]:
        if has_history:
            return None
        words = _WORD.findall(question.lower())
        referents = [w for w in words if w in _REFERENT_WORDS]
        if not referents:
            return None
        for word in words:
            if word in _REFERENT_WORDS or word in _FILLER_WORDS:
                continue
            # Any other content word (a table name, a filter) gives the model something to resolve.
            return None
        return referents[0]

    def _reference_clarification(self, word: str, snapshot: SchemaSnapshot) -> GeneratedQuery:
        question = f'What does "{word}" refer to? There is no earlier question in this conversation.'
        names = snapshot.table_names()[:5]
        if names:
            question += " For example, you could ask about " + ", ".join(names) + "."
        return GeneratedQuery(
            sql="",
            explanation="The question refers to earlier results that do not exist.",
            confidence=0,
            needs_clarification=True,
            clarification_question=question,
        )


def normalize_confidence(value: Any) -> int:
    if isinstance(value, bool):
        raise QueryGenerationError("confidence must be a number or high/medium/low")
    if isinstance(value, str):
        word = value.strip().lower()
        if word in CONFIDENCE_WORDS:
            return CONFIDENCE_WORDS[word]
        try:
            value = float(word)
        except ValueError as exc:
            raise QueryGenerationError(f"unrecognised confidence {value!r}") from exc
    if isinstance(value, (int, float)):
        if math.isnan(value):
            raise QueryGenerationError("confidence is not a number")
        return int(round(min(max(float(value), 0.0), 100.0)))
    raise QueryGenerationError("confidence is missing")


def _extract_json(raw: str) -> Optional[Dict[str, Any]]:
    text = (raw or "").strip()
    candidates = [text]
    fenced = _JSON_FENCE.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


__all__ = ["QuerySynthesizer", "normalize_confidence"]
