from __future__ import annotations

import json
import pathlib
from typing import Any, Dict, List

from jsonschema import Draft7Validator

from .config import SynthesisConfig
from .errors import ConfigError

SYSTEM_PROMPT = """You are an expert SQL query generator for a {dialect} database.
Convert the user's natural language question into ONE read-only SQL query.

Rules:
1. Generate ONLY a single SELECT statement (CTEs allowed). Never INSERT, UPDATE, DELETE, DROP, ALTER, CREATE or TRUNCATE.
2. Use only tables and columns that appear in the schema.
3. Use JOINs that follow the listed relationships.
4. Name aggregate result columns after the aggregate, e.g. COUNT(*) AS count.
5. Add ORDER BY when it makes the answer clearer and LIMIT 100 unless the question asks for everything.
6. Use previous questions and queries to resolve follow-ups such as "list them" or "the previous ones".
7. If the question is ambiguous or refers to something you cannot resolve, set needsClarification to true,
   leave sql empty and ask a short clarificationQuestion.

Respond with ONLY a JSON object of this shape:
{{"sql": "...", "explanation": "...", "confidence": 0-100, "warnings": [], "needsClarification": false,
 "clarificationQuestion": null, "referencedTables": []}}"""


class PromptResources:
    def __init__(self, cfg: SynthesisConfig):
        self.examples = _load_json(cfg.examples_path)
        self.response_schema = _load_json(cfg.response_schema_path)
        self.response_validator = Draft7Validator(self.response_schema)
        self._dialect = cfg.dialect

    def system_prompt(self) -> str:
        return SYSTEM_PROMPT.format(dialect=self._dialect)

    def few_shot_messages(self) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        for example in self.examples.get("generation_examples", []):
            messages.append(
                {
                    "role": "user",
                    "content": user_message(example["schema"], example.get("history", []), example["question"]),
                }
            )
            messages.append({"role": "assistant", "content": json.dumps(example["expected_output"])})
        return messages


def user_message(schema_text: str, history: List[Dict[str, Any]], question: str) -> str:
    sections = [f"Database schema:\n{schema_text}"]
    if history:
        turns = []
        for index, turn in enumerate(history, start=1):
            line = f"{index}. Q: {turn['question']}"
            if turn.get("sql"):
                line += f"\n   SQL: {turn['sql']}"
            if turn.get("result_summary"):
                line += f"\n   Result: {turn['result_summary']}"
            turns.append(line)
        sections.append("Previous questions in this conversation:\n" + "\n".join(turns))
    sections.append(f"Question: {question}")
    return "\n\n".join(sections)


def _load_json(path: str) -> Dict[str, Any]:
    path_obj = pathlib.Path(path)
    if not path_obj.is_absolute():
        path_obj = pathlib.Path.cwd() / path_obj
    try:
        with path_obj.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"prompt resource {path_obj} could not be loaded: {exc}") from exc


__all__ = ["PromptResources", "SYSTEM_PROMPT", "user_message"]
