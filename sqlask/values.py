"""Closed set of cell values produced at the execution boundary.

Driver rows come back as loosely typed Python objects. They are converted
exactly once, in the sandbox, into one of the variants below so that the
presenter and exporters only ever deal with a known set of shapes.
"""

from __future__ import annotations

import datetime as dt
import decimal
import json
import math
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class NullValue(BaseModel):
    kind: Literal["null"] = "null"

    def plain(self) -> Any:
        return None


class BoolValue(BaseModel):
    kind: Literal["bool"] = "bool"
    value: bool

    def plain(self) -> Any:
        return self.value


class IntValue(BaseModel):
    kind: Literal["int"] = "int"
    value: int

    def plain(self) -> Any:
        return self.value


class FloatValue(BaseModel):
    kind: Literal["float"] = "float"
    value: float

    def plain(self) -> Any:
        return self.value


class TextValue(BaseModel):
    kind: Literal["text"] = "text"
    value: str

    def plain(self) -> Any:
        return self.value


class TimestampValue(BaseModel):
    kind: Literal["timestamp"] = "timestamp"
    value: str  # ISO 8601

    def plain(self) -> Any:
        return self.value


class JsonValue(BaseModel):
    kind: Literal["json"] = "json"
    value: Any

    def plain(self) -> Any:
        return self.value


Cell = Annotated[
    Union[NullValue, BoolValue, IntValue, FloatValue, TextValue, TimestampValue, JsonValue],
    Field(discriminator="kind"),
]


def to_cell(raw: Any) -> Cell:
    if raw is None:
        return NullValue()
    # bool before int: bool is an int subclass
    if isinstance(raw, bool):
        return BoolValue(value=raw)
    if isinstance(raw, int):
        return IntValue(value=raw)
    if isinstance(raw, float):
        return FloatValue(value=raw) if math.isfinite(raw) else TextValue(value=_non_finite(raw))
    if isinstance(raw, decimal.Decimal):
        if not raw.is_finite():
            return TextValue(value=_non_finite(raw))
        if raw == raw.to_integral_value():
            return IntValue(value=int(raw))
        return FloatValue(value=float(raw))
    if isinstance(raw, (dt.datetime, dt.date, dt.time)):
        return TimestampValue(value=raw.isoformat())
    if isinstance(raw, dt.timedelta):
        return TextValue(value=str(raw))
    if isinstance(raw, (dict, list, tuple)):
        return JsonValue(value=_json_safe(raw))
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return TextValue(value=bytes(raw).hex())
    if isinstance(raw, uuid.UUID):
        return TextValue(value=str(raw))
    if isinstance(raw, str):
        return TextValue(value=raw)
    return TextValue(value=str(raw))


def _non_finite(number: Any) -> str:
    # PostgreSQL spelling; JSON has no literal for these.
    if number.is_nan() if isinstance(number, decimal.Decimal) else math.isnan(number):
        return "NaN"
    return "Infinity" if number > 0 else "-Infinity"


def _json_safe(raw: Any) -> Any:
    return json.loads(json.dumps(raw, default=_json_default), parse_constant=str)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (dt.datetime, dt.date, dt.time)):
        return obj.isoformat()
    if isinstance(obj, decimal.Decimal):
        return float(obj) if obj.is_finite() else _non_finite(obj)
    return str(obj)


def display(cell: Cell) -> str:
    """Plain-text rendering used by tables and CSV."""
    if isinstance(cell, NullValue):
        return "null"
    if isinstance(cell, BoolValue):
        return "true" if cell.value else "false"
    if isinstance(cell, FloatValue):
        return repr(cell.value)
    if isinstance(cell, JsonValue):
        return json.dumps(cell.value, sort_keys=True, separators=(",", ":"))
    return str(cell.value)


__all__ = [
    "BoolValue",
    "Cell",
    "FloatValue",
    "IntValue",
    "JsonValue",
    "NullValue",
    "TextValue",
    "TimestampValue",
    "display",
    "to_cell",
]
