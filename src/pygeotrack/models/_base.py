"""Base model and timestamp helpers shared by pygeotrack models.

Every model inherits from :class:`GeoBaseModel` which provides:

* ``alias_generator=to_camel`` so camelCase wire keys map to
  snake_case fields, and ``model_dump(by_alias=True)`` emits camelCase.
* A ``model_validator(mode="before")`` that drops placeholder values
  (``None``, ``""``, ``"--"``, NaN) so the field default is used.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, PlainSerializer, model_validator
from pydantic.alias_generators import to_camel

_SENTINELS = frozenset({"", "--", "NaN", "nan"})

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def parse_timestamp(value: Any) -> datetime | None:
    """Convert an epoch timestamp (seconds **or** milliseconds) or ISO string to a UTC datetime.

    Naive datetimes are assumed to be UTC.  Returns ``None`` for ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        text = value.strip()
        try:
            numeric = float(text)
        except ValueError:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
        value = numeric
    ts = float(value)
    if ts >= _MS_THRESHOLD:
        ts = ts / 1000.0
    return datetime.fromtimestamp(ts, tz=UTC)


def _to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


Timestamp = Annotated[
    datetime,
    BeforeValidator(parse_timestamp),
    PlainSerializer(_to_epoch_ms, return_type=int, when_used="json"),
]
"""UTC datetime that accepts epoch seconds/ms and serializes to epoch ms in JSON."""


def utcnow() -> datetime:
    return datetime.now(UTC)


class GeoBaseModel(BaseModel):
    """Base for pygeotrack data models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_placeholders(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned
