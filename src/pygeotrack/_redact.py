"""Redaction helpers for debug logging.

Position endpoints often carry API keys in their query string and broker
payloads may echo credentials.  Everything passed through these helpers
is safe to emit at DEBUG level.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

REDACTED = "<redacted>"

_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "passwd",
        "secret",
        "token",
        "accesstoken",
        "refreshtoken",
        "apikey",
        "key",
        "authorization",
        "cookie",
    }
)

_MAX_DEPTH = 20


def is_sensitive_key(key: str) -> bool:
    """``api_key``, ``Api-Key`` and ``apiKey`` all count as the same key."""
    return key.lower().replace("_", "").replace("-", "") in _SENSITIVE_KEYS


def redact_url(url: str) -> str:
    """Mask userinfo and sensitive query parameters in *url*."""
    parts = urlsplit(url)
    netloc = parts.netloc
    if "@" in netloc:
        netloc = f"{REDACTED}@{netloc.rsplit('@', 1)[1]}"
    query = parts.query
    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        query = urlencode([(k, REDACTED if is_sensitive_key(k) else v) for k, v in pairs], safe="<>")
    return urlunsplit(parts._replace(netloc=netloc, query=query))


def _redact_text(text: str, max_string: int) -> str:
    if "://" in text and " " not in text:
        text = redact_url(text)
    if len(text) > max_string:
        return f"{text[:max_string]}…<truncated>"
    return text


def redact_for_log(value: Any, *, max_string: int = 512, _depth: int = 0) -> Any:
    """Return a copy of *value* with credentials masked and long strings cut."""
    if _depth > _MAX_DEPTH:
        return "<max-depth>"
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _redact_text(value, max_string)
    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"
    if isinstance(value, Mapping):
        return {
            str(k): REDACTED
            if is_sensitive_key(str(k))
            else redact_for_log(v, max_string=max_string, _depth=_depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, Sequence):
        return [redact_for_log(v, max_string=max_string, _depth=_depth + 1) for v in value]
    return repr(value)
