"""Utility helpers for the catalogsync package."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any


_WHITESPACE_RE = re.compile(r"\s+")


def utc_now() -> datetime:
    """Return the current time as a naive UTC datetime."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Convert aware datetimes to naive UTC; naive values are assumed UTC."""

    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_timestamp(value: Any) -> datetime | None:
    """Parse epoch seconds (int or numeric string) into naive UTC."""

    if value is None or value == "":
        return None
    try:
        seconds = int(float(value))
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def short_digest(value: str, *, length: int = 12) -> str:
    """Return a stable hexadecimal digest prefix for ``value``."""

    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def clean_text(value: Any) -> str | None:
    """Collapse whitespace and drop empty strings."""

    if value is None:
        return None
    text = _WHITESPACE_RE.sub(" ", str(value)).strip()
    return text or None


def parse_int(value: Any, default: int | None = None) -> int | None:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def parse_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def content_cache_key(profile_id: str, content_type: Any, category_id: str | None = None) -> str:
    """Key of an in-memory content projection."""

    kind = getattr(content_type, "value", content_type)
    return f"{profile_id}:{kind}:{category_id or '*'}"
