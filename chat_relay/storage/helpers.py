"""Shared helpers for storage backends and records."""

from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import quote

# Left unescaped in URI components besides alphanumerics and "-_.~",
# which quote() already keeps.
_URI_COMPONENT_SAFE = "!*'()"


def dt_to_str(dt: datetime) -> str:
    return dt.isoformat()


def str_to_dt(s: str) -> datetime:
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def encode_component(value: str) -> str:
    """Percent-encode one key segment for use in an object key."""
    return quote(value, safe=_URI_COMPONENT_SAFE)
