"""SessionStore: (user, session) -> SessionRecord over an ObjectStore."""

from __future__ import annotations

import asyncio
import json
import logging

from ..storage.base import ObjectNotFoundError, ObjectStore
from ..storage.helpers import dt_to_str, encode_component, str_to_dt, utcnow
from ..types import SessionRecord, SessionSaveError, Turn

logger = logging.getLogger(__name__)

_KNOWN_KEYS = frozenset({"sessionId", "userId", "chatHistory", "createdAt", "lastUpdated"})


def _parse_dt(value):
    if not isinstance(value, str):
        return None
    try:
        return str_to_dt(value)
    except ValueError:
        return None


def _coerce_history(raw, session_id: str) -> list[Turn]:
    if not isinstance(raw, list):
        return []
    turns: list[Turn] = []
    for entry in raw:
        if isinstance(entry, dict):
            turns.append(Turn.from_dict(entry))
        else:
            logger.warning("[Session: %s] Dropping malformed history entry: %r", session_id, entry)
    return turns


def record_from_json(data: dict, user_id: str, session_id: str) -> SessionRecord:
    """Build a record from stored JSON. ``chatHistory`` is coerced to a list."""
    return SessionRecord(
        session_id=session_id,
        user_id=user_id,
        chat_history=_coerce_history(data.get("chatHistory"), session_id),
        created_at=_parse_dt(data.get("createdAt")),
        last_updated=_parse_dt(data.get("lastUpdated")),
        extra={k: v for k, v in data.items() if k not in _KNOWN_KEYS},
    )


def record_to_json(record: SessionRecord) -> dict:
    data = dict(record.extra)
    data.update({
        "sessionId": record.session_id,
        "userId": record.user_id,
        "chatHistory": [turn.to_dict() for turn in record.chat_history],
        "createdAt": dt_to_str(record.created_at) if record.created_at else None,
        "lastUpdated": dt_to_str(record.last_updated) if record.last_updated else None,
    })
    return data


class SessionStore:
    """Load and save session records as JSON objects.

    Objects live at ``{folder}/{user_id}/{session_id}.json`` with both ids
    percent-encoded. Loads never raise: a missing object or any I/O or decode
    failure yields ``None`` so the caller starts fresh. Saves raise
    :class:`SessionSaveError` on failure.

    There is no locking. Concurrent writers to the same key are last-write-wins.
    """

    def __init__(self, objects: ObjectStore, folder: str = "sessions") -> None:
        self.objects = objects
        self.folder = folder.strip("/")

    def key_for(self, user_id: str, session_id: str) -> str:
        if not user_id or not session_id:
            raise ValueError("user_id and session_id are required to build a session key")
        return f"{self.folder}/{encode_component(user_id)}/{encode_component(session_id)}.json"

    @staticmethod
    def new_record(user_id: str | None, session_id: str) -> SessionRecord:
        return SessionRecord(
            session_id=session_id,
            user_id=user_id,
            chat_history=[],
            created_at=utcnow(),
        )

    async def load(self, user_id: str, session_id: str) -> SessionRecord | None:
        if not user_id:
            logger.error("Attempted to load session %s without a user id", session_id)
            return None
        key = self.key_for(user_id, session_id)
        try:
            raw = await asyncio.to_thread(self.objects.get, key)
        except ObjectNotFoundError:
            return None
        except Exception as e:
            logger.error(
                "Error loading session %s for user %s (%s): %s",
                session_id, user_id, key, e,
            )
            return None

        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            logger.error("Corrupt session object %s: %s", key, e)
            return None
        if not isinstance(data, dict):
            logger.error("Corrupt session object %s: expected a JSON object", key)
            return None
        return record_from_json(data, user_id, session_id)

    async def save(self, user_id: str | None, session_id: str, record: SessionRecord) -> SessionRecord:
        """Overwrite the stored record. Stamps ``last_updated``; keeps ``created_at``."""
        if not user_id:
            raise SessionSaveError("Cannot save session without user id")
        key = self.key_for(user_id, session_id)

        now = utcnow()
        if not isinstance(record.chat_history, list):
            record.chat_history = []
        record.last_updated = now
        if record.created_at is None:
            record.created_at = now
        record.user_id = user_id
        record.session_id = session_id

        payload = json.dumps(record_to_json(record)).encode("utf-8")
        try:
            await asyncio.to_thread(self.objects.put, key, payload, "application/json")
        except Exception as e:
            logger.error(
                "Error saving session %s for user %s (%s): %s",
                session_id, user_id, key, e,
            )
            raise SessionSaveError(f"Failed to save session: {e}") from e
        return record
