"""Fire-and-forget analytics logging.

``log_event`` hands the record to a background task and returns at once.
Sink failures are logged and never reach the request path.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Protocol

from ..types import RelayOutcome

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


class AnalyticsSink(Protocol):
    def write(self, record: dict) -> None: ...


def build_record(
    *,
    request_id: str,
    session_id: str,
    model_name: str,
    prompt: str,
    image_count: int,
    duration_ms: float,
    outcome: RelayOutcome,
) -> dict:
    """Flatten one request's outcome into the analytics row layout."""
    stats = outcome.stats
    return {
        "event_timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "session_id": session_id,
        "model_name": model_name,
        "prompt_length": len(prompt),
        "response_length": len(outcome.text),
        "image_count": image_count,
        "duration_ms": round(duration_ms, 1),
        "was_success": outcome.success,
        "error_message": outcome.error[:MAX_ERROR_LENGTH] if outcome.error else None,
        "gemma_total_duration_ns": stats.total_duration if stats else None,
        "gemma_load_duration_ns": stats.load_duration if stats else None,
        "gemma_prompt_eval_count": stats.prompt_eval_count if stats else None,
        "gemma_eval_count": stats.eval_count if stats else None,
    }


class AnalyticsLogger:

    def __init__(self, sinks: list[AnalyticsSink] | None = None) -> None:
        self.sinks = list(sinks or [])
        self._pending: set[asyncio.Task] = set()

    def _write_all(self, record: dict) -> None:
        for sink in self.sinks:
            try:
                sink.write(record)
            except Exception as e:
                logger.error("Failed to record analytics event in %s: %s", type(sink).__name__, e)

    def log_event(self, record: dict) -> None:
        if not self.sinks:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_all(record)
            return
        task = loop.create_task(asyncio.to_thread(self._write_all, record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for in-flight writes (used at shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
