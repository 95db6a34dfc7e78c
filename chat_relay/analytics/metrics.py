"""Thread-safe in-process collector of request events."""

from __future__ import annotations

import statistics
import threading
import time
from collections import deque
from datetime import datetime, timezone


class RelayMetrics:
    """Collects analytics records for the stats endpoint.

    Thread-safe: ``write()`` runs on worker threads via the AnalyticsLogger.
    Only the newest ``max_events`` records are retained.
    """

    def __init__(self, max_events: int = 500) -> None:
        self.start_time: float = time.time()
        self._events: deque[dict] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._seq = 0
        self._total = 0
        self._failures = 0

    def write(self, record: dict) -> None:
        """Append a record (thread-safe). Adds ``_seq`` and ``event_timestamp``."""
        with self._lock:
            record = dict(record)  # shallow copy to avoid caller mutation
            record["_seq"] = self._seq
            record.setdefault("event_timestamp", datetime.now(timezone.utc).isoformat())
            self._seq += 1
            self._total += 1
            if not record.get("was_success", False):
                self._failures += 1
            self._events.append(record)

    def events_since(self, seq: int) -> list[dict]:
        """Return events with ``_seq`` > *seq*."""
        with self._lock:
            return [e for e in self._events if e["_seq"] > seq]

    def snapshot(self) -> dict:
        with self._lock:
            events = list(self._events)
            total = self._total
            failures = self._failures

        durations = [e["duration_ms"] for e in events if e.get("duration_ms") is not None]
        response_lengths = [
            e["response_length"] for e in events
            if e.get("was_success") and e.get("response_length") is not None
        ]
        eval_counts = [
            e["gemma_eval_count"] for e in events if e.get("gemma_eval_count") is not None
        ]
        return {
            "uptime_s": round(time.time() - self.start_time, 1),
            "total_requests": total,
            "total_failures": failures,
            "total_images": sum(e.get("image_count") or 0 for e in events),
            "avg_duration_ms": round(statistics.mean(durations), 1) if durations else 0,
            "avg_response_length": round(statistics.mean(response_lengths), 1) if response_lengths else 0,
            "avg_eval_count": round(statistics.mean(eval_counts), 1) if eval_counts else 0,
            "recent": events[-50:],
        }
