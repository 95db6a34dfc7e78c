"""Client-facing server-sent events."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

TEXT = "text"
DONE = "done"
ERROR = "error"


@dataclass
class StreamEvent:
    kind: str  # TEXT, DONE, ERROR
    data: dict = field(default_factory=dict)

    def encode(self) -> bytes:
        """SSE framing. Text deltas use the default (unnamed) event type."""
        payload = json.dumps(self.data, ensure_ascii=False)
        if self.kind == TEXT:
            return f"data: {payload}\n\n".encode()
        return f"event: {self.kind}\ndata: {payload}\n\n".encode()


def text_event(text: str) -> StreamEvent:
    return StreamEvent(TEXT, {"text": text})


def done_event(full_text: str, *, complete: bool = True, stats: dict | None = None) -> StreamEvent:
    return StreamEvent(DONE, {
        "fullResponse": full_text,
        "complete": complete,
        "stats": stats or {},
    })


def error_event(message: str) -> StreamEvent:
    return StreamEvent(ERROR, {"message": message})
