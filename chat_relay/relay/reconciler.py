"""StreamReconciler: state machine over upstream NDJSON fragments.

Fed raw byte chunks from the upstream, it returns the client events each
chunk produces and keeps the accumulated transcript for the turn::

    AWAITING_FIRST_CHUNK ──feed──▶ STREAMING ──finish──▶ TERMINATED_OK
             │                         │
             └──────────fail───────────┴─────fail──────▶ TERMINATED_ERROR

No I/O happens here; the relay driver owns the network and the session.
"""

from __future__ import annotations

import json
import logging

from ..types import GenerationStats, StreamPhase, UpstreamError
from ..upstream.client import extract_text
from .events import StreamEvent, done_event, error_event, text_event

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[StreamPhase, frozenset[StreamPhase]] = {
    StreamPhase.AWAITING_FIRST_CHUNK: frozenset({
        StreamPhase.STREAMING, StreamPhase.TERMINATED_OK, StreamPhase.TERMINATED_ERROR,
    }),
    StreamPhase.STREAMING: frozenset({
        StreamPhase.TERMINATED_OK, StreamPhase.TERMINATED_ERROR,
    }),
    StreamPhase.TERMINATED_OK: frozenset(),
    StreamPhase.TERMINATED_ERROR: frozenset(),
}


class StreamReconciler:
    """Accumulate text and translate fragments into client events."""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self.phase = StreamPhase.AWAITING_FIRST_CHUNK
        self.stats: GenerationStats | None = None
        self.error: str | None = None
        self.done_received = False
        self.upstream_error: UpstreamError | None = None
        self.skipped_fragments = 0
        self._parts: list[str] = []
        self._buffer = b""

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def terminated(self) -> bool:
        return self.phase in (StreamPhase.TERMINATED_OK, StreamPhase.TERMINATED_ERROR)

    def _transition(self, new_phase: StreamPhase) -> None:
        if new_phase not in _TRANSITIONS[self.phase]:
            raise RuntimeError(
                f"Illegal stream transition {self.phase.value} -> {new_phase.value}"
            )
        logger.debug("[Session: %s] stream %s -> %s", self.label, self.phase.value, new_phase.value)
        self.phase = new_phase

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Consume one byte chunk. A trailing partial line waits for the next chunk.

        Lines are processed in order until an upstream error fragment is seen;
        it is recorded on :attr:`upstream_error` and the rest of the chunk is
        discarded. Events from the lines before it are still returned.
        """
        if self.phase is not StreamPhase.STREAMING:
            self._transition(StreamPhase.STREAMING)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self._handle_line(line))
            if self.upstream_error is not None:
                self._buffer = b""
                break
        return events

    def flush(self) -> list[StreamEvent]:
        """Process a final line that arrived without a trailing newline."""
        if not self._buffer.strip() or self.upstream_error is not None:
            self._buffer = b""
            return []
        tail, self._buffer = self._buffer, b""
        return self._handle_line(tail)

    def finish(self) -> list[StreamEvent]:
        """Natural end of the byte stream.

        Emits a terminal ``done`` event (flagged incomplete) when the upstream
        never sent its terminal marker, so the client always receives one.
        """
        events = self.flush()
        if self.upstream_error is not None and not self.done_received:
            raise self.upstream_error
        self._transition(StreamPhase.TERMINATED_OK)
        if not self.done_received:
            events.append(done_event(self.text, complete=False))
        return events

    def fail(self, error: BaseException | str) -> list[StreamEvent]:
        message = error if isinstance(error, str) else f"Stream error: {error}"
        self.error = message
        self._transition(StreamPhase.TERMINATED_ERROR)
        return [error_event(message)]

    def _handle_line(self, raw: bytes) -> list[StreamEvent]:
        line = raw.strip()
        if not line:
            return []
        try:
            fragment = json.loads(line)
        except ValueError as e:
            self.skipped_fragments += 1
            logger.warning(
                "[Session: %s] Error parsing stream fragment: %s. Fragment: %r",
                self.label, e, line[:200],
            )
            return []
        if not isinstance(fragment, dict):
            self.skipped_fragments += 1
            logger.warning("[Session: %s] Ignoring non-object stream fragment: %r", self.label, line[:200])
            return []

        if fragment.get("error"):
            logger.error("[Session: %s] Upstream reported an error: %s", self.label, fragment["error"])
            self.upstream_error = UpstreamError(f"Upstream reported an error: {fragment['error']}")
            return []

        events: list[StreamEvent] = []
        delta = extract_text(fragment)
        if delta:
            if self.done_received:
                logger.warning("[Session: %s] Dropping text received after terminal marker", self.label)
            else:
                self._parts.append(delta)
                events.append(text_event(delta))

        if fragment.get("done") is True and not self.done_received:
            self.done_received = True
            self.stats = GenerationStats.from_fragment(fragment)
            logger.info("[Session: %s] Upstream stream 'done' received.", self.label)
            events.append(done_event(self.text, stats=self.stats.to_dict()))
        return events
