"""Relay driver: upstream byte stream -> client SSE bytes -> one committed turn."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from typing import Protocol

import anyio

from ..sessions.resolver import SessionHandle
from ..types import RelayOutcome, SessionSaveError, Turn, TurnAlreadyCommittedError
from .reconciler import StreamReconciler

logger = logging.getLogger(__name__)


class ByteStream(Protocol):
    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


class TurnRecorder:
    """Appends exactly one turn per request and attempts exactly one save.

    A second commit raises :class:`TurnAlreadyCommittedError`. Save failures
    are logged and reported through :attr:`saved`; they never propagate.
    """

    def __init__(self, handle: SessionHandle, prompt: str) -> None:
        self.handle = handle
        self.turn = Turn(prompt=prompt)
        self.committed = False
        self.saved = False
        self.save_error: str | None = None

    async def commit_response(self, text: str) -> bool:
        return await self._commit(response=text)

    async def commit_error(self, message: str) -> bool:
        return await self._commit(error=message)

    async def _commit(self, *, response: str | None = None, error: str | None = None) -> bool:
        if self.committed:
            raise TurnAlreadyCommittedError(
                f"Turn already committed for session {self.handle.id}"
            )
        self.committed = True
        self.turn.response = response
        self.turn.error = error
        self.handle.chat_history.append(self.turn)
        try:
            await self.handle.save()
        except SessionSaveError as e:
            self.save_error = str(e)
            logger.error("[Session: %s] CRITICAL: Failed to save session: %s", self.handle.id, e)
            return False
        self.saved = self.handle.persistent
        if self.saved:
            logger.info("[Session: %s] Session history saved.", self.handle.id)
        return self.saved


async def relay_stream(
    upstream: ByteStream,
    reconciler: StreamReconciler,
    recorder: TurnRecorder,
    *,
    on_complete: Callable[[RelayOutcome], None] | None = None,
) -> AsyncIterator[bytes]:
    """Yield encoded client events while committing the turn exactly once.

    Order on every terminal path is: commit the turn (append + save), then
    send the remaining events, then close. If the client goes away mid-stream
    the upstream is still closed and the partial text is still committed.
    """
    label = recorder.handle.id
    try:
        failure: Exception | None = None
        try:
            async for chunk in upstream.aiter_bytes():
                for event in reconciler.feed(chunk):
                    yield event.encode()
                if reconciler.upstream_error is not None:
                    break
            else:
                for event in reconciler.flush():
                    yield event.encode()
        except Exception as e:
            failure = e
        if failure is None:
            failure = reconciler.upstream_error

        if failure is not None and reconciler.done_received:
            logger.warning(
                "[Session: %s] Stream failed after terminal marker, keeping response: %s",
                label, failure,
            )
            failure = None

        tail = []
        if failure is None:
            try:
                tail = reconciler.finish()
            except Exception as e:
                failure = e

        if failure is None:
            logger.info("[Session: %s] Upstream stream ended.", label)
            await recorder.commit_response(reconciler.text)
        else:
            logger.error("[Session: %s] Error during upstream stream: %s", label, failure)
            tail = reconciler.fail(failure)
            await recorder.commit_error(reconciler.error)

        for event in tail:
            yield event.encode()
    finally:
        with anyio.CancelScope(shield=True):
            try:
                await upstream.aclose()
            except Exception as e:
                logger.warning("[Session: %s] Error closing upstream stream: %s", label, e)
            if not recorder.committed:
                logger.warning(
                    "[Session: %s] Client disconnected mid-stream; recording %d chars",
                    label, len(reconciler.text),
                )
                await recorder.commit_response(reconciler.text)
        if on_complete is not None:
            on_complete(RelayOutcome(
                text=reconciler.text,
                error=reconciler.error,
                stats=reconciler.stats,
                saved=recorder.saved,
            ))
