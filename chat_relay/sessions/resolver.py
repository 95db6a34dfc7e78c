"""Per-request session resolution from the identity header and signed cookie."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from starlette.responses import Response

from ..cookies import sign, unsign
from ..types import CookieConfig, ResolutionState, SessionRecord, Turn
from .store import SessionStore

logger = logging.getLogger(__name__)


class SessionHandle:
    """The request's view of one session: identity plus the live history list.

    Handlers append turns to :attr:`chat_history` and call :meth:`save`; the
    identity travels with the handle so callers never re-specify it.
    """

    persistent = True

    def __init__(self, store: SessionStore | None, record: SessionRecord) -> None:
        self._store = store
        self.record = record

    @property
    def id(self) -> str:
        return self.record.session_id

    @property
    def user_id(self) -> str | None:
        return self.record.user_id

    @property
    def chat_history(self) -> list[Turn]:
        return self.record.chat_history

    async def save(self) -> None:
        await self._store.save(self.record.user_id, self.record.session_id, self.record)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.id} user={self.user_id} turns={len(self.chat_history)}>"


class NullSessionHandle(SessionHandle):
    """Throwaway session for requests without an identity. Saves are dropped."""

    persistent = False

    def __init__(self) -> None:
        super().__init__(
            store=None,
            record=SessionRecord(session_id=f"invalid-session-{uuid.uuid4()}", user_id=None),
        )

    async def save(self) -> None:
        logger.error("[Session: %s] Session save blocked: missing user id", self.id)


@dataclass
class SessionResolution:
    handle: SessionHandle
    state: ResolutionState
    set_cookie: str | None = None  # signed value to send, if any
    clear_cookie: bool = False


class SessionResolver:
    """Turn ``(identity, cookie)`` into a bound :class:`SessionHandle`.

    ===================  ==============================================
    no identity          BLOCKED: NullSessionHandle, no cookie changes
    no cookie            NEW_SESSION: new id, set cookie
    cookie fails verify  NEW_SESSION: clear cookie, new id, set cookie
    cookie ok, found     RESUMED: loaded record
    cookie ok, missing   REINITIALIZED: same id, fresh record
    ===================  ==============================================
    """

    def __init__(self, store: SessionStore, cookie: CookieConfig, *, secure: bool = False) -> None:
        self.store = store
        self.cookie = cookie
        self.secure = secure

    async def resolve(self, user_id: str | None, cookie_value: str | None) -> SessionResolution:
        if not user_id:
            handle = NullSessionHandle()
            logger.error(
                "[Session: %s] Missing identity header; session persistence disabled",
                handle.id,
            )
            return SessionResolution(handle=handle, state=ResolutionState.BLOCKED)

        clear_cookie = False
        if cookie_value:
            session_id = unsign(cookie_value, self.cookie.secret)
            if session_id:
                record = await self.store.load(user_id, session_id)
                if record is not None:
                    return SessionResolution(
                        handle=SessionHandle(self.store, record),
                        state=ResolutionState.RESUMED,
                    )
                return SessionResolution(
                    handle=SessionHandle(self.store, self.store.new_record(user_id, session_id)),
                    state=ResolutionState.REINITIALIZED,
                )
            logger.warning("[User: %s] Invalid/tampered session cookie. Clearing.", user_id)
            clear_cookie = True

        session_id = str(uuid.uuid4())
        return SessionResolution(
            handle=SessionHandle(self.store, self.store.new_record(user_id, session_id)),
            state=ResolutionState.NEW_SESSION,
            set_cookie=sign(session_id, self.cookie.secret),
            clear_cookie=clear_cookie,
        )

    def apply_cookies(self, resolution: SessionResolution, response: Response) -> Response:
        """Write the resolution's cookie changes onto an outgoing response."""
        if resolution.clear_cookie:
            response.delete_cookie(self.cookie.name, httponly=True, samesite="lax", secure=self.secure)
        if resolution.set_cookie:
            response.set_cookie(
                self.cookie.name,
                resolution.set_cookie,
                max_age=self.cookie.max_age_days * 24 * 60 * 60,
                httponly=True,
                secure=self.secure,
                samesite="lax",
            )
        return response
