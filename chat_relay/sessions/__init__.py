from .resolver import NullSessionHandle, SessionHandle, SessionResolution, SessionResolver
from .store import SessionStore

__all__ = [
    "NullSessionHandle",
    "SessionHandle",
    "SessionResolution",
    "SessionResolver",
    "SessionStore",
]
