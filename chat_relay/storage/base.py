"""ObjectStore abstract base class: whole-object blob storage interface."""

from __future__ import annotations

from abc import ABC, abstractmethod


class ObjectNotFoundError(KeyError):
    """No object exists under the requested key."""


class ObjectStore(ABC):
    """Pluggable blob backend. Objects are read and overwritten whole."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the object's bytes. Raises ObjectNotFoundError if absent."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/json") -> None:
        """Create or overwrite the object under *key*."""

    def describe(self) -> str:
        return type(self).__name__
