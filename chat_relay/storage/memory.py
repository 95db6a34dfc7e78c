"""MemoryObjectStore: process-local dict of objects (dev and tests)."""

from __future__ import annotations

import threading

from .base import ObjectNotFoundError, ObjectStore


class MemoryObjectStore(ObjectStore):

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes:
        with self._lock:
            try:
                return self.objects[key][0]
            except KeyError:
                raise ObjectNotFoundError(key) from None

    def put(self, key: str, data: bytes, content_type: str = "application/json") -> None:
        with self._lock:
            self.objects[key] = (bytes(data), content_type)

    def delete(self, key: str) -> None:
        with self._lock:
            self.objects.pop(key, None)

    def describe(self) -> str:
        return "memory"
