"""FilesystemObjectStore: one file per object under a root directory."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from .base import ObjectNotFoundError, ObjectStore


class FilesystemObjectStore(ObjectStore):
    """Store objects as files; key segments map to directories."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._ensure_root()

    def _ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _object_path(self, key: str) -> Path:
        parts = key.split("/")
        if any(p in ("", ".", "..") for p in parts):
            raise ValueError(f"Invalid object key: {key!r}")
        return self.root.joinpath(*parts)

    def get(self, key: str) -> bytes:
        path = self._object_path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise ObjectNotFoundError(key) from None

    def put(self, key: str, data: bytes, content_type: str = "application/json") -> None:
        path = self._object_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Atomic replace: readers never observe a partial object.
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def describe(self) -> str:
        return f"filesystem ({self.root})"
