"""Shared fixtures for chat-relay tests."""

from __future__ import annotations

import json

import pytest

from chat_relay.config import load_config
from chat_relay.sessions import SessionResolver, SessionStore
from chat_relay.storage import MemoryObjectStore
from chat_relay.types import RelayConfig, UpstreamError

SECRET = "test-secret"


def ndjson(*fragments: dict) -> bytes:
    return b"".join(json.dumps(f, ensure_ascii=False).encode() + b"\n" for f in fragments)


def chunk(text: str) -> dict:
    return {"message": {"role": "assistant", "content": text}, "done": False}


def done(**stats) -> dict:
    return {"message": {"role": "assistant", "content": ""}, "done": True, **stats}


class FakeUpstream:
    """Byte stream handle that replays chunks, optionally failing partway."""

    def __init__(self, chunks: list[bytes], fail_after: int | None = None, exc: Exception | None = None):
        self.chunks = chunks
        self.fail_after = fail_after
        self.exc = exc or UpstreamError("connection reset")
        self.closed = False
        self.yielded = 0

    async def aiter_bytes(self):
        for i, data in enumerate(self.chunks):
            if self.fail_after is not None and i >= self.fail_after:
                raise self.exc
            self.yielded += 1
            yield data
        if self.fail_after is not None and self.fail_after >= len(self.chunks):
            raise self.exc

    async def aclose(self):
        self.closed = True


class FailingObjectStore(MemoryObjectStore):
    """Memory store whose writes (and optionally reads) raise."""

    def __init__(self, fail_reads: bool = False):
        super().__init__()
        self.fail_reads = fail_reads

    def get(self, key):
        if self.fail_reads:
            raise OSError("disk on fire")
        return super().get(key)

    def put(self, key, data, content_type="application/json"):
        raise OSError("bucket unavailable")


@pytest.fixture
def config() -> RelayConfig:
    return load_config(config_dict={
        "cookie": {"secret": SECRET},
        "storage": {"backend": "memory"},
        "upstream": {
            "service_url": "http://model.test",
            "model": "gemma3:4b",
            "auth": "static",
            "token": "tok",
        },
        "analytics": {"backend": "memory"},
    }, use_env=False)


@pytest.fixture
def objects() -> MemoryObjectStore:
    return MemoryObjectStore()


@pytest.fixture
def store(objects) -> SessionStore:
    return SessionStore(objects)


@pytest.fixture
def resolver(store, config) -> SessionResolver:
    return SessionResolver(store, config.cookie)
