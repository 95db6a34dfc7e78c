"""Tests for chat_relay.proxy.server (HTTP layer end to end)."""

from __future__ import annotations

import json

import httpx
import pytest
from starlette.testclient import TestClient

from chat_relay.config import load_config
from chat_relay.proxy import build_services, create_app
from chat_relay.storage import MemoryObjectStore
from chat_relay.types import ConfigError, UpstreamAuthError
from chat_relay.upstream import StaticTokenProvider

from .conftest import FailingObjectStore, chunk, done, ndjson

USER = {"x-user-id": "user-1"}


def _events(text: str) -> list[tuple[str, dict]]:
    parsed = []
    for frame in text.split("\n\n"):
        if not frame:
            continue
        kind = "text"
        for line in frame.split("\n"):
            if line.startswith("event: "):
                kind = line[len("event: "):]
            elif line.startswith("data: "):
                parsed.append((kind, json.loads(line[len("data: "):])))
    return parsed


class FakeModel:
    """MockTransport handler recording every request body."""

    def __init__(self, *fragments: dict, status: int = 200):
        self.fragments = fragments or (chunk("Hel"), chunk("lo"), done(eval_count=2))
        self.status = status
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.status >= 400:
            return httpx.Response(self.status, json={"error": "model unavailable"})
        if body["stream"]:
            return httpx.Response(200, content=ndjson(*self.fragments))
        return httpx.Response(200, json={"message": {"role": "assistant", "content": "Hello"}, "done": True})


class CountingObjectStore(MemoryObjectStore):
    def __init__(self):
        super().__init__()
        self.puts = 0

    def put(self, key, data, content_type="application/json"):
        self.puts += 1
        super().put(key, data, content_type)


class FailingTokenProvider:
    def __init__(self):
        self.audiences: list[str] = []

    async def get_token(self, audience: str) -> str:
        self.audiences.append(audience)
        raise UpstreamAuthError("Failed to fetch identity token: no default credentials")


@pytest.fixture
def make_app(config):
    def factory(model: FakeModel | None = None, objects=None, tokens=None):
        model = model or FakeModel()
        services = build_services(
            config,
            objects=objects if objects is not None else MemoryObjectStore(),
            tokens=tokens or StaticTokenProvider("tok"),
            http=httpx.AsyncClient(transport=httpx.MockTransport(model)),
        )
        return create_app(services=services), services, model
    return factory


def _stored(services, user="user-1"):
    objects = services.sessions.objects.objects
    return [json.loads(data) for key, (data, _) in objects.items() if key.startswith(f"sessions/{user}/")]


# ---------------------------------------------------------------------------
# create_app
# ---------------------------------------------------------------------------


class TestCreateApp:
    def test_invalid_config_raises(self):
        config = load_config(config_dict={}, use_env=False)
        with pytest.raises(ConfigError) as exc_info:
            create_app(config=config)
        assert any("cookie.secret" in e for e in exc_info.value.errors)

    def test_healthz(self, make_app):
        app, _, _ = make_app()
        with TestClient(app) as client:
            assert client.get("/healthz").json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# /generate-stream
# ---------------------------------------------------------------------------


class TestGenerateStream:
    def test_streams_and_persists(self, make_app):
        app, services, model = make_app()
        with TestClient(app) as client:
            resp = client.post("/generate-stream", data={"prompt": "hi"}, headers=USER)
            assert resp.status_code == 200
            assert resp.headers["content-type"].startswith("text/event-stream")
            assert resp.headers["cache-control"] == "no-cache"
            assert "gemma-session=" in resp.headers["set-cookie"]
            assert _events(resp.text) == [
                ("text", {"text": "Hel"}),
                ("text", {"text": "lo"}),
                ("done", {"fullResponse": "Hello", "complete": True, "stats": {"eval_count": 2}}),
            ]

        stored = _stored(services)
        assert len(stored) == 1
        assert stored[0]["userId"] == "user-1"
        assert stored[0]["chatHistory"] == [{"prompt": "hi", "response": "Hello"}]
        assert model.requests[0]["messages"] == [{"role": "user", "content": "hi"}]
        assert model.requests[0]["model"] == "gemma3:4b"

    def test_cookie_resumes_session(self, make_app):
        app, services, model = make_app()
        with TestClient(app) as client:
            client.post("/generate-stream", data={"prompt": "first"}, headers=USER)
            resp = client.post("/generate-stream", data={"prompt": "second"}, headers=USER)
            assert "set-cookie" not in resp.headers
            history = client.get("/api/history", headers=USER).json()["chatHistory"]

        assert model.requests[1]["messages"] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "Hello"},
            {"role": "user", "content": "second"},
        ]
        assert [t["prompt"] for t in history] == ["first", "second"]
        assert len(_stored(services)) == 1

    def test_without_identity_nothing_persisted(self, make_app):
        app, services, _ = make_app()
        with TestClient(app) as client:
            resp = client.post("/generate-stream", data={"prompt": "hi"})
            assert resp.status_code == 200
            assert _events(resp.text)[-1][0] == "done"
            assert "set-cookie" not in resp.headers
        assert services.sessions.objects.objects == {}

    def test_missing_prompt(self, make_app):
        app, services, model = make_app()
        with TestClient(app) as client:
            resp = client.post("/generate-stream", data={"prompt": "   "}, headers=USER)
            assert resp.status_code == 400
            assert resp.json() == {"error": "Prompt is missing."}
        assert model.requests == []
        assert services.sessions.objects.objects == {}

    def test_upstream_rejection_records_error_turn(self, make_app):
        app, services, _ = make_app(FakeModel(status=500))
        with TestClient(app) as client:
            resp = client.post("/generate-stream", data={"prompt": "hi"}, headers=USER)
            assert resp.status_code == 502
            assert resp.json()["error"].startswith("Failed to start generation:")
            assert "set-cookie" in resp.headers

        history = _stored(services)[0]["chatHistory"]
        assert len(history) == 1
        assert history[0]["prompt"] == "hi"
        assert history[0]["error"].startswith("Failed to start generation:")
        assert "response" not in history[0]

    def test_token_failure_records_one_error_turn(self, make_app):
        objects = CountingObjectStore()
        tokens = FailingTokenProvider()
        app, services, model = make_app(objects=objects, tokens=tokens)
        with TestClient(app) as client:
            resp = client.post("/generate-stream", data={"prompt": "hi"}, headers=USER)
            assert resp.status_code == 502
            assert resp.json()["error"] == (
                "Failed to start generation: Failed to fetch identity token: no default credentials"
            )

        assert tokens.audiences == ["http://model.test"]
        assert model.requests == []
        assert objects.puts == 1
        history = _stored(services)[0]["chatHistory"]
        assert history == [{"prompt": "hi", "error": resp.json()["error"]}]

    def test_missing_service_url_records_error_turn(self, make_app, config):
        config.upstream.service_url = ""
        app, services, model = make_app()
        with TestClient(app) as client:
            resp = client.post("/generate-stream", data={"prompt": "hi"}, headers=USER)
            assert resp.status_code == 502
            assert "Service URL is required" in resp.json()["error"]
        assert model.requests == []
        assert len(_stored(services)[0]["chatHistory"]) == 1

    def test_text_before_error_fragment_is_forwarded(self, make_app):
        app, services, _ = make_app(FakeModel(chunk("Hi"), {"error": "boom"}))
        with TestClient(app) as client:
            events = _events(client.post("/generate-stream", data={"prompt": "hi"}, headers=USER).text)
        assert events[0] == ("text", {"text": "Hi"})
        assert events[-1][0] == "error"
        assert "boom" in _stored(services)[0]["chatHistory"][0]["error"]

    def test_in_stream_error(self, make_app):
        app, services, _ = make_app(FakeModel(chunk("par"), {"error": "model crashed"}))
        with TestClient(app) as client:
            resp = client.post("/generate-stream", data={"prompt": "hi"}, headers=USER)
            events = _events(resp.text)
        assert events[-1][0] == "error"
        assert "model crashed" in events[-1][1]["message"]
        assert "model crashed" in _stored(services)[0]["chatHistory"][0]["error"]

    def test_image_upload(self, make_app):
        app, services, model = make_app()
        with TestClient(app) as client:
            resp = client.post(
                "/generate-stream",
                data={"prompt": "what is this"},
                files=[("images", ("cat.png", b"\x89PNG-bytes", "image/png"))],
                headers=USER,
            )
            assert resp.status_code == 200

        sent = model.requests[0]["messages"][-1]
        assert sent["content"] == "what is this"
        assert len(sent["images"]) == 1
        assert _stored(services)[0]["chatHistory"][0]["prompt"] == "what is this (+ 1 image)"

    def test_non_image_upload_rejected(self, make_app):
        app, services, model = make_app()
        with TestClient(app) as client:
            resp = client.post(
                "/generate-stream",
                data={"prompt": "read this"},
                files=[("images", ("notes.txt", b"plain text", "text/plain"))],
                headers=USER,
            )
            assert resp.status_code == 400
            assert "not valid images" in resp.json()["error"]
        assert model.requests == []
        assert "not valid images" in _stored(services)[0]["chatHistory"][0]["error"]

    def test_tampered_cookie_replaced(self, make_app):
        app, services, _ = make_app()
        with TestClient(app) as client:
            resp = client.post(
                "/generate-stream",
                data={"prompt": "hi"},
                headers={**USER, "cookie": "gemma-session=forged.signature"},
            )
            cookies = resp.headers.get_list("set-cookie")
        assert len(cookies) == 2
        assert "Max-Age=0" in cookies[0]
        assert len(_stored(services)) == 1

    def test_analytics_recorded(self, make_app):
        app, services, _ = make_app()
        with TestClient(app) as client:
            client.post("/generate-stream", data={"prompt": "hi"}, headers=USER)
            client.post("/generate-stream", data={"prompt": ""}, headers=USER)
        snap = services.metrics.snapshot()
        assert snap["total_requests"] == 2
        assert snap["total_failures"] == 1
        ok = next(e for e in snap["recent"] if e["was_success"])
        assert ok["response_length"] == 5
        assert ok["gemma_eval_count"] == 2


# ---------------------------------------------------------------------------
# /generate
# ---------------------------------------------------------------------------


class TestGenerate:
    def test_success(self, make_app):
        app, services, model = make_app()
        with TestClient(app) as client:
            resp = client.post("/generate", data={"prompt": "hi"}, headers=USER)
            assert resp.status_code == 200
            body = resp.json()
        assert body["result"] == "Hello"
        assert body["error"] is None
        assert body["chatHistory"] == [{"prompt": "hi", "response": "Hello"}]
        assert model.requests[0]["stream"] is False
        assert _stored(services)[0]["chatHistory"] == body["chatHistory"]

    def test_empty_prompt(self, make_app):
        app, _, model = make_app()
        with TestClient(app) as client:
            resp = client.post("/generate", data={"prompt": ""}, headers=USER)
            assert resp.status_code == 400
            assert resp.json()["error"] == "Please enter a prompt."
        assert model.requests == []

    def test_upstream_failure(self, make_app):
        app, services, _ = make_app(FakeModel(status=503))
        with TestClient(app) as client:
            resp = client.post("/generate", data={"prompt": "hi"}, headers=USER)
            assert resp.status_code == 502
            body = resp.json()
        assert body["result"] is None
        assert body["error"].startswith("Failed to get response:")
        assert body["chatHistory"][0]["error"] == body["error"]

    def test_missing_service_url(self, make_app, config):
        config.upstream.service_url = ""
        app, services, model = make_app()
        with TestClient(app) as client:
            resp = client.post("/generate", data={"prompt": "hi"}, headers=USER)
            assert resp.status_code == 502
            body = resp.json()
        assert body["error"] == (
            "Failed to get response: Service URL is required to call the model service"
        )
        assert model.requests == []
        assert _stored(services)[0]["chatHistory"] == [{"prompt": "hi", "error": body["error"]}]

    def test_save_failure_warns(self, make_app):
        app, _, _ = make_app(objects=FailingObjectStore())
        with TestClient(app) as client:
            body = client.post("/generate", data={"prompt": "hi"}, headers=USER).json()
        assert body["result"] == "Hello"
        assert body["error"] == "Error saving chat history. Your session might be inconsistent."


# ---------------------------------------------------------------------------
# /api/history, /api/stats
# ---------------------------------------------------------------------------


class TestReadEndpoints:
    def test_history_without_identity(self, make_app):
        app, _, _ = make_app()
        with TestClient(app) as client:
            assert client.get("/api/history").json() == {"chatHistory": []}

    def test_history_new_session_sets_cookie(self, make_app):
        app, services, _ = make_app()
        with TestClient(app) as client:
            resp = client.get("/api/history", headers=USER)
            assert resp.json() == {"chatHistory": []}
            assert "gemma-session=" in resp.headers["set-cookie"]
        assert services.sessions.objects.objects == {}

    def test_stats(self, make_app):
        app, _, _ = make_app()
        with TestClient(app) as client:
            stats = client.get("/api/stats").json()
        assert stats["total_requests"] == 0
        assert "uptime_s" in stats

    def test_stats_events_since(self, make_app):
        app, _, _ = make_app()
        with TestClient(app) as client:
            client.post("/generate-stream", data={"prompt": "one"}, headers=USER)
            client.post("/generate-stream", data={"prompt": "two"}, headers=USER)
        # A second client reads the events the first one flushed on shutdown.
        with TestClient(app) as client:
            everything = client.get("/api/stats", params={"since": -1}).json()
            newer = client.get("/api/stats", params={"since": 0}).json()
            plain = client.get("/api/stats").json()
        assert [e["_seq"] for e in everything["events"]] == [0, 1]
        assert [e["_seq"] for e in newer["events"]] == [1]
        assert "events" not in plain
