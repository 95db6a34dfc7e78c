"""Tests for chat_relay.cli.main."""

from __future__ import annotations

import json

import pytest

from chat_relay.cli.main import main
from chat_relay.sessions.store import SessionStore, record_to_json
from chat_relay.storage import FilesystemObjectStore
from chat_relay.types import Turn

ENV_VARS = (
    "COOKIE_SECRET", "GCS_SESSION_BUCKET_NAME", "CLOUD_RUN_GEMMA_URL", "OLLAMA_MODEL",
    "BIGQUERY_DATASET", "BIGQUERY_TABLE", "RELAY_ENV", "NODE_ENV",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write_config(tmp_path, **overrides) -> str:
    raw = {
        "cookie": {"secret": "abc"},
        "storage": {"backend": "filesystem", "root": str(tmp_path / "store")},
        "upstream": {"service_url": "http://model.test", "auth": "static"},
    }
    raw.update(overrides)
    path = tmp_path / "chat-relay.json"
    path.write_text(json.dumps(raw))
    return str(path)


class TestValidate:
    def test_valid(self, tmp_path, capsys):
        main(["-c", _write_config(tmp_path), "validate"])
        out = capsys.readouterr().out
        assert "Config is valid." in out
        assert "Storage: filesystem" in out

    def test_invalid(self, tmp_path, capsys):
        path = _write_config(tmp_path, cookie={})
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", path, "validate"])
        assert exc_info.value.code == 1
        assert "cookie.secret" in capsys.readouterr().out

    def test_env_satisfies_secret(self, tmp_path, capsys, monkeypatch):
        monkeypatch.setenv("COOKIE_SECRET", "from-env")
        main(["-c", _write_config(tmp_path, cookie={}), "validate"])
        assert "Config is valid." in capsys.readouterr().out


class TestShowSession:
    def test_prints_record(self, tmp_path, capsys):
        path = _write_config(tmp_path)
        objects = FilesystemObjectStore(tmp_path / "store")
        record = SessionStore.new_record("u1", "s1")
        record.chat_history.append(Turn("hi", response="hello"))
        objects.put("sessions/u1/s1.json", json.dumps(record_to_json(record)).encode())

        main(["-c", path, "show-session", "u1", "s1"])
        data = json.loads(capsys.readouterr().out)
        assert data["sessionId"] == "s1"
        assert data["chatHistory"] == [{"prompt": "hi", "response": "hello"}]

    def test_missing_session(self, tmp_path, capsys):
        with pytest.raises(SystemExit):
            main(["-c", _write_config(tmp_path), "show-session", "u1", "nope"])
        assert "No session nope" in capsys.readouterr().err


def test_no_command_prints_help(capsys):
    with pytest.raises(SystemExit):
        main([])
    assert "chat-relay" in capsys.readouterr().out
