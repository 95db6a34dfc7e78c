"""All dataclasses, enums, and exceptions for chat-relay."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Turn & SessionRecord
# ---------------------------------------------------------------------------

@dataclass
class Turn:
    """One prompt and its response or error."""
    prompt: str
    response: str | None = None
    error: str | None = None

    @property
    def completed(self) -> bool:
        return (self.response is None) != (self.error is None)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"prompt": self.prompt}
        if self.error is not None:
            data["error"] = self.error
        else:
            data["response"] = self.response
        return data

    @classmethod
    def from_dict(cls, raw: dict) -> Turn:
        prompt = raw.get("prompt")
        response = raw.get("response")
        error = raw.get("error")
        return cls(
            prompt=prompt if isinstance(prompt, str) else "",
            response=response if isinstance(response, str) else None,
            error=error if isinstance(error, str) and error else None,
        )


@dataclass
class SessionRecord:
    """Persisted state for one (user, session) pair."""
    session_id: str
    user_id: str | None
    chat_history: list[Turn] = field(default_factory=list)
    created_at: datetime | None = None
    last_updated: datetime | None = None
    extra: dict = field(default_factory=dict)  # unknown keys, kept on save


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class StreamPhase(Enum):
    AWAITING_FIRST_CHUNK = "awaiting_first_chunk"
    STREAMING = "streaming"
    TERMINATED_OK = "terminated_ok"
    TERMINATED_ERROR = "terminated_error"


class ResolutionState(Enum):
    BLOCKED = "blocked"              # no identity header
    NEW_SESSION = "new_session"      # no cookie, or cookie failed verification
    RESUMED = "resumed"              # cookie verified, record loaded
    REINITIALIZED = "reinitialized"  # cookie verified, record missing


@dataclass
class GenerationStats:
    """Statistics reported by the upstream on its terminal fragment."""
    total_duration: int | None = None
    load_duration: int | None = None
    prompt_eval_count: int | None = None
    prompt_eval_duration: int | None = None
    eval_count: int | None = None
    eval_duration: int | None = None
    done_reason: str | None = None

    @classmethod
    def from_fragment(cls, fragment: dict) -> GenerationStats:
        return cls(**{
            name: fragment.get(name)
            for name in cls.__dataclass_fields__
        })

    def to_dict(self) -> dict:
        return {
            name: getattr(self, name)
            for name in self.__dataclass_fields__
            if getattr(self, name) is not None
        }


@dataclass
class RelayOutcome:
    """Summary of one finished request, handed to analytics."""
    text: str = ""
    error: str | None = None
    stats: GenerationStats | None = None
    saved: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

@dataclass
class CookieConfig:
    name: str = "gemma-session"
    secret: str = ""
    max_age_days: int = 7


@dataclass
class StorageConfig:
    backend: str = "filesystem"  # "gcs", "filesystem", "memory"
    root: str = ".chat-relay/store"
    bucket: str = ""
    folder: str = "sessions"


@dataclass
class UpstreamConfig:
    service_url: str = ""
    model: str = "gemma3:4b"
    auth: str = "google"  # "google" or "static"
    token: str = ""
    timeout: float = 60.0
    stream_timeout: float = 600.0
    connect_timeout: float = 10.0


@dataclass
class AnalyticsConfig:
    backend: str = "memory"  # "memory", "bigquery", "none"
    dataset: str = ""
    table: str = ""
    max_events: int = 500


@dataclass
class UploadConfig:
    max_file_size: int = 5 * 1024 * 1024
    field_name: str = "images"


@dataclass
class RelayConfig:
    version: str = "1.0"
    environment: str = "development"
    identity_header: str = "x-user-id"
    cookie: CookieConfig = field(default_factory=CookieConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    uploads: UploadConfig = field(default_factory=UploadConfig)

    @property
    def production(self) -> bool:
        return self.environment == "production"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RelayError(Exception):
    """Base class for chat-relay errors."""


class ConfigError(RelayError):
    def __init__(self, errors: list[str]):
        super().__init__("Invalid configuration: " + "; ".join(errors))
        self.errors = errors


class SessionSaveError(RelayError):
    """Persisting a session failed. The only loud failure of the session layer."""


class UpstreamError(RelayError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthError(UpstreamError):
    """Could not obtain an identity token for the upstream service."""


class AttachmentError(RelayError):
    """Uploaded files could not be turned into images for the model."""


class TurnAlreadyCommittedError(RelayError):
    """A second turn was committed for the same request."""
