"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from .types import (
    AnalyticsConfig,
    CookieConfig,
    RelayConfig,
    StorageConfig,
    UploadConfig,
    UpstreamConfig,
)

CONFIG_FILENAMES = [
    "chat-relay.yaml",
    "chat-relay.yml",
    "chat-relay.json",
]

STORAGE_BACKENDS = ("gcs", "filesystem", "memory")
ANALYTICS_BACKENDS = ("memory", "bigquery", "none")
AUTH_MODES = ("google", "static")


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _build_config(raw: dict[str, Any]) -> RelayConfig:
    """Build a RelayConfig from a raw dict."""
    cookie_raw = raw.get("cookie", {})
    cookie = CookieConfig(
        name=cookie_raw.get("name", "gemma-session"),
        secret=cookie_raw.get("secret", ""),
        max_age_days=cookie_raw.get("max_age_days", 7),
    )

    storage_raw = raw.get("storage", {})
    storage = StorageConfig(
        backend=storage_raw.get("backend", "filesystem"),
        root=storage_raw.get("root", ".chat-relay/store"),
        bucket=storage_raw.get("bucket", ""),
        folder=storage_raw.get("folder", "sessions"),
    )

    upstream_raw = raw.get("upstream", {})
    upstream = UpstreamConfig(
        service_url=upstream_raw.get("service_url", ""),
        model=upstream_raw.get("model", "gemma3:4b"),
        auth=upstream_raw.get("auth", "google"),
        token=upstream_raw.get("token", ""),
        timeout=float(upstream_raw.get("timeout", 60.0)),
        stream_timeout=float(upstream_raw.get("stream_timeout", 600.0)),
        connect_timeout=float(upstream_raw.get("connect_timeout", 10.0)),
    )

    analytics_raw = raw.get("analytics", {})
    analytics = AnalyticsConfig(
        backend=analytics_raw.get("backend", "memory"),
        dataset=analytics_raw.get("dataset", ""),
        table=analytics_raw.get("table", ""),
        max_events=analytics_raw.get("max_events", 500),
    )

    uploads_raw = raw.get("uploads", {})
    uploads = UploadConfig(
        max_file_size=uploads_raw.get("max_file_size", 5 * 1024 * 1024),
        field_name=uploads_raw.get("field_name", "images"),
    )

    return RelayConfig(
        version=str(raw.get("version", "1.0")),
        environment=raw.get("environment", "development"),
        identity_header=raw.get("identity_header", "x-user-id").lower(),
        cookie=cookie,
        storage=storage,
        upstream=upstream,
        analytics=analytics,
        uploads=uploads,
    )


def apply_env_overrides(
    config: RelayConfig, env: Mapping[str, str] | None = None,
) -> RelayConfig:
    """Overlay the deployment environment variables onto *config* in place."""
    env = os.environ if env is None else env

    if env.get("COOKIE_SECRET"):
        config.cookie.secret = env["COOKIE_SECRET"]
    if env.get("GCS_SESSION_BUCKET_NAME"):
        config.storage.backend = "gcs"
        config.storage.bucket = env["GCS_SESSION_BUCKET_NAME"]
    if env.get("CLOUD_RUN_GEMMA_URL"):
        config.upstream.service_url = env["CLOUD_RUN_GEMMA_URL"]
    if env.get("OLLAMA_MODEL"):
        config.upstream.model = env["OLLAMA_MODEL"]
    if env.get("BIGQUERY_DATASET") and env.get("BIGQUERY_TABLE"):
        config.analytics.backend = "bigquery"
        config.analytics.dataset = env["BIGQUERY_DATASET"]
        config.analytics.table = env["BIGQUERY_TABLE"]
    environment = env.get("RELAY_ENV") or env.get("NODE_ENV")
    if environment:
        config.environment = environment
    return config


def validate_config(config: RelayConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if not config.cookie.secret:
        errors.append("cookie.secret (COOKIE_SECRET) must be set")
    if config.cookie.max_age_days <= 0:
        errors.append("cookie.max_age_days must be > 0")

    if config.storage.backend not in STORAGE_BACKENDS:
        errors.append(
            f"Unknown storage backend '{config.storage.backend}' "
            f"(expected one of {', '.join(STORAGE_BACKENDS)})"
        )
    elif config.storage.backend == "gcs" and not config.storage.bucket:
        errors.append("storage.bucket (GCS_SESSION_BUCKET_NAME) is required for the gcs backend")
    if not config.storage.folder:
        errors.append("storage.folder must not be empty")

    if not config.upstream.service_url:
        errors.append("upstream.service_url (CLOUD_RUN_GEMMA_URL) must be set")
    if not config.upstream.model:
        errors.append("upstream.model must be set")
    if config.upstream.auth not in AUTH_MODES:
        errors.append(f"Unknown upstream auth mode '{config.upstream.auth}'")
    for name in ("timeout", "stream_timeout", "connect_timeout"):
        if getattr(config.upstream, name) <= 0:
            errors.append(f"upstream.{name} must be > 0")

    if config.analytics.backend not in ANALYTICS_BACKENDS:
        errors.append(f"Unknown analytics backend '{config.analytics.backend}'")
    elif config.analytics.backend == "bigquery" and not (
        config.analytics.dataset and config.analytics.table
    ):
        errors.append("analytics.dataset and analytics.table are required for bigquery")

    if config.uploads.max_file_size <= 0:
        errors.append("uploads.max_file_size must be > 0")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
    *,
    use_env: bool = True,
) -> RelayConfig:
    """Load config from dict, explicit path, or auto-discover, then apply env overrides."""
    if config_dict is not None:
        config = _build_config(config_dict)
    else:
        if config_path is not None:
            path = Path(config_path)
        else:
            path = _discover_config()

        if path is None:
            config = _build_config({})
        elif not path.is_file():
            raise FileNotFoundError(f"Config file not found: {path}")
        else:
            text = path.read_text()
            if path.suffix == ".json":
                raw = json.loads(text)
            else:
                raw = yaml.safe_load(text) or {}
            config = _build_config(raw)

    if use_env:
        apply_env_overrides(config)
    return config
