"""HTTP layer for chat-relay.

Resolves the caller's session from the identity header and signed cookie,
forwards prompts to the upstream model service, relays its NDJSON stream to
the browser as server-sent events, and commits one turn per request.

Usage:
    chat-relay -c chat-relay.yaml serve --port 8080
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import FastAPI, Form, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.datastructures import UploadFile
from starlette.formparsers import MultiPartException
from starlette.responses import Response

from ..analytics import AnalyticsLogger, RelayMetrics, build_analytics, build_record
from ..config import load_config, validate_config
from ..relay import StreamReconciler, TurnRecorder, annotate_prompt, encode_images, relay_stream
from ..sessions import SessionHandle, SessionResolution, SessionResolver, SessionStore
from ..storage import ObjectStore, build_object_store
from ..types import (
    AttachmentError,
    ConfigError,
    RelayConfig,
    RelayError,
    RelayOutcome,
)
from ..upstream import TokenProvider, UpstreamClient, build_token_provider, extract_text

logger = logging.getLogger(__name__)

NO_TEXT_FALLBACK = "Model returned no text."
SAVE_WARNING = "Error saving chat history. Your session might be inconsistent."


@dataclass
class RelayServices:
    """Process-lifetime collaborators, built once at startup and injected."""
    config: RelayConfig
    http: httpx.AsyncClient
    sessions: SessionStore
    resolver: SessionResolver
    upstream: UpstreamClient
    tokens: TokenProvider
    analytics: AnalyticsLogger
    metrics: RelayMetrics | None = None


def build_services(
    config: RelayConfig,
    *,
    objects: ObjectStore | None = None,
    tokens: TokenProvider | None = None,
    http: httpx.AsyncClient | None = None,
    analytics: AnalyticsLogger | None = None,
) -> RelayServices:
    """Construct every service from *config*; any argument overrides its default."""
    http = http or httpx.AsyncClient(
        timeout=httpx.Timeout(config.upstream.timeout, connect=config.upstream.connect_timeout),
    )
    sessions = SessionStore(
        objects if objects is not None else build_object_store(config.storage),
        folder=config.storage.folder,
    )
    metrics: RelayMetrics | None = None
    if analytics is None:
        analytics, metrics = build_analytics(config.analytics)
    return RelayServices(
        config=config,
        http=http,
        sessions=sessions,
        resolver=SessionResolver(sessions, config.cookie, secure=config.production),
        upstream=UpstreamClient(http, config.upstream),
        tokens=tokens or build_token_provider(config.upstream),
        analytics=analytics,
        metrics=metrics,
    )


def _history_json(handle: SessionHandle) -> list[dict]:
    return [turn.to_dict() for turn in handle.chat_history]


def create_app(
    config: RelayConfig | None = None,
    config_path: str | None = None,
    *,
    services: RelayServices | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Ready-made configuration. Loaded from *config_path* (or
            auto-discovered) when omitted.
        config_path: Path to a chat-relay config file.
        services: Pre-built services (tests, embedding). Skips config loading.
    """
    if services is None:
        config = config or load_config(config_path)
        errors = validate_config(config)
        if errors:
            raise ConfigError(errors)
        services = build_services(config)
    config = services.config

    logger.info(
        "Relay ready: upstream=%s, model=%s, storage=%s, env=%s",
        config.upstream.service_url,
        config.upstream.model,
        services.sessions.objects.describe(),
        config.environment,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
        yield
        await services.analytics.flush()
        await services.http.aclose()

    app = FastAPI(title="chat-relay", lifespan=lifespan)
    app.state.services = services

    async def resolve(request: Request) -> SessionResolution:
        return await services.resolver.resolve(
            request.headers.get(config.identity_header),
            request.cookies.get(config.cookie.name),
        )

    def respond(resolution: SessionResolution, response: Response) -> Response:
        return services.resolver.apply_cookies(resolution, response)

    def log_request(
        *,
        request_id: str,
        session_id: str,
        prompt: str,
        image_count: int,
        started: float,
        outcome: RelayOutcome,
    ) -> None:
        services.analytics.log_event(build_record(
            request_id=request_id,
            session_id=session_id,
            model_name=config.upstream.model,
            prompt=prompt,
            image_count=image_count,
            duration_ms=(time.monotonic() - started) * 1000,
            outcome=outcome,
        ))

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/api/history")
    async def history(request: Request):
        resolution = await resolve(request)
        handle = resolution.handle
        if not handle.user_id:
            logger.warning(
                "Attempt to access /api/history without identity header (Session: %s)", handle.id,
            )
            return respond(resolution, JSONResponse({"chatHistory": []}))
        logger.info("[Session: %s, User: %s] GET /api/history request", handle.id, handle.user_id)
        return respond(resolution, JSONResponse({"chatHistory": _history_json(handle)}))

    @app.get("/api/stats")
    async def stats(since: int | None = None):
        """Aggregate request stats. ``?since=<seq>`` adds the events after that sequence number."""
        if services.metrics is None:
            return {}
        snapshot = services.metrics.snapshot()
        if since is not None:
            snapshot["events"] = services.metrics.events_since(since)
        return snapshot

    @app.post("/generate")
    async def generate(request: Request, prompt: str = Form("")):
        started = time.monotonic()
        request_id = str(uuid.uuid4())
        resolution = await resolve(request)
        handle = resolution.handle
        prompt = prompt.strip()

        if not prompt:
            return respond(resolution, JSONResponse(
                {"result": None, "error": "Please enter a prompt.", "chatHistory": _history_json(handle)},
                status_code=400,
            ))

        recorder = TurnRecorder(handle, prompt)
        result: str | None = None
        error: str | None = None
        try:
            logger.info("[Session: %s] Received prompt, fetching token...", handle.id)
            token = await services.tokens.get_token(services.upstream.service_url)
            logger.info("[Session: %s] Calling model service (Model: %s)...", handle.id, config.upstream.model)
            data = await services.upstream.invoke_chat(prompt, handle.chat_history, token=token)
            result = extract_text(data) or NO_TEXT_FALLBACK
        except RelayError as e:
            logger.error("[Session: %s] Error during model call: %s", handle.id, e)
            error = f"Failed to get response: {e}"

        if error is None:
            await recorder.commit_response(result)
        else:
            await recorder.commit_error(error)

        warning = error
        if recorder.save_error is not None and warning is None:
            warning = SAVE_WARNING

        log_request(
            request_id=request_id,
            session_id=handle.id,
            prompt=prompt,
            image_count=0,
            started=started,
            outcome=RelayOutcome(text=result or "", error=error, saved=recorder.saved),
        )
        return respond(resolution, JSONResponse(
            {"result": result, "error": warning, "chatHistory": _history_json(handle)},
            status_code=200 if error is None else 502,
        ))

    @app.post("/generate-stream")
    async def generate_stream(request: Request):
        started = time.monotonic()
        request_id = str(uuid.uuid4())
        resolution = await resolve(request)
        handle = resolution.handle

        try:
            form = await request.form()
        except (MultiPartException, ValueError) as e:
            logger.error("[Session: %s] Error parsing form data: %s", handle.id, e)
            log_request(
                request_id=request_id, session_id=handle.id, prompt="", image_count=0,
                started=started, outcome=RelayOutcome(error=f"Form parsing error: {e}"),
            )
            return respond(resolution, JSONResponse({"error": "Error parsing form data."}, status_code=400))

        raw_prompt = form.get("prompt")
        prompt = raw_prompt.strip() if isinstance(raw_prompt, str) else ""
        uploads = [
            item for item in form.getlist(config.uploads.field_name)
            if isinstance(item, UploadFile) and item.filename
        ]

        if not prompt:
            await form.close()
            log_request(
                request_id=request_id, session_id=handle.id, prompt="", image_count=len(uploads),
                started=started, outcome=RelayOutcome(error="Prompt is missing."),
            )
            return respond(resolution, JSONResponse({"error": "Prompt is missing."}, status_code=400))

        recorder = TurnRecorder(handle, annotate_prompt(prompt, len(uploads)))
        reconciler = StreamReconciler(label=handle.id)
        images: list[str] = []
        try:
            if uploads:
                logger.info("[Session: %s] Processing %d uploaded file(s)...", handle.id, len(uploads))
                images = await encode_images(
                    uploads, max_file_size=config.uploads.max_file_size, label=handle.id,
                )
                recorder.turn.prompt = annotate_prompt(prompt, len(images))
            logger.info("[Session: %s] Stream request: fetching token...", handle.id)
            token = await services.tokens.get_token(services.upstream.service_url)
            logger.info("[Session: %s] Stream request: calling model stream...", handle.id)
            upstream = await services.upstream.invoke_chat_stream(
                prompt, handle.chat_history, images or None, token=token,
            )
        except RelayError as e:
            message = f"Failed to start generation: {e}"
            logger.error("[Session: %s] Error setting up stream: %s", handle.id, e)
            await recorder.commit_error(message)
            log_request(
                request_id=request_id, session_id=handle.id, prompt=prompt, image_count=len(images),
                started=started, outcome=RelayOutcome(error=message, saved=recorder.saved),
            )
            status_code = 400 if isinstance(e, AttachmentError) else 502
            return respond(resolution, JSONResponse({"error": message}, status_code=status_code))
        finally:
            await form.close()

        def on_complete(outcome: RelayOutcome) -> None:
            log_request(
                request_id=request_id, session_id=handle.id, prompt=prompt, image_count=len(images),
                started=started, outcome=outcome,
            )

        response = StreamingResponse(
            relay_stream(upstream, reconciler, recorder, on_complete=on_complete),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )
        return respond(resolution, response)

    return app
