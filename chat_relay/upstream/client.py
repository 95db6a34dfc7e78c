"""UpstreamClient: Ollama-compatible /api/chat endpoint via httpx.

Works with a local Ollama or one deployed behind an identity-token-protected
URL (e.g. Cloud Run). Supports a blocking call and an NDJSON stream.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence

import httpx

from ..types import Turn, UpstreamConfig, UpstreamError

logger = logging.getLogger(__name__)


def build_messages(
    history: Sequence[Turn],
    prompt: str,
    images: list[str] | None = None,
) -> list[dict]:
    """Translate stored turns plus the new prompt into chat messages.

    Errored turns contribute their user message only, so a failed answer is
    never replayed to the model as context.
    """
    messages: list[dict] = []
    for turn in history:
        messages.append({"role": "user", "content": turn.prompt})
        if turn.error is None and turn.response is not None:
            messages.append({"role": "assistant", "content": turn.response})
    current: dict = {"role": "user", "content": prompt}
    if images:
        current["images"] = list(images)
    messages.append(current)
    return messages


def extract_text(data: dict) -> str | None:
    """Pull the text out of a chat response or stream fragment."""
    message = data.get("message")
    if isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str):
            return content
    # /api/generate-style payloads
    response = data.get("response")
    if isinstance(response, str):
        return response
    return None


def _error_detail(response: httpx.Response, body: bytes | None = None) -> str:
    raw = response.content if body is None else body
    try:
        detail = json.dumps(json.loads(raw))
    except (ValueError, UnicodeDecodeError):
        detail = raw.decode("utf-8", errors="replace")
    return f"Status {response.status_code}: {detail[:1000]}"


class UpstreamStream:
    """Live handle over an upstream NDJSON byte stream."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def closed(self) -> bool:
        return self._closed

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self._response.aiter_bytes()

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._response.aclose()


class UpstreamClient:
    """Calls the model service. Holds no per-request state."""

    def __init__(self, http: httpx.AsyncClient, config: UpstreamConfig) -> None:
        self.http = http
        self.config = config

    @property
    def service_url(self) -> str:
        return self.config.service_url.rstrip("/")

    @property
    def chat_url(self) -> str:
        return f"{self.service_url}/api/chat"

    def _headers(self, token: str, *, stream: bool) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if stream:
            headers["Accept"] = "application/x-ndjson"
        return headers

    def _payload(
        self,
        prompt: str,
        history: Sequence[Turn],
        images: list[str] | None,
        model: str | None,
        stream: bool,
    ) -> dict:
        if not self.service_url:
            raise UpstreamError("Service URL is required to call the model service")
        if not prompt:
            raise UpstreamError("Prompt is required to call the model service")
        return {
            "model": model or self.config.model,
            "messages": build_messages(history, prompt, images),
            "stream": stream,
        }

    async def invoke_chat(
        self,
        prompt: str,
        history: Sequence[Turn],
        *,
        token: str = "",
        model: str | None = None,
        timeout: float | None = None,
    ) -> dict:
        """Single blocking call. Returns the full response object."""
        payload = self._payload(prompt, history, None, model, stream=False)
        timeout_cfg = httpx.Timeout(
            timeout or self.config.timeout, connect=self.config.connect_timeout,
        )
        try:
            response = await self.http.post(
                self.chat_url,
                headers=self._headers(token, stream=False),
                json=payload,
                timeout=timeout_cfg,
            )
        except httpx.TimeoutException as e:
            logger.error("Model service call timed out: %s", e)
            raise UpstreamError("Model service call failed: request timed out") from e
        except httpx.HTTPError as e:
            logger.error("Error calling model service: %s", e)
            raise UpstreamError(
                f"Model service call failed: No response received from service ({e})"
            ) from e

        if not response.is_success:
            detail = _error_detail(response)
            logger.error("Model service returned an error: %s", detail)
            raise UpstreamError(
                f"Model service call failed: {detail}", status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                "Model service call failed: response was not valid JSON",
                status_code=response.status_code,
            ) from e

    async def invoke_chat_stream(
        self,
        prompt: str,
        history: Sequence[Turn],
        images: list[str] | None = None,
        *,
        token: str = "",
        model: str | None = None,
        timeout: float | None = None,
    ) -> UpstreamStream:
        """Open a streaming call and return once response headers arrive.

        Rejections (status >= 400) raise here. Failures after this point
        surface while iterating the returned handle.
        """
        payload = self._payload(prompt, history, images, model, stream=True)
        # Bounded connect; the read timeout only limits the gap between chunks.
        timeout_cfg = httpx.Timeout(
            self.config.timeout,
            connect=self.config.connect_timeout,
            read=timeout or self.config.stream_timeout,
        )
        request = self.http.build_request(
            "POST",
            self.chat_url,
            headers=self._headers(token, stream=True),
            json=payload,
            timeout=timeout_cfg,
        )
        try:
            response = await self.http.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("Error initiating model stream request: %s", e)
            raise UpstreamError(f"Model stream initiation failed: {e}") from e

        if response.status_code >= 400:
            try:
                body = await response.aread()
            except httpx.HTTPError:
                body = b""
            finally:
                await response.aclose()
            detail = _error_detail(response, body)
            logger.error("Model stream rejected: %s", detail)
            raise UpstreamError(
                f"Model stream initiation failed: {detail}", status_code=response.status_code,
            )
        return UpstreamStream(response)
