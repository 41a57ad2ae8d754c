"""HTTP client for the OpenAI-compatible AI gateway.

Covers the two upstream calls the pipeline makes: audio transcription
(multipart upload) and chat completions. HTTP failures are mapped onto the
error taxonomy so callers can tell rate limits and exhausted credits apart
from generic upstream failures.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from callinsights.config import Settings
from callinsights.errors import QuotaExhaustedError, RateLimitedError, UpstreamError

logger = logging.getLogger("callinsights.ai_gateway")


def raise_for_upstream_status(response: httpx.Response, service: str) -> None:
    if response.is_success:
        return
    status = response.status_code
    # Body may echo request content; log the size only
    logger.error("%s returned HTTP %s (%d bytes)", service, status, len(response.content))
    if status == 429:
        raise RateLimitedError(f"{service} rate limit exceeded", status_code=status)
    if status == 402:
        raise QuotaExhaustedError(f"{service} credits exhausted", status_code=status)
    raise UpstreamError(f"{service} returned HTTP {status}", status_code=status)


class AIGatewayClient:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._settings = settings
        headers: Dict[str, str] = {}
        if settings.ai_api_key:
            headers["Authorization"] = f"Bearer {settings.ai_api_key}"
        # Overall deadlines are enforced by the caller; keep connect short
        self._client = httpx.AsyncClient(
            base_url=settings.ai_base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(max(settings.transcription_timeout, settings.chat_timeout), connect=10.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def transcribe_audio(
        self,
        audio: bytes,
        filename: str,
        *,
        model: Optional[str] = None,
        content_type: str = "application/octet-stream",
    ) -> Dict[str, Any]:
        files = {"file": (filename, audio, content_type)}
        data = {
            "model": model or self._settings.transcription_model,
            "response_format": "verbose_json",
        }
        try:
            response = await self._client.post("/audio/transcriptions", files=files, data=data)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Transcription request failed: {exc.__class__.__name__}") from exc
        raise_for_upstream_status(response, "Transcription service")
        return self._json(response, "Transcription service")

    async def chat_completion(
        self,
        messages: List[Dict[str, Any]],
        *,
        model: str,
        temperature: Optional[float] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": model, "messages": messages}
        if temperature is not None:
            payload["temperature"] = temperature
        if tools:
            payload["tools"] = tools
        if tool_choice is not None:
            payload["tool_choice"] = tool_choice
        try:
            response = await self._client.post("/chat/completions", json=payload)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Chat completion request failed: {exc.__class__.__name__}") from exc
        raise_for_upstream_status(response, "Chat completion")
        return self._json(response, "Chat completion")

    @staticmethod
    def _json(response: httpx.Response, service: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamError(f"{service} returned malformed JSON") from exc
        if not isinstance(body, dict):
            raise UpstreamError(f"{service} returned an unexpected payload")
        return body


def first_message(completion: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``choices[0].message`` or an empty dict."""
    choices = completion.get("choices")
    if not isinstance(choices, list) or not choices:
        return {}
    first = choices[0]
    if not isinstance(first, dict):
        return {}
    message = first.get("message")
    return message if isinstance(message, dict) else {}
