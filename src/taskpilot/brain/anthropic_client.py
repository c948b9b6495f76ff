"""
brain/anthropic_client.py — Anthropic Messages API (server-sent events)

Non-streaming: one POST to {base}/messages, reply = concatenated text blocks.

Streaming framing:
    data: {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}}
    data: {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}}
    data: [DONE]
  - only lines prefixed "data: " are read; blank and "event:" lines are skipped
  - content_block_delta events contribute delta.text
  - "[DONE]" or a message_stop event ends the stream
  - payloads that are not JSON are skipped; an "error" event raises ProviderError
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any, Optional

import httpx

from taskpilot.brain.llm_client import BaseLLMProvider, connection_error, raise_for_status
from taskpilot.brain.types import (
    JSON_ONLY_INSTRUCTION,
    NO_RESPONSE_PLACEHOLDER,
    ProviderType,
    ResponseFormat,
)
from taskpilot.exceptions import ProviderError
from taskpilot.observability.logger import get_logger

log = get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
_DATA_PREFIX = "data: "
_DONE_SENTINEL = "[DONE]"


class AnthropicProvider(BaseLLMProvider):
    provider_type = ProviderType.ANTHROPIC
    default_base_url = "https://api.anthropic.com/v1"
    default_model = "claude-3-sonnet-20240229"

    # ── Public API ────────────────────────────────────────────────────────────

    async def get_response(
        self,
        prompt: str,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> str:
        headers = await self._headers()
        body = self._request_body(prompt, response_format, stream=False)
        url = self._endpoint()

        log.debug("anthropic.request", provider=self.name, model=self.model, stream=False)
        try:
            response = await self._client().post(url, json=body, headers=headers)
        except httpx.TransportError as e:
            raise connection_error(self.name, url, e) from e
        await raise_for_status(self.name, response)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.name} returned a non-JSON body: {e}", provider=self.name
            ) from e

        text = "".join(
            block.get("text") or ""
            for block in (data.get("content") or [])
            if isinstance(block, dict) and block.get("type") == "text"
        )
        return text or NO_RESPONSE_PLACEHOLDER

    async def stream_response(
        self,
        prompt: str,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> AsyncIterator[str]:
        headers = await self._headers()
        body = self._request_body(prompt, response_format, stream=True)
        url = self._endpoint()

        log.debug("anthropic.request", provider=self.name, model=self.model, stream=True)
        try:
            async with self._client().stream("POST", url, json=body, headers=headers) as response:
                await raise_for_status(self.name, response)
                async for line in response.aiter_lines():
                    if not line.startswith(_DATA_PREFIX):
                        continue
                    payload = line[len(_DATA_PREFIX):].strip()
                    if payload == _DONE_SENTINEL:
                        break
                    event = _parse_event(payload)
                    if event is None:
                        continue
                    kind = event.get("type")
                    if kind == "error":
                        error = event.get("error") or {}
                        raise ProviderError(
                            f"{self.name} stream error: {error.get('message') or error}",
                            provider=self.name,
                        )
                    if kind == "message_stop":
                        break
                    text = _delta_text(event)
                    if text:
                        yield text
        except httpx.TransportError as e:
            raise connection_error(self.name, url, e) from e

    # ── Private helpers ───────────────────────────────────────────────────────

    def _endpoint(self) -> str:
        return f"{self.base_url}/messages"

    async def _headers(self) -> dict[str, str]:
        key = await self._api_key(required=True)
        return {
            "x-api-key": key or "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _request_body(self, prompt: str, response_format: ResponseFormat, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "stream": stream,
        }
        if response_format == ResponseFormat.JSON:
            body["system"] = JSON_ONLY_INSTRUCTION
        return body


def _parse_event(payload: str) -> Optional[dict[str, Any]]:
    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        log.debug("anthropic.stream.skipped_payload", payload=payload[:80])
        return None
    return event if isinstance(event, dict) else None


def _delta_text(event: dict[str, Any]) -> Optional[str]:
    if event.get("type") != "content_block_delta":
        return None
    delta = event.get("delta") or {}
    return delta.get("text") if isinstance(delta, dict) else None
