"""
brain/ollama_client.py — Ollama Generate API (line-delimited JSON)

POST {base}/api/generate with {model, prompt, stream, options: {temperature}}.
ResponseFormat.JSON is realised as the request-body flag `format: "json"`.

Streaming framing — one complete JSON object per line:
    {"response": "Hel", "done": false}
    {"response": "lo", "done": false}
    {"response": "", "done": true}
A line that is not a JSON object, an {"error": ...} line, or EOF before
done=true raises; Ollama needs no API key.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from taskpilot.brain.llm_client import BaseLLMProvider, connection_error, raise_for_status
from taskpilot.brain.types import NO_RESPONSE_PLACEHOLDER, ProviderType, ResponseFormat
from taskpilot.exceptions import ProviderError, ProviderStreamError
from taskpilot.observability.logger import get_logger

log = get_logger(__name__)


class OllamaProvider(BaseLLMProvider):
    provider_type = ProviderType.OLLAMA
    default_base_url = "http://localhost:11434"
    default_model = "llama2"

    async def get_response(
        self,
        prompt: str,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> str:
        url = self._endpoint()
        body = self._request_body(prompt, response_format, stream=False)

        log.debug("ollama.request", provider=self.name, model=self.model, stream=False)
        try:
            response = await self._client().post(url, json=body)
        except httpx.TransportError as e:
            raise connection_error(self.name, url, e) from e
        await raise_for_status(self.name, response)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} returned a non-JSON body: {e}", provider=self.name) from e
        if isinstance(data, dict) and data.get("error"):
            raise ProviderError(f"{self.name} error: {data['error']}", provider=self.name)
        text = data.get("response") if isinstance(data, dict) else None
        return text or NO_RESPONSE_PLACEHOLDER

    async def stream_response(
        self,
        prompt: str,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> AsyncIterator[str]:
        url = self._endpoint()
        body = self._request_body(prompt, response_format, stream=True)

        log.debug("ollama.request", provider=self.name, model=self.model, stream=True)
        finished = False
        try:
            async with self._client().stream("POST", url, json=body) as response:
                await raise_for_status(self.name, response)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    chunk = self._parse_line(line)
                    text = chunk.get("response")
                    if text:
                        yield text
                    if chunk.get("done"):
                        finished = True
                        break
        except httpx.TransportError as e:
            raise connection_error(self.name, url, e) from e

        if not finished:
            raise ProviderStreamError(
                f"{self.name} stream ended before a done=true line", provider=self.name
            )

    # ── Private helpers ───────────────────────────────────────────────────────

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/generate"

    def _request_body(self, prompt: str, response_format: ResponseFormat, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": stream,
            "options": {"temperature": self.config.temperature},
        }
        if response_format == ResponseFormat.JSON:
            body["format"] = "json"
        return body

    def _parse_line(self, line: str) -> dict[str, Any]:
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError as e:
            raise ProviderStreamError(
                f"{self.name} sent a malformed stream line: {line[:80]!r}", provider=self.name
            ) from e
        if not isinstance(chunk, dict):
            raise ProviderStreamError(
                f"{self.name} sent a non-object stream line: {line[:80]!r}", provider=self.name
            )
        if chunk.get("error"):
            raise ProviderError(f"{self.name} error: {chunk['error']}", provider=self.name)
        return chunk
