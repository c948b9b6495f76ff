"""
brain/llm_client.py — Abstract Language-Model Provider

Every backend subclasses BaseLLMProvider and implements:
  - get_response()   → single-shot call, full reply text
  - stream_response() → lazy, finite, non-restartable sequence of text fragments

Three framing styles are covered by the concrete adapters:
  - chat-completions (openai_client.py)      — one JSON document per reply
  - server-sent events (anthropic_client.py) — `data: {...}` lines, `[DONE]` sentinel
  - line-delimited JSON (ollama_client.py)   — one object per line, `done: true` ends it
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Optional

import httpx

from taskpilot.brain.types import ProviderConfig, ProviderType, ResponseFormat
from taskpilot.config.secrets import SecretStore, api_key_name
from taskpilot.exceptions import (
    ProviderConnectionError,
    ProviderCredentialError,
    ProviderError,
    ProviderRateLimitError,
)
from taskpilot.observability.logger import get_logger

log = get_logger(__name__)

_HEALTH_PROMPT = "Hello, please respond with 'OK' if you can understand this message."


class BaseLLMProvider(ABC):
    """
    Abstract base for all backends.

    The API key is never cached: it is looked up in the SecretStore on every
    call so a rotated key takes effect immediately.
    """

    provider_type: ProviderType
    default_base_url: str = ""
    default_model: str = ""

    def __init__(
        self,
        config: ProviderConfig,
        secrets: SecretStore,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._secrets = secrets
        self._http = http_client
        self._owns_http = http_client is None

    # ── Identity ──────────────────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def base_url(self) -> str:
        return (self.config.base_url or self.default_base_url).rstrip("/")

    @property
    def model(self) -> str:
        return self.config.model or self.default_model

    # ── Public API ────────────────────────────────────────────────────────────

    @abstractmethod
    async def get_response(
        self,
        prompt: str,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> str:
        """Call the backend once and return the full reply."""
        ...

    @abstractmethod
    def stream_response(
        self,
        prompt: str,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> AsyncIterator[str]:
        """Yield reply fragments as they arrive."""
        ...

    async def health_check(self) -> bool:
        """True when a short test prompt comes back with non-empty text."""
        try:
            reply = await self.get_response(_HEALTH_PROMPT)
        except ProviderError as e:
            log.warning("provider.health_check.failed", provider=self.name, error=str(e))
            return False
        return bool(reply.strip())

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    # ── Helpers for subclasses ────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            self._owns_http = True
        return self._http

    async def _api_key(self, required: bool = True) -> Optional[str]:
        key = await self._secrets.retrieve_secret(api_key_name(self.name))
        if not key and required:
            raise ProviderCredentialError(
                f"API key is not configured for provider '{self.name}' "
                f"(secret '{api_key_name(self.name)}')",
                provider=self.name,
            )
        return key or None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name} model={self.model}>"


# ─────────────────────────────────────────────────────────────────────────────
# HTTP error mapping (httpx-based adapters)
# ─────────────────────────────────────────────────────────────────────────────


def error_for_status(provider: str, status_code: int, body: str = "") -> ProviderError:
    """Map a non-success HTTP status onto the ProviderError subclass for it."""
    detail = body.strip()[:300]
    message = f"{provider} returned HTTP {status_code}" + (f": {detail}" if detail else "")
    if status_code in (401, 403):
        return ProviderCredentialError(message, provider=provider, status_code=status_code)
    if status_code == 429:
        return ProviderRateLimitError(message, provider=provider, status_code=status_code)
    return ProviderError(message, provider=provider, status_code=status_code)


async def raise_for_status(provider: str, response: httpx.Response) -> None:
    """Raise a ProviderError for a >= 400 response. Works on streamed responses too."""
    if response.status_code < 400:
        return
    body = (await response.aread()).decode("utf-8", errors="replace")
    raise error_for_status(provider, response.status_code, body)


def connection_error(provider: str, url: str, exc: httpx.HTTPError) -> ProviderConnectionError:
    kind = "timeout" if isinstance(exc, httpx.TimeoutException) else "connection error"
    return ProviderConnectionError(
        f"{kind} contacting {provider} at {url}: {exc}",
        provider=provider,
    )
