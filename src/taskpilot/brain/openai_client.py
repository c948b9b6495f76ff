"""
brain/openai_client.py — Chat-Completions Providers

OpenAIProvider    → the cloud API (key required)
LMStudioProvider  → any local OpenAI-wire-compatible server (key optional)

Both send one POST to {base}/chat/completions through the official openai SDK
and read the reply from choices[0].message.content. There is no incremental
streaming for this framing: stream_response() yields the single-shot reply as
one chunk.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Optional

import openai
from openai import AsyncOpenAI

from taskpilot.brain.llm_client import BaseLLMProvider
from taskpilot.brain.types import (
    JSON_ONLY_INSTRUCTION,
    NO_API_KEY_SENTINEL,
    NO_RESPONSE_PLACEHOLDER,
    ProviderType,
    ResponseFormat,
)
from taskpilot.exceptions import (
    ProviderConnectionError,
    ProviderCredentialError,
    ProviderError,
    ProviderRateLimitError,
)
from taskpilot.observability.logger import get_logger

log = get_logger(__name__)


class ChatCompletionsProvider(BaseLLMProvider):
    """Shared implementation for every chat-completions backend."""

    api_key_required: bool = True

    # ── Public API ────────────────────────────────────────────────────────────

    async def get_response(
        self,
        prompt: str,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> str:
        messages = self._build_messages(prompt, response_format)

        log.debug(
            "chat_completions.request",
            provider=self.name,
            model=self.model,
            json_format=response_format == ResponseFormat.JSON,
        )

        try:
            client = await self._sdk_client()
            completion = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
        except openai.AuthenticationError as e:
            raise ProviderCredentialError(str(e), provider=self.name, status_code=401) from e
        except openai.PermissionDeniedError as e:
            raise ProviderCredentialError(str(e), provider=self.name, status_code=403) from e
        except openai.RateLimitError as e:
            raise ProviderRateLimitError(str(e), provider=self.name, status_code=429) from e
        except openai.APIStatusError as e:
            raise ProviderError(
                f"{self.name} returned HTTP {e.status_code}: {e.message}",
                provider=self.name,
                status_code=e.status_code,
            ) from e
        except openai.APITimeoutError as e:
            raise ProviderConnectionError(
                f"timeout contacting {self.name} at {self.base_url}", provider=self.name
            ) from e
        except openai.APIConnectionError as e:
            raise ProviderConnectionError(
                f"connection error contacting {self.name} at {self.base_url}: {e}",
                provider=self.name,
            ) from e
        except openai.APIError as e:
            raise ProviderError(str(e), provider=self.name) from e
        except openai.OpenAIError as e:
            # raised by the SDK itself before any request, e.g. client construction
            raise ProviderError(f"{self.name} client error: {e}", provider=self.name) from e

        return self._extract_text(completion)

    async def stream_response(
        self,
        prompt: str,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> AsyncIterator[str]:
        yield await self.get_response(prompt, response_format)

    # ── Private helpers ───────────────────────────────────────────────────────

    async def _sdk_client(self) -> AsyncOpenAI:
        key = await self._api_key(required=self.api_key_required)
        headers = None
        if not key or key == NO_API_KEY_SENTINEL:
            # the SDK refuses an empty key; hand it the sentinel but send no header
            key = NO_API_KEY_SENTINEL
            headers = {"Authorization": openai.Omit()}
        return AsyncOpenAI(
            api_key=key,
            base_url=self.base_url,
            http_client=self._client(),
            timeout=self.config.timeout_seconds,
            max_retries=0,
            default_headers=headers,
        )

    @staticmethod
    def _build_messages(prompt: str, response_format: ResponseFormat) -> list[dict]:
        messages: list[dict] = []
        if response_format == ResponseFormat.JSON:
            messages.append({"role": "system", "content": JSON_ONLY_INSTRUCTION})
        messages.append({"role": "user", "content": prompt})
        return messages

    @staticmethod
    def _extract_text(completion) -> str:
        choices = getattr(completion, "choices", None) or []
        if not choices:
            return NO_RESPONSE_PLACEHOLDER
        message = getattr(choices[0], "message", None)
        content: Optional[str] = getattr(message, "content", None)
        return content or NO_RESPONSE_PLACEHOLDER


class OpenAIProvider(ChatCompletionsProvider):
    provider_type = ProviderType.OPENAI
    default_base_url = "https://api.openai.com/v1"
    default_model = "gpt-3.5-turbo"


class LMStudioProvider(ChatCompletionsProvider):
    """
    Local server speaking the OpenAI wire format. A key is only sent when one
    is stored and it is not the "not-needed" sentinel.
    """

    provider_type = ProviderType.LMSTUDIO
    default_base_url = "http://localhost:1234/v1"
    default_model = "local-model"
    api_key_required = False
