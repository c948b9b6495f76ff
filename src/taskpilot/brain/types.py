"""
brain/types.py — Language-Model Provider Data Models

Shared by every backend adapter, the provider manager and the settings layer.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class ResponseFormat(str, Enum):
    """Hint for how the reply must be shaped."""
    TEXT = "text"
    JSON = "json"       # reply must be a single valid JSON document


class ProviderType(str, Enum):
    OPENAI = "openai"           # chat-completions, cloud
    LMSTUDIO = "lmstudio"       # chat-completions, local OpenAI-wire server
    ANTHROPIC = "anthropic"     # server-sent events
    OLLAMA = "ollama"           # line-delimited JSON


# ─────────────────────────────────────────────────────────────────────────────
# Constants shared across backends
# ─────────────────────────────────────────────────────────────────────────────

JSON_ONLY_INSTRUCTION = (
    "You must respond with valid JSON only. "
    "Do not include any explanatory text outside the JSON structure."
)

# Returned when a call succeeds but the backend produced no text.
NO_RESPONSE_PLACEHOLDER = "(no response)"

# Secret value meaning "this local server needs no key".
NO_API_KEY_SENTINEL = "not-needed"


# ─────────────────────────────────────────────────────────────────────────────
# Provider config
# ─────────────────────────────────────────────────────────────────────────────


class ProviderConfig(BaseModel):
    """
    One configured backend. `name` is the user-facing identity and also the
    prefix of the secret the API key is stored under ("{name}_ApiKey").
    """
    name: str
    provider_type: ProviderType = ProviderType.OPENAI
    base_url: Optional[str] = None          # None = backend default
    model: Optional[str] = None             # None = backend default
    is_default: bool = False
    max_tokens: int = 1000
    temperature: float = 0.7
    timeout_seconds: float = 60.0

    @field_validator("name")
    @classmethod
    def _non_empty_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("provider name must not be empty")
        return v.strip()

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_tokens must be >= 1")
        return v

    @property
    def requires_api_key(self) -> bool:
        return self.provider_type in (ProviderType.OPENAI, ProviderType.ANTHROPIC)


def default_provider_configs() -> list[ProviderConfig]:
    """The provider list used when config.yaml declares none."""
    return [
        ProviderConfig(name="OpenAI", provider_type=ProviderType.OPENAI, is_default=True),
    ]
