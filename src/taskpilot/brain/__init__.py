"""
brain/__init__.py — TaskPilot Language-Model Providers
"""

from __future__ import annotations

from taskpilot.brain.anthropic_client import AnthropicProvider
from taskpilot.brain.llm_client import BaseLLMProvider
from taskpilot.brain.ollama_client import OllamaProvider
from taskpilot.brain.openai_client import ChatCompletionsProvider, LMStudioProvider, OpenAIProvider
from taskpilot.brain.provider_manager import ProviderManager, create_provider
from taskpilot.brain.types import (
    JSON_ONLY_INSTRUCTION,
    NO_RESPONSE_PLACEHOLDER,
    ProviderConfig,
    ProviderType,
    ResponseFormat,
)

__all__ = [
    "BaseLLMProvider",
    "ChatCompletionsProvider",
    "OpenAIProvider",
    "LMStudioProvider",
    "AnthropicProvider",
    "OllamaProvider",
    "ProviderManager",
    "create_provider",
    "ProviderConfig",
    "ProviderType",
    "ResponseFormat",
    "JSON_ONLY_INSTRUCTION",
    "NO_RESPONSE_PLACEHOLDER",
]
