"""
brain/provider_manager.py — Provider Factory and Registry

create_provider() builds the adapter for a ProviderConfig; ProviderManager
holds the configured set, tracks which one is active, and can health-check a config
before it is added.

Usage:
    manager = ProviderManager.from_settings(settings, secrets)
    provider = manager.get_active()
    async for chunk in provider.stream_response(prompt, ResponseFormat.JSON):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import httpx

from taskpilot.brain.anthropic_client import AnthropicProvider
from taskpilot.brain.llm_client import BaseLLMProvider
from taskpilot.brain.ollama_client import OllamaProvider
from taskpilot.brain.openai_client import LMStudioProvider, OpenAIProvider
from taskpilot.brain.types import ProviderConfig, ProviderType
from taskpilot.config.secrets import SecretStore
from taskpilot.observability.logger import get_logger

if TYPE_CHECKING:
    from taskpilot.config.settings import Settings

log = get_logger(__name__)

_PROVIDER_CLASSES: dict[ProviderType, type[BaseLLMProvider]] = {
    ProviderType.OPENAI: OpenAIProvider,
    ProviderType.LMSTUDIO: LMStudioProvider,
    ProviderType.ANTHROPIC: AnthropicProvider,
    ProviderType.OLLAMA: OllamaProvider,
}


def create_provider(
    config: ProviderConfig,
    secrets: SecretStore,
    http_client: Optional[httpx.AsyncClient] = None,
) -> BaseLLMProvider:
    """Central factory returning the adapter for config.provider_type."""
    cls = _PROVIDER_CLASSES.get(config.provider_type)
    if cls is None:
        raise ValueError(
            f"Unsupported provider type: '{config.provider_type}'. "
            f"Valid options: {[t.value for t in _PROVIDER_CLASSES]}"
        )
    return cls(config=config, secrets=secrets, http_client=http_client)


class ProviderManager:
    """Named providers plus the active one. Insertion order is preserved."""

    def __init__(
        self,
        secrets: SecretStore,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._secrets = secrets
        self._http = http_client
        self._providers: dict[str, BaseLLMProvider] = {}
        self._default_name: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        secrets: SecretStore,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "ProviderManager":
        manager = cls(secrets=secrets, http_client=http_client)
        for config in settings.llm.providers:
            manager.add(config)
        default = settings.llm.resolve_default()
        if default is not None:
            manager.set_active(default.name)
        return manager

    # ── Lookup ────────────────────────────────────────────────────────────────

    def get_active(self) -> BaseLLMProvider:
        if self._default_name and self._default_name in self._providers:
            return self._providers[self._default_name]
        if self._providers:
            return next(iter(self._providers.values()))
        raise LookupError("No language-model provider is configured")

    def get(self, name: str) -> Optional[BaseLLMProvider]:
        return self._providers.get(name)

    def list_available(self) -> list[str]:
        return list(self._providers)

    @property
    def active_name(self) -> Optional[str]:
        return self.get_active().name if self._providers else None

    # ── Mutation ──────────────────────────────────────────────────────────────

    def add(self, config: ProviderConfig) -> bool:
        """Register a provider. Returns False if the name is already taken."""
        if config.name in self._providers:
            log.warning("provider_manager.duplicate", provider=config.name)
            return False
        self._providers[config.name] = create_provider(config, self._secrets, self._http)
        if config.is_default or self._default_name is None:
            self._default_name = config.name
        log.info(
            "provider_manager.added",
            provider=config.name,
            provider_type=config.provider_type.value,
            is_default=self._default_name == config.name,
        )
        return True

    def remove(self, name: str) -> bool:
        provider = self._providers.pop(name, None)
        if provider is None:
            return False
        if self._default_name == name:
            self._default_name = next(iter(self._providers), None)
        log.info("provider_manager.removed", provider=name, new_default=self._default_name)
        return True

    def set_active(self, name: str) -> None:
        if name not in self._providers:
            raise KeyError(f"Unknown provider '{name}'. Available: {self.list_available()}")
        self._default_name = name

    # ── Probing ───────────────────────────────────────────────────────────────

    async def test(self, config: ProviderConfig) -> bool:
        """Build a throwaway adapter for config and check it answers a short test prompt."""
        try:
            provider = create_provider(config, self._secrets, self._http)
        except ValueError as e:
            log.warning("provider_manager.test_unsupported", provider=config.name, error=str(e))
            return False
        try:
            return await provider.health_check()
        finally:
            await provider.aclose()

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
