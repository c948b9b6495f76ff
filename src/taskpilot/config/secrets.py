"""
config/secrets.py — Secret Retrieval

Providers fetch their API key by name before every call through a SecretStore.
Encryption at rest is the concern of whatever backs the store; the stores here
keep values in process memory or read them from the environment.
"""

from __future__ import annotations

import os
import re
from abc import ABC, abstractmethod
from typing import Optional, TYPE_CHECKING

from taskpilot.observability.logger import get_logger

if TYPE_CHECKING:
    from taskpilot.config.settings import Settings

log = get_logger(__name__)


def api_key_name(provider_name: str) -> str:
    """Secret name a provider's API key is stored under."""
    return f"{provider_name}_ApiKey"


class SecretStore(ABC):
    """Retrieve / store a secret by name. Absent secrets are None, never ""."""

    @abstractmethod
    async def retrieve_secret(self, name: str) -> Optional[str]:
        ...

    @abstractmethod
    async def store_secret(self, name: str, value: str) -> None:
        ...


class InMemorySecretStore(SecretStore):
    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._values: dict[str, str] = {k: v for k, v in (initial or {}).items() if v}

    async def retrieve_secret(self, name: str) -> Optional[str]:
        return self._values.get(name) or None

    async def store_secret(self, name: str, value: str) -> None:
        self._values[name] = value
        log.debug("secrets.stored", name=name)

    def __contains__(self, name: str) -> bool:
        return name in self._values


class EnvSecretStore(SecretStore):
    """
    Maps a secret name onto an environment variable:
        "OpenAI_ApiKey" → TASKPILOT_SECRET_OPENAI_APIKEY
    store_secret() only affects the current process.
    """

    def __init__(self, prefix: str = "TASKPILOT_SECRET_"):
        self._prefix = prefix

    def env_var(self, name: str) -> str:
        return self._prefix + re.sub(r"[^A-Za-z0-9]+", "_", name).upper()

    async def retrieve_secret(self, name: str) -> Optional[str]:
        return os.environ.get(self.env_var(name)) or None

    async def store_secret(self, name: str, value: str) -> None:
        os.environ[self.env_var(name)] = value


def secret_store_from_settings(settings: "Settings") -> InMemorySecretStore:
    """Seed an in-memory store with each configured provider's key from Settings."""
    values: dict[str, str] = {}
    for provider in settings.llm.providers:
        key = settings.api_key_for(provider.provider_type)
        if key:
            values[api_key_name(provider.name)] = key
    return InMemorySecretStore(values)
