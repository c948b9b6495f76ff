"""
config/settings.py — TaskPilot Runtime Settings

Merges config.yaml (structure/defaults) with environment variables and .env
(secrets). Pydantic-powered: every field is typed and validated at parse time.

  - AgentConfig rejects max_iterations < 1
  - StateConfig rejects a state_dir inside a protected system directory
  - LLMConfig requires at least one provider and unique provider names
  - validate_all() performs cross-field checks and raises ConfigError with a
    numbered list of every problem found
  - load_settings() honours TASKPILOT_CONFIG when no explicit path is given
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskpilot.brain.types import ProviderConfig, ProviderType, default_provider_configs


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_BLOCKED_DIR_PREFIXES: tuple[str, ...] = (
    "/etc", "/proc", "/sys", "/dev", "/boot",
    "/usr", "/bin", "/sbin", "/lib", "/lib64", "/var/log",
)


def _is_blocked_system_path(p: str) -> bool:
    try:
        resolved = str(Path(p).expanduser().resolve())
    except (ValueError, OSError):
        return False
    return any(
        resolved == prefix or resolved.startswith(prefix + "/")
        for prefix in _BLOCKED_DIR_PREFIXES
    )


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class AgentConfig(BaseModel):
    max_iterations: int = 10
    default_step_timeout_seconds: float = 30.0

    @field_validator("max_iterations")
    @classmethod
    def _positive_iterations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent.max_iterations must be >= 1")
        return v

    @field_validator("default_step_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("agent.default_step_timeout_seconds must be > 0")
        return v


class LLMConfig(BaseModel):
    default_provider: Optional[str] = None       # None = first provider flagged is_default
    providers: List[ProviderConfig] = Field(default_factory=default_provider_configs)

    @field_validator("providers")
    @classmethod
    def _unique_names(cls, v: list[ProviderConfig]) -> list[ProviderConfig]:
        if not v:
            raise ValueError("llm.providers must list at least one provider")
        names = [p.name for p in v]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"llm.providers has duplicate names: {dupes}")
        return v

    def resolve_default(self) -> Optional[ProviderConfig]:
        if self.default_provider:
            return next((p for p in self.providers if p.name == self.default_provider), None)
        flagged = next((p for p in self.providers if p.is_default), None)
        return flagged or (self.providers[0] if self.providers else None)


class ToolsConfig(BaseModel):
    default_timeout_seconds: float = 30.0
    extension_paths: list[str] = Field(default_factory=list)
    extension_modules: list[str] = Field(default_factory=list)
    load_entry_points: bool = False

    @field_validator("extension_modules")
    @classmethod
    def _module_specs(cls, v: list[str]) -> list[str]:
        bad = [s for s in v if ":" not in s]
        if bad:
            raise ValueError(
                f"tools.extension_modules entries must look like 'package.module:attribute', got {bad}"
            )
        return v


class StateConfig(BaseModel):
    state_dir: str = "./data/state"
    cleanup_after_days: int = 7

    @field_validator("state_dir")
    @classmethod
    def _safe_state_dir(cls, v: str) -> str:
        if _is_blocked_system_path(v):
            raise ValueError(
                f"state.state_dir '{v}' points to a protected system directory. "
                f"Use './data/state' or a path under your home directory."
            )
        return v

    @field_validator("cleanup_after_days")
    @classmethod
    def _non_negative_days(cls, v: int) -> int:
        if v < 0:
            raise ValueError("state.cleanup_after_days must be >= 0")
        return v


class SafetyConfig(BaseModel):
    max_input_length: int = 10_000
    max_path_length: int = 260
    max_write_content_length: int = 1_000_000
    protected_paths_extra: list[str] = Field(default_factory=list)


class MonitorConfig(BaseModel):
    slow_result_seconds: float = 300.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 50
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

# provider type → (env var, Settings attribute)
_KEY_SOURCES: dict[ProviderType, tuple[str, str]] = {
    ProviderType.OPENAI:    ("OPENAI_API_KEY",    "openai_api_key"),
    ProviderType.ANTHROPIC: ("ANTHROPIC_API_KEY", "anthropic_api_key"),
    ProviderType.LMSTUDIO:  ("LMSTUDIO_API_KEY",  "lmstudio_api_key"),
}


class Settings(BaseSettings):
    """
    TaskPilot runtime settings.

    Priority (highest to lowest):
      1. Environment variables (nested via "__", e.g. AGENT__MAX_ITERATIONS)
      2. .env file
      3. config.yaml sections (passed as init kwargs)
      4. Field defaults

    Secrets never belong in config.yaml; they come from the environment.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets -------------------------------------------------------------
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    lmstudio_api_key: Optional[str] = Field(default=None, alias="LMSTUDIO_API_KEY")

    # -- Structured config ---------------------------------------------------
    agent: AgentConfig = Field(default_factory=AgentConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # yaml arrives as init kwargs; let the environment override it
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def state_dir(self) -> Path:
        return Path(self.state.state_dir).expanduser()

    def api_key_for(self, provider_type: ProviderType) -> Optional[str]:
        source = _KEY_SOURCES.get(provider_type)
        return getattr(self, source[1]) if source else None

    def validate_all(self) -> None:
        """
        Cross-field startup validation. Raises ConfigError listing every
        problem; field-level problems were already rejected by pydantic.
        """
        errors: list[str] = []

        # ── Default provider exists ──────────────────────────────────────────
        if self.llm.resolve_default() is None:
            errors.append(
                f"llm.default_provider '{self.llm.default_provider}' does not match "
                f"any entry in llm.providers {[p.name for p in self.llm.providers]}."
            )

        # ── Cloud providers need their key ───────────────────────────────────
        for provider in self.llm.providers:
            if not provider.requires_api_key:
                continue
            env_name, attr = _KEY_SOURCES[provider.provider_type]
            if not getattr(self, attr):
                errors.append(
                    f"Provider '{provider.name}' ({provider.provider_type.value}) "
                    f"requires {env_name} to be set in your environment or .env file."
                )

        # ── state_dir is not a system directory ──────────────────────────────
        if _is_blocked_system_path(self.state.state_dir):
            errors.append(
                f"state.state_dir '{self.state.state_dir}' points to a protected "
                f"system directory."
            )

        # ── Extension directories exist ──────────────────────────────────────
        for p in self.tools.extension_paths:
            if not Path(p).expanduser().is_dir():
                errors.append(f"tools.extension_paths entry '{p}' is not a directory.")

        if errors:
            numbered = "\n".join(f"  {i + 1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nTaskPilot startup failed, {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_KNOWN_SECTIONS = {"agent", "llm", "tools", "state", "safety", "monitor", "logging"}

_singleton: Optional[Settings] = None
_singleton_lock = threading.Lock()


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """--config argument, then $TASKPILOT_CONFIG, then config/config.yaml."""
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("TASKPILOT_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Parse config.yaml + environment into Settings and store it as the singleton."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """Return the Settings singleton, loading from the default path on first use."""
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is not None:
            return _singleton
    return load_settings()
