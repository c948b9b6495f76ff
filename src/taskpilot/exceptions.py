"""
exceptions.py — TaskPilot Error Hierarchy

Every layer raises typed subclasses of TaskPilotError. Each carries a stable
error_code plus a free-form context dict so callers can log or render the
technical detail without string-parsing the message.

Hierarchy:
    TaskPilotError
    ├── ValidationError          (bad user input / tool arguments)
    ├── PlanningError            (model output is not a parseable plan)
    ├── ToolNotFoundError        (unknown tool name)
    ├── ProviderError            (language-model backend failure)
    │   ├── ProviderConnectionError
    │   ├── ProviderCredentialError
    │   ├── ProviderRateLimitError
    │   └── ProviderStreamError
    ├── StateManagerError        (snapshot read/write failure, fatal)
    └── ExtensionError           (extension load / registration failure)
"""

from __future__ import annotations

from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class TaskPilotError(Exception):
    """Base class for all TaskPilot exceptions."""

    default_code = "TASKPILOT_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.context: dict[str, Any] = dict(context or {})

    def __repr__(self) -> str:
        return f"<{type(self).__name__} code={self.error_code} message={self.message!r}>"


# ─────────────────────────────────────────────────────────────────────────────
# Validation / planning
# ─────────────────────────────────────────────────────────────────────────────

class ValidationError(TaskPilotError):
    """User input or tool arguments were rejected before planning started."""

    default_code = "VALIDATION_ERROR"


class PlanningError(TaskPilotError):
    """The planner could not turn model output into an ExecutionPlan."""

    default_code = "PLANNING_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# Tools
# ─────────────────────────────────────────────────────────────────────────────

class ToolNotFoundError(TaskPilotError):
    """Requested tool is neither an extension tool nor a built-in."""

    default_code = "TOOL_NOT_FOUND"

    def __init__(self, tool_name: str, message: str = "") -> None:
        self.tool_name = tool_name
        super().__init__(
            message or f"tool '{tool_name}' not found",
            context={"tool_name": tool_name},
        )


class ExtensionError(TaskPilotError):
    """An extension could not be loaded or registered."""

    default_code = "EXTENSION_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# Language-model providers
# ─────────────────────────────────────────────────────────────────────────────

class ProviderError(TaskPilotError):
    """Base for all language-model backend failures."""

    default_code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: str = "",
        status_code: Optional[int] = None,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(
            message,
            context={"provider": provider, "status_code": status_code},
        )


class ProviderConnectionError(ProviderError):
    """Backend unreachable, or the request timed out on the wire."""


class ProviderCredentialError(ProviderError):
    """API key missing from the secret store, or rejected by the backend."""


class ProviderRateLimitError(ProviderError):
    """Backend answered 429."""


class ProviderStreamError(ProviderError):
    """Streamed response did not follow the backend's framing."""


# ─────────────────────────────────────────────────────────────────────────────
# State
# ─────────────────────────────────────────────────────────────────────────────

class StateManagerError(TaskPilotError):
    """A session snapshot could not be written or read."""

    default_code = "STATE_MANAGER_ERROR"


__all__ = [
    "TaskPilotError",
    "ValidationError",
    "PlanningError",
    "ToolNotFoundError",
    "ExtensionError",
    "ProviderError",
    "ProviderConnectionError",
    "ProviderCredentialError",
    "ProviderRateLimitError",
    "ProviderStreamError",
    "StateManagerError",
]
