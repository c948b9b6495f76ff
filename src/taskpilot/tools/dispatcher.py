"""
tools/dispatcher.py — Tool Dispatcher

The single entry point between the orchestrator and tool execution.
Every step of a plan is routed through here.

Flow:
  ToolDispatcher.execute(name, arguments, timeout)
    → Resolution (extensions in registration order, then built-ins)
    → Argument validation (JSON schema: required fields + types)
    → Handler execution (async, under a per-call timeout)
    → ToolResult (success / failure / cancelled)

Never raises for tool-level problems: unknown tools, bad arguments and
handler exceptions all become failed ToolResults. asyncio.CancelledError
from the caller is the one thing that propagates.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Optional

from taskpilot.exceptions import ToolNotFoundError
from taskpilot.observability.logger import get_logger
from taskpilot.tools.tool_registry import ToolRegistry
from taskpilot.tools.types import Extension, ToolHandler, ToolResult, ToolSchema

log = get_logger(__name__)

# Default tool execution timeout
DEFAULT_TIMEOUT_SECONDS = 30.0


class ToolDispatcher:
    """
    Usage:
        dispatcher = ToolDispatcher(registry)
        dispatcher.register_extension(extension)
        result = await dispatcher.execute("write_file", {"path": "a.txt", "content": "hi"})
    """

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.registry = registry
        self.default_timeout_seconds = default_timeout_seconds
        self._extensions: dict[str, Extension] = {}

    # ── Extensions ────────────────────────────────────────────────────────────

    def register_extension(self, extension: Extension) -> None:
        """Attach an extension. Re-registering a name replaces it in place."""
        self._extensions[extension.name] = extension
        shadowed = [n for n in extension.tool_names() if self.registry.is_registered(n)]
        log.info(
            "dispatcher.extension_registered",
            extension=extension.name,
            version=extension.version,
            tools=extension.tool_names(),
            shadows_builtin=shadowed or None,
        )

    def unregister_extension(self, name: str) -> bool:
        removed = self._extensions.pop(name, None)
        if removed is not None:
            log.info("dispatcher.extension_unregistered", extension=name)
        return removed is not None

    @property
    def extensions(self) -> list[Extension]:
        return list(self._extensions.values())

    # ── Lookup ────────────────────────────────────────────────────────────────

    def resolve(self, tool_name: str) -> ToolHandler:
        """Extension handlers win over built-ins with the same name."""
        for extension in self._extensions.values():
            for handler in extension.tool_handlers:
                if handler.name == tool_name:
                    return handler
        handler = self.registry.get_handler(tool_name)
        if handler is None:
            raise ToolNotFoundError(tool_name)
        return handler

    def list_available_tools(self) -> list[str]:
        return [s.name for s in self.list_schemas()]

    def list_schemas(self) -> list[ToolSchema]:
        """Effective catalog: each name once, carrying the schema that would run."""
        seen: dict[str, ToolSchema] = {}
        for extension in self._extensions.values():
            for handler in extension.tool_handlers:
                seen.setdefault(handler.name, handler.schema)
        for schema in self.registry.list_schemas():
            seen.setdefault(schema.name, schema)
        return list(seen.values())

    # ── Execution ─────────────────────────────────────────────────────────────

    async def execute(
        self,
        tool_name: str,
        arguments: Optional[dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> ToolResult:
        arguments = arguments or {}
        timeout = timeout_seconds if timeout_seconds else self.default_timeout_seconds
        start = time.monotonic()

        log.info("dispatcher.execute", tool=tool_name, timeout_seconds=timeout)

        # ── Step 1: Resolution ────────────────────────────────────────────────
        try:
            handler = self.resolve(tool_name)
        except ToolNotFoundError as e:
            log.warning("dispatcher.tool_not_found", tool=tool_name, available=self.list_available_tools())
            return ToolResult.failure(f"{type(e).__name__}: {e.message}", tool_name=tool_name)

        # ── Step 2: Argument validation ───────────────────────────────────────
        validation_error = _validate_args(arguments, handler.schema.input_schema)
        if validation_error:
            return ToolResult.failure(f"Invalid arguments: {validation_error}", tool_name=tool_name)

        # ── Step 3: Execute with timeout ──────────────────────────────────────
        # Handler exceptions are captured inside the timed call, so a
        # TimeoutError raised by the tool itself stays an ordinary failure.
        try:
            raised, raw_result = await asyncio.wait_for(_capture(handler, arguments), timeout=timeout)
        except asyncio.TimeoutError:
            duration = time.monotonic() - start
            log.error("dispatcher.timeout", tool=tool_name, timeout_seconds=timeout, duration_seconds=duration)
            return ToolResult.cancelled_result(
                f"Tool '{tool_name}' timed out after {timeout}s",
                tool_name=tool_name,
                duration_seconds=duration,
            )
        except asyncio.CancelledError:
            log.info("dispatcher.cancelled", tool=tool_name)
            raise

        if raised:
            e = raw_result
            duration = time.monotonic() - start
            log.error(
                "dispatcher.execution_error",
                tool=tool_name,
                error=str(e),
                duration_seconds=duration,
                exc_info=e,
            )
            return ToolResult.failure(f"{type(e).__name__}: {e}", tool_name=tool_name, duration_seconds=duration)

        # ── Step 4: Normalise result ──────────────────────────────────────────
        duration = time.monotonic() - start
        if isinstance(raw_result, ToolResult):
            result = raw_result.with_duration(duration, tool_name=tool_name)
        else:
            result = ToolResult.ok(_normalise_result(raw_result), tool_name=tool_name, duration_seconds=duration)

        log.info(
            "dispatcher.done",
            tool=tool_name,
            status=result.status.value,
            duration_seconds=round(duration, 3),
        )
        return result


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_JSON_TYPE_MAP: dict[str, type | tuple] = {
    "string":  str,
    "integer": int,
    "number":  (int, float),
    "boolean": bool,
    "array":   list,
    "object":  dict,
}


def _validate_args(arguments: dict, schema: dict) -> Optional[str]:
    """
    Validate tool arguments against the JSON schema.
    Returns an error string if invalid, None if valid.

    Checks that every required field is present and that provided values
    match their declared JSON types. Unknown fields are allowed.
    """
    required = schema.get("required", [])
    properties = schema.get("properties", {})

    for field in required:
        if field not in arguments:
            return f"Missing required field: '{field}'"

    for field, value in arguments.items():
        prop_schema = properties.get(field)
        if not prop_schema:
            continue
        json_type = prop_schema.get("type")
        expected = _JSON_TYPE_MAP.get(json_type) if json_type else None
        if expected is None:
            continue
        # bool is a subclass of int
        if json_type in ("integer", "number") and isinstance(value, bool):
            return f"Field '{field}': expected {json_type}, got boolean"
        if not isinstance(value, expected):
            return f"Field '{field}': expected {json_type}, got {type(value).__name__}"

    return None


async def _capture(handler: ToolHandler, arguments: dict) -> tuple[bool, Any]:
    """Run the handler, returning (raised, exception-or-result). Cancellation propagates."""
    try:
        return False, await handler.invoke(**arguments)
    except Exception as e:
        return True, e


def _normalise_result(result: Any) -> Any:
    """Handlers may return None; everything else is kept as the opaque output."""
    if result is None:
        return "Done."
    return result


def render_output(output: Any) -> str:
    """Render an opaque tool output as text for users and the wire protocol."""
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    if isinstance(output, (dict, list, tuple)):
        try:
            return json.dumps(output, indent=2, default=str)
        except (TypeError, ValueError):
            return str(output)
    return str(output)
