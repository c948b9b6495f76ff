"""
tools/types.py — Tool System Data Models

Shared types used across the tool registry, the dispatcher, extensions,
the JSON-RPC tool protocol and every built-in tool.
"""

from __future__ import annotations

import functools
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field


ToolInvoke = Callable[..., Awaitable[Any]]


# ─────────────────────────────────────────────────────────────────────────────
# Result status
# ─────────────────────────────────────────────────────────────────────────────


class ToolStatus(str, Enum):
    """
    Tri-state outcome of one tool call. CANCELLED is distinct from FAILURE:
    a timed-out or cancelled call is never fed to the retry heuristics.
    """
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


# ─────────────────────────────────────────────────────────────────────────────
# Tool registration metadata
# ─────────────────────────────────────────────────────────────────────────────


class ToolSchema(BaseModel):
    """
    Metadata for a tool: the name the planner uses, a description, and the
    JSON schema its keyword arguments are checked against.
    """
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    category: str = "general"   # e.g. "filesystem", "text", "application"

    @property
    def required_arguments(self) -> list[str]:
        return list(self.input_schema.get("required", []))

    def to_protocol(self) -> dict[str, Any]:
        """Return the schema in the `tools/list` wire shape."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Runtime result
# ─────────────────────────────────────────────────────────────────────────────


class ToolResult(BaseModel):
    """The result of a tool call after execution. Never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    status: ToolStatus
    output: Any = None
    error: Optional[str] = None
    duration_seconds: float = 0.0
    tool_name: str = ""

    @property
    def success(self) -> bool:
        return self.status == ToolStatus.SUCCESS

    @property
    def cancelled(self) -> bool:
        return self.status == ToolStatus.CANCELLED

    @classmethod
    def ok(cls, output: Any = None, tool_name: str = "", duration_seconds: float = 0.0) -> "ToolResult":
        return cls(
            status=ToolStatus.SUCCESS,
            output=output,
            tool_name=tool_name,
            duration_seconds=duration_seconds,
        )

    @classmethod
    def failure(cls, error: str, tool_name: str = "", duration_seconds: float = 0.0) -> "ToolResult":
        return cls(
            status=ToolStatus.FAILURE,
            error=error,
            tool_name=tool_name,
            duration_seconds=duration_seconds,
        )

    @classmethod
    def cancelled_result(cls, error: str, tool_name: str = "", duration_seconds: float = 0.0) -> "ToolResult":
        return cls(
            status=ToolStatus.CANCELLED,
            error=error,
            tool_name=tool_name,
            duration_seconds=duration_seconds,
        )

    def with_duration(self, duration_seconds: float, tool_name: Optional[str] = None) -> "ToolResult":
        return self.model_copy(
            update={
                "duration_seconds": duration_seconds,
                "tool_name": self.tool_name or (tool_name or ""),
            }
        )

    def output_text(self) -> str:
        if self.output is None:
            return ""
        return self.output if isinstance(self.output, str) else str(self.output)


# ─────────────────────────────────────────────────────────────────────────────
# Handlers and extensions
# ─────────────────────────────────────────────────────────────────────────────


class ToolHandler:
    """
    A named capability behind a fixed interface: schema + `invoke(**arguments)`.
    Extensions hand the dispatcher lists of these; no attribute lookup or
    reflection happens at call time.
    """

    def __init__(self, schema: ToolSchema, invoke: ToolInvoke):
        self.schema = schema
        self._invoke = invoke

    @property
    def name(self) -> str:
        return self.schema.name

    async def invoke(self, **arguments: Any) -> Any:
        return await self._invoke(**arguments)

    def __repr__(self) -> str:
        return f"<ToolHandler {self.name}>"


class Extension(BaseModel):
    """A named, versioned bundle of tool handlers supplied from outside the core."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    version: str = "0.0.0"
    tool_handlers: list[ToolHandler] = Field(default_factory=list)

    def tool_names(self) -> list[str]:
        return [h.name for h in self.tool_handlers]


def tool_handler(
    name: str,
    description: str = "",
    input_schema: Optional[dict[str, Any]] = None,
    category: str = "extension",
) -> Callable[[ToolInvoke], ToolHandler]:
    """
    Decorator turning an async function into a ToolHandler.

    Example:
        @tool_handler(
            name="word_count",
            description="Count words in a string",
            input_schema={
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
        )
        async def word_count(text: str) -> int:
            return len(text.split())

        EXTENSION = Extension(name="words", version="1.0", tool_handlers=[word_count])
    """
    def decorator(fn: ToolInvoke) -> ToolHandler:
        schema = ToolSchema(
            name=name,
            description=description or (fn.__doc__ or "").strip(),
            input_schema=input_schema or {"type": "object", "properties": {}, "required": []},
            category=category,
        )
        handler = ToolHandler(schema, fn)
        functools.update_wrapper(handler, fn, updated=())
        return handler

    return decorator
