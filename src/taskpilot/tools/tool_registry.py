"""
tools/tool_registry.py — Built-in Tool Registry

Table of the built-in tools shipped with TaskPilot. Built-in modules
register themselves via the @registry.register() decorator when
setup_tools() imports them; extension tools never go here, they are
attached to the dispatcher instead.

Usage:
    @registry.register(
        name="read_file",
        description="Read a file",
        category="filesystem",
        input_schema={...},
    )
    async def read_file(path: str) -> str:
        ...

    handler = registry.get_handler("read_file")
    all_schemas = registry.list_schemas()
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from taskpilot.observability.logger import get_logger
from taskpilot.tools.types import ToolHandler, ToolInvoke, ToolSchema

log = get_logger(__name__)


class ToolRegistry:
    """
    Maps tool names to ToolHandlers. Re-registering a name replaces it.
    Not designed for concurrent writes.
    """

    def __init__(self):
        self._handlers: dict[str, ToolHandler] = {}

    def register(
        self,
        name: str,
        description: str,
        category: str = "general",
        input_schema: Optional[dict[str, Any]] = None,
    ) -> Callable[[ToolInvoke], ToolInvoke]:
        """Decorator registering an async function; the function is returned unchanged."""
        def decorator(fn: ToolInvoke) -> ToolInvoke:
            schema = ToolSchema(
                name=name,
                description=description,
                category=category,
                input_schema=input_schema or {"type": "object", "properties": {}, "required": []},
            )
            self.register_tool(schema, fn)
            return fn

        return decorator

    def register_tool(self, schema: ToolSchema, handler: ToolInvoke) -> None:
        """Programmatic registration (alternative to decorator)."""
        self._handlers[schema.name] = ToolHandler(schema, handler)
        log.debug("tool.registered", tool=schema.name, category=schema.category)

    def unregister(self, name: str) -> bool:
        return self._handlers.pop(name, None) is not None

    def get_schema(self, name: str) -> Optional[ToolSchema]:
        handler = self._handlers.get(name)
        return handler.schema if handler else None

    def get_handler(self, name: str) -> Optional[ToolHandler]:
        return self._handlers.get(name)

    def is_registered(self, name: str) -> bool:
        return name in self._handlers

    def list_schemas(self) -> list[ToolSchema]:
        return [h.schema for h in self._handlers.values()]

    def list_names(self) -> list[str]:
        return list(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={self.list_names()}>"


# ─────────────────────────────────────────────────────────────────────────────
# Global registry singleton
# ─────────────────────────────────────────────────────────────────────────────

# Import this in built-in tool modules to self-register
registry = ToolRegistry()
