"""
tools/__init__.py — TaskPilot Tool System

Public interface for the tool system.

Usage:
    from taskpilot.tools import setup_tools, registry, ToolDispatcher

    setup_tools()  # registers all built-in tools
    dispatcher = ToolDispatcher(registry)
    result = await dispatcher.execute("read_file", {"path": "notes.txt"})
"""

from __future__ import annotations

from typing import Optional

from taskpilot.safety.input_validator import InputValidator
from taskpilot.tools.dispatcher import ToolDispatcher
from taskpilot.tools.tool_registry import ToolRegistry, registry
from taskpilot.tools.types import (
    Extension,
    ToolHandler,
    ToolResult,
    ToolSchema,
    ToolStatus,
    tool_handler,
)

__all__ = [
    "registry",
    "setup_tools",
    "ToolDispatcher",
    "ToolRegistry",
    # Types
    "Extension",
    "ToolHandler",
    "ToolResult",
    "ToolSchema",
    "ToolStatus",
    "tool_handler",
]


def setup_tools(
    validator: Optional[InputValidator] = None,
    enable_text: bool = True,
    enable_applications: bool = True,
) -> ToolRegistry:
    """
    Import and register the built-in tools, returning the global registry.

    Importing a tool module registers its tools; `validator` becomes the
    path guard every file tool checks before touching disk.
    """
    from taskpilot.tools import filesystem  # registers tools on import

    filesystem.configure_path_guard(validator)

    if enable_text:
        import taskpilot.tools.text_processing  # noqa: F401 — side effect: registers tools

    if enable_applications:
        import taskpilot.tools.application  # noqa: F401 — side effect: registers tools

    return registry
