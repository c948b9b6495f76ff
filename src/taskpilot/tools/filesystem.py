"""
tools/filesystem.py — Filesystem Tools

Basic file access for plan steps. Every path goes through the
InputValidator path guard (traversal, length, protected system roots)
immediately before I/O.

Registered tools:
  - read_file       → read a text file (UTF-8)
  - write_file      → write/overwrite a text file, creating parent dirs
  - list_directory  → "[DIR] name" / "[FILE] name" lines, dirs first
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

from taskpilot.safety.input_validator import InputValidator
from taskpilot.tools.tool_registry import registry

# Hard cap: refuse to load files larger than this
MAX_FILE_BYTES = 10 * 1024 * 1024  # 10 MB

_path_validator: InputValidator = InputValidator()


def configure_path_guard(validator: Optional[InputValidator]) -> None:
    """Swap the validator used by every built-in file tool (None restores defaults)."""
    global _path_validator
    _path_validator = validator or InputValidator()


def guard_path(path: str) -> Path:
    """
    Validate a raw path argument and return the normalised path that was
    checked, so I/O happens on exactly that path. Raises PermissionError.
    """
    result = _path_validator.validate_path(path)
    if not result.valid:
        raise PermissionError(f"Path rejected: {result.error}")
    return Path(_path_validator.normalize_path(path))


def check_size(resolved: Path, extra_bytes: int = 0) -> None:
    size = resolved.stat().st_size + extra_bytes
    if size > MAX_FILE_BYTES:
        raise ValueError(f"File too large: {size:,} bytes (limit {MAX_FILE_BYTES:,} bytes)")


@registry.register(
    name="read_file",
    description="Read the contents of a text file and return it as a string.",
    category="filesystem",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to the file to read"},
        },
        "required": ["path"],
    },
)
async def read_file(path: str) -> str:
    resolved = guard_path(path)
    if not resolved.exists():
        raise FileNotFoundError(f"File not found: {resolved}")
    if not resolved.is_file():
        raise ValueError(f"Path is not a file: {resolved}")
    check_size(resolved)
    return await asyncio.to_thread(resolved.read_text, encoding="utf-8")


@registry.register(
    name="write_file",
    description=(
        "Write content to a file, creating it (and any missing parent "
        "directories) if it doesn't exist or overwriting it if it does."
    ),
    category="filesystem",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to write to"},
            "content": {"type": "string", "description": "Text content to write"},
        },
        "required": ["path", "content"],
    },
)
async def write_file(path: str, content: str) -> str:
    resolved = guard_path(path)
    if len(content.encode("utf-8")) > MAX_FILE_BYTES:
        raise ValueError(f"Content too large (limit {MAX_FILE_BYTES:,} bytes)")

    def _write() -> None:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(content, encoding="utf-8")

    await asyncio.to_thread(_write)
    return f"Wrote {len(content)} characters to {resolved}"


@registry.register(
    name="list_directory",
    description="List the entries of a directory, directories first.",
    category="filesystem",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory to list"},
        },
        "required": ["path"],
    },
)
async def list_directory(path: str) -> str:
    resolved = guard_path(path)
    if not resolved.exists():
        raise FileNotFoundError(f"Directory not found: {resolved}")
    if not resolved.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {resolved}")

    entries = sorted(resolved.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
    lines = [f"[DIR] {e.name}" if e.is_dir() else f"[FILE] {e.name}" for e in entries]
    return "\n".join(lines) if lines else "(empty directory)"
