"""
tools/text_processing.py — Text Processing Tools

Encoding-aware reads and writes plus line search and find/replace.
Shares the path guard and 10 MB cap with tools/filesystem.py.

Registered tools:
  - read_text_file   → read with an explicit encoding
  - write_text_file  → write, optionally keeping "<path>.backup"
  - append_to_file   → append, refusing to grow past the size cap
  - search_in_file   → "Line N: text" for each matching line
  - replace_in_file  → literal or regex replace, "replaced N occurrence(s)"
"""

from __future__ import annotations

import asyncio
import codecs
import re
import shutil
from pathlib import Path

from taskpilot.tools.filesystem import MAX_FILE_BYTES, check_size, guard_path
from taskpilot.tools.tool_registry import registry

_ENCODING_PROPERTY = {
    "type": "string",
    "description": "Text encoding (default: utf-8). Unknown names fall back to utf-8.",
    "default": "utf-8",
}


def _encoding(name: str) -> str:
    try:
        return codecs.lookup(name).name
    except LookupError:
        return "utf-8"


def _existing_file(path: str) -> Path:
    resolved = guard_path(path)
    if not resolved.exists():
        raise FileNotFoundError(f"File not found: {resolved}")
    if not resolved.is_file():
        raise ValueError(f"Path is not a file: {resolved}")
    check_size(resolved)
    return resolved


@registry.register(
    name="read_text_file",
    description="Read a text file using the given encoding.",
    category="text",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to the file"},
            "encoding": _ENCODING_PROPERTY,
        },
        "required": ["path"],
    },
)
async def read_text_file(path: str, encoding: str = "utf-8") -> str:
    resolved = _existing_file(path)
    return await asyncio.to_thread(resolved.read_text, encoding=_encoding(encoding))


@registry.register(
    name="write_text_file",
    description="Write text to a file with the given encoding, optionally backing up the old file.",
    category="text",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to write to"},
            "content": {"type": "string", "description": "Text content"},
            "encoding": _ENCODING_PROPERTY,
            "create_backup": {
                "type": "boolean",
                "description": "Copy an existing file to <path>.backup first (default: false)",
                "default": False,
            },
        },
        "required": ["path", "content"],
    },
)
async def write_text_file(
    path: str,
    content: str,
    encoding: str = "utf-8",
    create_backup: bool = False,
) -> str:
    resolved = guard_path(path)
    if len(content) > MAX_FILE_BYTES:
        raise ValueError(f"Content too large (limit {MAX_FILE_BYTES:,} characters)")

    def _write() -> None:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        if create_backup and resolved.is_file():
            shutil.copyfile(resolved, resolved.with_name(resolved.name + ".backup"))
        resolved.write_text(content, encoding=_encoding(encoding))

    await asyncio.to_thread(_write)
    return f"Wrote {len(content)} characters to {resolved}"


@registry.register(
    name="append_to_file",
    description="Append text to the end of a file, creating it if needed.",
    category="text",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path to append to"},
            "content": {"type": "string", "description": "Text to append"},
            "encoding": _ENCODING_PROPERTY,
        },
        "required": ["path", "content"],
    },
)
async def append_to_file(path: str, content: str, encoding: str = "utf-8") -> str:
    resolved = guard_path(path)
    if resolved.is_file():
        check_size(resolved, extra_bytes=len(content))

    def _append() -> None:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        with resolved.open("a", encoding=_encoding(encoding)) as f:
            f.write(content)

    await asyncio.to_thread(_append)
    return f"Appended {len(content)} characters to {resolved}"


@registry.register(
    name="search_in_file",
    description=(
        "Find lines in a file containing a pattern. Plain patterns match "
        "case-insensitively; set use_regex for a regular expression."
    ),
    category="text",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File to search"},
            "pattern": {"type": "string", "description": "Substring or regular expression"},
            "use_regex": {"type": "boolean", "description": "Treat pattern as a regex", "default": False},
            "encoding": _ENCODING_PROPERTY,
        },
        "required": ["path", "pattern"],
    },
)
async def search_in_file(
    path: str,
    pattern: str,
    use_regex: bool = False,
    encoding: str = "utf-8",
) -> str:
    if not pattern.strip():
        raise ValueError("pattern must not be empty")
    resolved = _existing_file(path)
    text = await asyncio.to_thread(resolved.read_text, encoding=_encoding(encoding))

    if use_regex:
        regex = re.compile(pattern)
        is_match = lambda line: regex.search(line) is not None  # noqa: E731
    else:
        needle = pattern.lower()
        is_match = lambda line: needle in line.lower()  # noqa: E731

    matches = [
        f"Line {number}: {line}"
        for number, line in enumerate(text.splitlines(), start=1)
        if is_match(line)
    ]
    return "\n".join(matches) if matches else "No matching lines found."


@registry.register(
    name="replace_in_file",
    description="Replace every occurrence of old_text with new_text in a file.",
    category="text",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File to modify"},
            "old_text": {"type": "string", "description": "Text (or regex) to replace"},
            "new_text": {"type": "string", "description": "Replacement text"},
            "use_regex": {"type": "boolean", "description": "Treat old_text as a regex", "default": False},
            "create_backup": {
                "type": "boolean",
                "description": "Keep the original as <path>.backup (default: false)",
                "default": False,
            },
            "encoding": _ENCODING_PROPERTY,
        },
        "required": ["path", "old_text", "new_text"],
    },
)
async def replace_in_file(
    path: str,
    old_text: str,
    new_text: str,
    use_regex: bool = False,
    create_backup: bool = False,
    encoding: str = "utf-8",
) -> str:
    if not old_text:
        raise ValueError("old_text must not be empty")
    resolved = _existing_file(path)
    codec = _encoding(encoding)
    original = await asyncio.to_thread(resolved.read_text, encoding=codec)

    if use_regex:
        updated, count = re.subn(old_text, new_text, original)
    else:
        count = original.count(old_text)
        updated = original.replace(old_text, new_text)

    def _write() -> None:
        if create_backup:
            resolved.with_name(resolved.name + ".backup").write_text(original, encoding=codec)
        resolved.write_text(updated, encoding=codec)

    await asyncio.to_thread(_write)
    return f"replaced {count} occurrence(s)"
