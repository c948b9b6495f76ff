"""
safety/input_validator.py — Input Validator

Screens free-text requests, file paths and tool arguments before they reach
the planner or the dispatcher.

Hard rejections (valid=False):
  - empty / whitespace-only input, or input over the length ceiling
  - destructive-command keywords (rm, format, shutdown, kill, reg delete, ...)
  - paths with ".." traversal, over-long paths, paths under protected system roots
  - tool arguments missing a required path/content, or content over the cap

Soft warnings (valid=True, warnings non-empty):
  - text that looks like a SQL statement
  - "dangerous path" substrings (system32, program files, ..)
  - more than 30% of characters neither alphanumeric nor whitespace
"""

from __future__ import annotations

import ntpath
import os
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath, PureWindowsPath
from typing import Any, Iterable, Optional

from taskpilot.exceptions import ValidationError
from taskpilot.observability.logger import get_logger

log = get_logger(__name__)

MAX_INPUT_LENGTH = 10_000
MAX_PATH_LENGTH = 260
MAX_WRITE_CONTENT_LENGTH = 1_000_000
SPECIAL_CHAR_RATIO = 0.3

_DANGEROUS_COMMANDS = re.compile(
    r"(?:\b(?:rm|del|delete|format|shutdown|reboot|halt|poweroff|kill|taskkill"
    r"|net\s+stop|sc\s+stop|reg\s+delete)\b"
    r"|(?:\|\s*(?:rm|del|delete|format|shutdown)))",
    re.IGNORECASE,
)

_DANGEROUS_PATHS = re.compile(
    r"(?:\.\.|[/\\](?:windows|system32|program\s+files|users"
    r"|documents\s+and\s+settings|all\s+users))",
    re.IGNORECASE,
)

_SQL_LIKE = re.compile(
    r"\b(?:select|insert|update|delete|drop|create|alter|exec|execute)\b.*",
    re.IGNORECASE,
)

PROTECTED_POSIX_ROOTS: tuple[str, ...] = (
    "/etc", "/bin", "/sbin", "/usr/bin", "/usr/sbin",
    "/var/log", "/var/spool", "/proc", "/sys", "/dev", "/boot", "/root",
)

PROTECTED_WINDOWS_ROOTS: tuple[str, ...] = (
    "C:\\Windows",
    "C:\\Program Files",
    "C:\\Program Files (x86)",
    "C:\\ProgramData",
    "C:\\Users\\All Users",
    "C:\\Users\\Default",
    "C:\\Users\\Public",
    "C:\\$Recycle.Bin",
    "C:\\System Volume Information",
    "C:\\Boot",
    "C:\\Recovery",
)

# tool name → (requires path, requires content)
_PATH_TOOLS = {"read_file", "read_text_file", "list_directory", "search_in_file", "replace_in_file"}
_WRITE_TOOLS = {"write_file", "write_text_file", "append_to_file"}


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def ok(cls, warnings: Iterable[str] = ()) -> "ValidationResult":
        return cls(valid=True, warnings=tuple(warnings))

    @classmethod
    def invalid(cls, error: str) -> "ValidationResult":
        return cls(valid=False, error=error)


def raise_for_invalid(result: ValidationResult) -> None:
    """Convert an invalid ValidationResult into a ValidationError."""
    if not result.valid:
        raise ValidationError(result.error or "validation failed")


class InputValidator:
    """Stateless; one instance can be shared across sessions."""

    def __init__(
        self,
        max_input_length: int = MAX_INPUT_LENGTH,
        max_path_length: int = MAX_PATH_LENGTH,
        max_write_content_length: int = MAX_WRITE_CONTENT_LENGTH,
        protected_paths_extra: Iterable[str] = (),
    ):
        self.max_input_length = max_input_length
        self.max_path_length = max_path_length
        self.max_write_content_length = max_write_content_length
        self._protected_posix = PROTECTED_POSIX_ROOTS + tuple(
            p for p in protected_paths_extra if p.startswith("/")
        )
        self._protected_windows = PROTECTED_WINDOWS_ROOTS + tuple(
            p for p in protected_paths_extra if not p.startswith("/")
        )

    @classmethod
    def from_settings(cls, safety_config) -> "InputValidator":
        return cls(
            max_input_length=safety_config.max_input_length,
            max_path_length=safety_config.max_path_length,
            max_write_content_length=safety_config.max_write_content_length,
            protected_paths_extra=safety_config.protected_paths_extra,
        )

    # ── Free text ─────────────────────────────────────────────────────────────

    def validate_input(self, text: Optional[str]) -> ValidationResult:
        if text is None or not text.strip():
            return ValidationResult.invalid("input is empty")

        if len(text) > self.max_input_length:
            return ValidationResult.invalid(
                f"input is too long ({len(text)} characters, maximum {self.max_input_length})"
            )

        match = _DANGEROUS_COMMANDS.search(text)
        if match:
            log.warning("input_validator.dangerous_command", keyword=match.group(0).strip())
            return ValidationResult.invalid(
                f"input contains a potentially destructive command: '{match.group(0).strip()}'"
            )

        warnings: list[str] = []
        if _SQL_LIKE.search(text):
            warnings.append("input resembles a SQL statement")
        if _DANGEROUS_PATHS.search(text):
            warnings.append("input references a potentially sensitive path")
        if _special_char_ratio(text) > SPECIAL_CHAR_RATIO:
            warnings.append("input contains a high proportion of special characters")

        if warnings:
            log.info("input_validator.warnings", warnings=warnings)
        return ValidationResult.ok(warnings)

    # ── Paths ─────────────────────────────────────────────────────────────────

    def validate_path(self, path: Optional[str]) -> ValidationResult:
        if path is None or not str(path).strip():
            return ValidationResult.invalid("path is empty")

        path = str(path)
        if len(path) > self.max_path_length:
            return ValidationResult.invalid(
                f"path is too long ({len(path)} characters, maximum {self.max_path_length})"
            )

        if ".." in path:
            return ValidationResult.invalid("path traversal ('..') is not allowed")

        protected = self._protected_root(self.normalize_path(path))
        if protected:
            return ValidationResult.invalid(f"access to protected system path '{protected}' is not allowed")

        return ValidationResult.ok()

    @staticmethod
    def normalize_path(path: str) -> str:
        """Expand "~" / "~user" and collapse redundant separators and "." segments."""
        expanded = os.path.expanduser(path)
        if _is_windows_style(expanded):
            return ntpath.normpath(expanded)
        normalized = posixpath.normpath(expanded)
        # normpath keeps a leading "//"; the kernel resolves it to "/"
        if normalized.startswith("//"):
            normalized = "/" + normalized.lstrip("/")
        return normalized

    def _protected_root(self, path: str) -> Optional[str]:
        if _is_windows_style(path):
            candidate = PureWindowsPath(path)
            for root in self._protected_windows:
                root_path = PureWindowsPath(root)
                if candidate == root_path or _is_relative_to(candidate, root_path):
                    return root
            return None

        candidate_posix = PurePosixPath(path)
        for root in self._protected_posix:
            root_path = PurePosixPath(root)
            if candidate_posix == root_path or _is_relative_to(candidate_posix, root_path):
                return root
        return None

    # ── Tool arguments ────────────────────────────────────────────────────────

    def validate_tool_arguments(self, tool_name: str, arguments: Optional[dict[str, Any]]) -> ValidationResult:
        arguments = arguments or {}

        if tool_name not in _PATH_TOOLS and tool_name not in _WRITE_TOOLS:
            return ValidationResult.ok()

        path = arguments.get("path")
        if not isinstance(path, str):
            return ValidationResult.invalid(f"tool '{tool_name}' requires a 'path' argument")
        path_result = self.validate_path(path)
        if not path_result.valid:
            return path_result

        if tool_name in _WRITE_TOOLS:
            content = arguments.get("content")
            if not isinstance(content, str):
                return ValidationResult.invalid(f"tool '{tool_name}' requires a 'content' argument")
            if len(content) > self.max_write_content_length:
                return ValidationResult.invalid(
                    f"content is too large ({len(content)} characters, "
                    f"maximum {self.max_write_content_length})"
                )

        return ValidationResult.ok()


def _is_windows_style(path: str) -> bool:
    return "\\" in path or re.match(r"^[A-Za-z]:", path) is not None


def _special_char_ratio(text: str) -> float:
    special = sum(1 for ch in text if not ch.isalnum() and not ch.isspace())
    return special / len(text) if text else 0.0


def _is_relative_to(path, root) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True
