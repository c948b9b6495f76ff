"""
tools/extensions.py — Extension Discovery and Loader

Collects Extension objects ({name, version, tool_handlers}) from three
sources and hands them to a ToolDispatcher:

  - directories: every *.py file exposing EXTENSION or get_extension()
  - dotted specs: "package.module:attribute"
  - installed distributions: the "taskpilot.extensions" entry-point group

Rules:
  - Files starting with "_" are skipped.
  - A module that fails to import is logged as a warning and skipped;
    with strict=True it raises ExtensionError instead.
  - Extension names are unique: register() returns False on a duplicate.

Usage:
    manager = ExtensionManager()
    manager.load_from_paths([Path("extensions")])
    manager.attach(dispatcher)
"""

from __future__ import annotations

import importlib
import importlib.util
import sys
from importlib.metadata import entry_points
from pathlib import Path
from types import ModuleType
from typing import Any, Iterable, Optional

from taskpilot.exceptions import ExtensionError
from taskpilot.observability.logger import get_logger
from taskpilot.tools.dispatcher import ToolDispatcher
from taskpilot.tools.types import Extension

log = get_logger(__name__)

ENTRY_POINT_GROUP = "taskpilot.extensions"


class ExtensionManager:
    """
    Keeps the loaded extensions in load order. Designed to be populated at
    startup; not thread-safe for concurrent loads.
    """

    def __init__(self, strict: bool = False):
        self.strict = strict
        self._extensions: dict[str, Extension] = {}

    # ── Registration ──────────────────────────────────────────────────────────

    def register(self, extension: Extension) -> bool:
        if extension.name in self._extensions:
            log.warning("extensions.duplicate", extension=extension.name)
            return False
        self._extensions[extension.name] = extension
        log.debug(
            "extensions.registered",
            extension=extension.name,
            version=extension.version,
            tools=extension.tool_names(),
        )
        return True

    def unregister(self, name: str) -> bool:
        return self._extensions.pop(name, None) is not None

    def list_loaded(self) -> list[Extension]:
        return list(self._extensions.values())

    def attach(self, dispatcher: ToolDispatcher) -> int:
        """Register every loaded extension with the dispatcher. Returns the count."""
        for extension in self._extensions.values():
            dispatcher.register_extension(extension)
        return len(self._extensions)

    # ── Sources ───────────────────────────────────────────────────────────────

    def load_from_paths(self, directories: Iterable[Path | str]) -> list[Extension]:
        loaded: list[Extension] = []
        for directory in directories:
            directory = Path(directory).expanduser()
            if not directory.is_dir():
                log.debug("extensions.dir_not_found", path=str(directory))
                continue

            for py_file in sorted(directory.glob("*.py")):
                if py_file.name.startswith("_"):
                    continue
                module = self._import_file(py_file)
                if module is None:
                    continue
                extension = self._extract(module, source=str(py_file))
                if extension is not None and self.register(extension):
                    loaded.append(extension)

        log.info("extensions.paths_loaded", loaded=[e.name for e in loaded])
        return loaded

    def load_from_modules(self, specs: Iterable[str]) -> list[Extension]:
        loaded: list[Extension] = []
        for spec in specs:
            module_name, _, attr = spec.partition(":")
            try:
                module = importlib.import_module(module_name)
                target = getattr(module, attr) if attr else module
            except (ImportError, AttributeError) as e:
                self._fail("extensions.module_error", f"Cannot load extension '{spec}': {e}", spec=spec, error=e)
                continue
            extension = self._coerce(target, source=spec)
            if extension is not None and self.register(extension):
                loaded.append(extension)
        return loaded

    def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> list[Extension]:
        loaded: list[Extension] = []
        for ep in entry_points(group=group):
            try:
                target = ep.load()
            except Exception as e:
                self._fail(
                    "extensions.entry_point_error",
                    f"Cannot load entry point '{ep.name}': {e}",
                    spec=ep.name,
                    error=e,
                )
                continue
            extension = self._coerce(target, source=f"entry_point:{ep.name}")
            if extension is not None and self.register(extension):
                loaded.append(extension)
        return loaded

    # ── Private helpers ───────────────────────────────────────────────────────

    def _import_file(self, py_file: Path) -> Optional[ModuleType]:
        module_name = f"_taskpilot_ext_{py_file.stem}_{id(py_file)}"
        spec = importlib.util.spec_from_file_location(module_name, py_file)
        if spec is None or spec.loader is None:
            log.warning("extensions.bad_spec", file=str(py_file))
            return None

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            self._fail("extensions.import_error", f"Failed to import extension {py_file}: {e}", spec=str(py_file), error=e)
            return None
        return module

    def _extract(self, module: ModuleType, source: str) -> Optional[Extension]:
        if hasattr(module, "EXTENSION"):
            return self._coerce(module.EXTENSION, source)
        if callable(getattr(module, "get_extension", None)):
            return self._coerce(module.get_extension, source)
        log.debug("extensions.no_extension", source=source)
        return None

    def _coerce(self, target: Any, source: str) -> Optional[Extension]:
        """Accept an Extension, a zero-arg factory returning one, or a module defining one."""
        if isinstance(target, ModuleType):
            return self._extract(target, source)
        if callable(target) and not isinstance(target, Extension):
            try:
                target = target()
            except Exception as e:
                self._fail("extensions.factory_error", f"Extension factory in {source} failed: {e}", spec=source, error=e)
                return None
        if not isinstance(target, Extension):
            self._fail(
                "extensions.not_an_extension",
                f"{source} did not provide an Extension (got {type(target).__name__})",
                spec=source,
                error=None,
            )
            return None
        return target

    def _fail(self, event: str, message: str, spec: str, error: Optional[BaseException]) -> None:
        if self.strict:
            raise ExtensionError(message, context={"source": spec}) from error
        log.warning(event, source=spec, error=str(error) if error else message)
