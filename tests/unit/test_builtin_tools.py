"""
tests/unit/test_builtin_tools.py — Built-in Tool Unit Tests

Calls the filesystem, text-processing and application tools directly
(the registry decorator returns the original coroutine function) against
pytest's tmp_path. The application tests only start and stop short-lived
Python child processes.

Run with:
    pytest tests/unit/test_builtin_tools.py -v
"""

from __future__ import annotations

import os
import subprocess
import sys

import pytest

from taskpilot.safety import InputValidator
from taskpilot.tools import filesystem, registry, setup_tools
from taskpilot.tools.application import (
    check_application,
    close_application,
    get_running_applications,
    is_protected_process,
    launch_application,
)
from taskpilot.tools.filesystem import list_directory, read_file, write_file
from taskpilot.tools.text_processing import (
    append_to_file,
    read_text_file,
    replace_in_file,
    search_in_file,
    write_text_file,
)


@pytest.fixture(autouse=True)
def _default_path_guard():
    filesystem.configure_path_guard(None)
    yield
    filesystem.configure_path_guard(None)


class TestSetupTools:
    def test_all_builtins_registered(self):
        setup_tools()
        for name in (
            "read_file", "write_file", "list_directory",
            "read_text_file", "write_text_file", "append_to_file", "search_in_file", "replace_in_file",
            "launch_application", "close_application", "get_running_applications",
        ):
            assert registry.is_registered(name), name

    @pytest.mark.asyncio
    async def test_validator_becomes_path_guard(self, tmp_path):
        setup_tools(validator=InputValidator(protected_paths_extra=[str(tmp_path)]))
        with pytest.raises(PermissionError, match="Path rejected"):
            await write_file(str(tmp_path / "a.txt"), "x")


# ─────────────────────────────────────────────────────────────────────────────
# Filesystem
# ─────────────────────────────────────────────────────────────────────────────


class TestFilesystemTools:
    @pytest.mark.asyncio
    async def test_write_then_read(self, tmp_path):
        target = tmp_path / "nested" / "dir" / "test.txt"
        message = await write_file(str(target), "Hello World")
        assert message == f"Wrote 11 characters to {target}"
        assert await read_file(str(target)) == "Hello World"

    @pytest.mark.asyncio
    async def test_read_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await read_file(str(tmp_path / "absent.txt"))

    @pytest.mark.asyncio
    async def test_read_directory_is_error(self, tmp_path):
        with pytest.raises(ValueError, match="not a file"):
            await read_file(str(tmp_path))

    @pytest.mark.asyncio
    async def test_traversal_rejected(self, tmp_path):
        with pytest.raises(PermissionError, match="traversal"):
            await read_file(str(tmp_path / ".." / "x.txt"))

    @pytest.mark.asyncio
    async def test_protected_root_rejected(self):
        with pytest.raises(PermissionError, match="/etc"):
            await read_file("/etc/hostname")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["~root/.bashrc", "//etc/hostname"])
    async def test_non_canonical_protected_paths_rejected(self, path):
        with pytest.raises(PermissionError, match="protected system path"):
            await write_file(path, "x")

    @pytest.mark.asyncio
    async def test_tilde_path_is_written_under_home(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        await write_file("~/out/a.txt", "hello")
        assert (tmp_path / "out" / "a.txt").read_text() == "hello"

    @pytest.mark.asyncio
    async def test_oversized_file_rejected(self, tmp_path, monkeypatch):
        monkeypatch.setattr(filesystem, "MAX_FILE_BYTES", 4)
        target = tmp_path / "big.txt"
        target.write_text("0123456789")
        with pytest.raises(ValueError, match="too large"):
            await read_file(str(target))

    @pytest.mark.asyncio
    async def test_list_directory(self, tmp_path):
        (tmp_path / "b.txt").write_text("b")
        (tmp_path / "A.txt").write_text("a")
        (tmp_path / "zdir").mkdir()
        listing = await list_directory(str(tmp_path))
        assert listing.splitlines() == ["[DIR] zdir", "[FILE] A.txt", "[FILE] b.txt"]

    @pytest.mark.asyncio
    async def test_list_empty_directory(self, tmp_path):
        assert await list_directory(str(tmp_path)) == "(empty directory)"

    @pytest.mark.asyncio
    async def test_list_file_is_error(self, tmp_path):
        f = tmp_path / "f.txt"
        f.write_text("x")
        with pytest.raises(NotADirectoryError):
            await list_directory(str(f))


# ─────────────────────────────────────────────────────────────────────────────
# Text processing
# ─────────────────────────────────────────────────────────────────────────────


class TestTextTools:
    @pytest.mark.asyncio
    async def test_encoding_round_trip(self, tmp_path):
        target = tmp_path / "latin.txt"
        await write_text_file(str(target), "café", encoding="latin-1")
        assert target.read_bytes() == "café".encode("latin-1")
        assert await read_text_file(str(target), encoding="latin-1") == "café"

    @pytest.mark.asyncio
    async def test_unknown_encoding_falls_back_to_utf8(self, tmp_path):
        target = tmp_path / "u.txt"
        await write_text_file(str(target), "naïve", encoding="no-such-codec")
        assert target.read_text(encoding="utf-8") == "naïve"

    @pytest.mark.asyncio
    async def test_write_with_backup(self, tmp_path):
        target = tmp_path / "notes.txt"
        target.write_text("old")
        await write_text_file(str(target), "new", create_backup=True)
        assert target.read_text() == "new"
        assert (tmp_path / "notes.txt.backup").read_text() == "old"

    @pytest.mark.asyncio
    async def test_append_creates_and_appends(self, tmp_path):
        target = tmp_path / "log.txt"
        await append_to_file(str(target), "one\n")
        message = await append_to_file(str(target), "two\n")
        assert target.read_text() == "one\ntwo\n"
        assert message.startswith("Appended 4 characters")

    @pytest.mark.asyncio
    async def test_search_plain_is_case_insensitive(self, tmp_path):
        target = tmp_path / "s.txt"
        target.write_text("alpha\nBeta\ngamma beta\n")
        assert await search_in_file(str(target), "beta") == "Line 2: Beta\nLine 3: gamma beta"

    @pytest.mark.asyncio
    async def test_search_regex(self, tmp_path):
        target = tmp_path / "s.txt"
        target.write_text("id=12\nname=x\nid=7\n")
        assert await search_in_file(str(target), r"id=\d+$", use_regex=True) == "Line 1: id=12\nLine 3: id=7"

    @pytest.mark.asyncio
    async def test_search_no_match(self, tmp_path):
        target = tmp_path / "s.txt"
        target.write_text("alpha\n")
        assert await search_in_file(str(target), "zeta") == "No matching lines found."

    @pytest.mark.asyncio
    async def test_search_empty_pattern(self, tmp_path):
        target = tmp_path / "s.txt"
        target.write_text("alpha\n")
        with pytest.raises(ValueError):
            await search_in_file(str(target), "  ")

    @pytest.mark.asyncio
    async def test_replace_literal(self, tmp_path):
        target = tmp_path / "r.txt"
        target.write_text("a.b a.b c")
        assert await replace_in_file(str(target), "a.b", "X", create_backup=True) == "replaced 2 occurrence(s)"
        assert target.read_text() == "X X c"
        assert (tmp_path / "r.txt.backup").read_text() == "a.b a.b c"

    @pytest.mark.asyncio
    async def test_replace_regex(self, tmp_path):
        target = tmp_path / "r.txt"
        target.write_text("v1 v22 v333")
        assert await replace_in_file(str(target), r"v\d+", "v", use_regex=True) == "replaced 3 occurrence(s)"
        assert target.read_text() == "v v v"

    @pytest.mark.asyncio
    async def test_replace_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await replace_in_file(str(tmp_path / "none.txt"), "a", "b")


# ─────────────────────────────────────────────────────────────────────────────
# Application control
# ─────────────────────────────────────────────────────────────────────────────


class TestApplicationChecks:
    @pytest.mark.parametrize("executable", ["rm", "/bin/rm", "diskpart.exe", "SUDO", "regedit.exe"])
    def test_blocked_executables(self, executable):
        assert "blocked executable" in check_application(executable)

    @pytest.mark.parametrize(
        "executable, arguments",
        [
            ("cmd.exe", "/c del /f C:\\x"),
            ("powershell", "-EncodedCommand AAAA"),
            ("bash", "-c 'rm -rf /'"),
        ],
    )
    def test_dangerous_argument_patterns(self, executable, arguments):
        assert check_application(executable, arguments) == "dangerous command pattern detected"

    def test_ordinary_command_allowed(self):
        assert check_application("notepad.exe", "notes.txt") is None

    def test_protected_processes(self):
        assert is_protected_process(1, "anything")
        assert is_protected_process(os.getpid(), "python")
        assert is_protected_process(4242, "SystemD")
        assert not is_protected_process(4242, "notepad")


class TestApplicationTools:
    @pytest.mark.asyncio
    async def test_launch_blocked(self):
        with pytest.raises(PermissionError, match="Launch blocked"):
            await launch_application("rm", "-rf /tmp/x")

    @pytest.mark.asyncio
    async def test_launch_missing(self):
        with pytest.raises(FileNotFoundError):
            await launch_application("definitely-not-a-real-program-xyz")

    @pytest.mark.asyncio
    async def test_launch_python(self, tmp_path):
        message = await launch_application(sys.executable, "-c pass", working_directory=str(tmp_path))
        assert message.startswith("Launched ")
        assert "(PID: " in message

    @pytest.mark.asyncio
    async def test_launch_bad_working_directory(self, tmp_path):
        with pytest.raises(NotADirectoryError):
            await launch_application(sys.executable, "-c pass", working_directory=str(tmp_path / "nope"))

    @pytest.mark.asyncio
    async def test_close_running_process(self):
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            message = await close_application(child.pid)
            assert f"(PID: {child.pid})" in message
            assert message.endswith(("closed", "killed"))
        finally:
            if child.poll() is None:
                child.kill()
            child.wait()

    @pytest.mark.asyncio
    async def test_close_own_process_refused(self):
        with pytest.raises(PermissionError):
            await close_application(os.getpid())

    @pytest.mark.asyncio
    async def test_close_unknown_pid(self):
        with pytest.raises(ProcessLookupError):
            await close_application(99_999_999)

    @pytest.mark.asyncio
    async def test_close_rejects_non_positive(self):
        with pytest.raises(ValueError):
            await close_application(0)

    @pytest.mark.asyncio
    async def test_running_applications_table(self):
        listing = await get_running_applications()
        lines = listing.splitlines()
        assert lines[0].startswith("Running applications: ")
        assert lines[2].split() == ["PID", "Name", "Memory(MB)"]
