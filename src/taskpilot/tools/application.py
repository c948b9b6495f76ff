"""
tools/application.py — Application Control Tools

Start, stop and list desktop/CLI applications. Process inspection and
termination go through psutil; launching uses asyncio subprocesses
(no shell), with the executable and its argument string screened first.

Registered tools:
  - launch_application       → start a program, return its PID
  - close_application        → terminate (then kill) a process by PID
  - get_running_applications → PID / name / memory table, at most 100 rows
"""

from __future__ import annotations

import asyncio
import os
import re
import shlex
import shutil
from pathlib import Path
from typing import Optional

import psutil

from taskpilot.observability.logger import get_logger
from taskpilot.tools.tool_registry import registry

log = get_logger(__name__)

MAX_LISTED_PROCESSES = 100
TERMINATE_WAIT_SECONDS = 3.0
KILL_WAIT_SECONDS = 5.0

BLOCKED_EXECUTABLES: frozenset[str] = frozenset({
    # Windows
    "regedit.exe", "reg.exe", "format.com", "diskpart.exe", "vssadmin.exe",
    "wbadmin.exe", "bcdedit.exe", "bootrec.exe", "fsutil.exe", "cipher.exe",
    "takeown.exe", "icacls.exe", "net.exe", "net1.exe", "sc.exe",
    "schtasks.exe", "at.exe", "attrib.exe", "cacls.exe",
    # POSIX
    "rm", "dd", "mkfs", "fdisk", "parted", "shutdown", "reboot", "halt",
    "poweroff", "init", "kill", "killall", "pkill", "chown", "chmod", "sudo", "su",
})

_DANGEROUS_PATTERNS: list[re.Pattern] = [
    re.compile(p, re.IGNORECASE)
    for p in [
        r"del\s+/[fq]",
        r"rmdir\s+/[sq]",
        r"\bformat\s+",
        r"diskpart",
        r"reg\s+delete",
        r"net\s+(?:user|localgroup)",
        r"powershell.*-(?:enc|encodedcommand)\b",
        r"powershell.*(?:iex|invoke-expression)",
        r"cmd.*/[ck].*\bdel\b",
        r"vssadmin\s+delete",
        r"wbadmin\s+delete",
        r"bcdedit",
        r"\brm\s+-[a-z]*[rf]",
        r"\bmkfs\b",
        r"\bdd\s+if=",
        r":\(\)\s*\{",
    ]
]

PROTECTED_PROCESS_NAMES: frozenset[str] = frozenset({
    "system", "registry", "smss", "csrss", "wininit", "services", "lsass",
    "svchost", "explorer", "winlogon", "dwm", "memory compression", "secure system",
    "init", "systemd", "launchd", "kthreadd", "sshd",
})


def check_application(executable: str, arguments: str = "") -> Optional[str]:
    """Return a rejection reason, or None if the command line may be launched."""
    name = Path(executable).name.lower()
    stem = name[:-4] if name.endswith(".exe") else name
    if name in BLOCKED_EXECUTABLES or stem in BLOCKED_EXECUTABLES:
        return f"'{name}' is a blocked executable"
    command_line = f"{executable} {arguments}"
    for pattern in _DANGEROUS_PATTERNS:
        if pattern.search(command_line):
            return "dangerous command pattern detected"
    return None


def resolve_executable(executable: str) -> Optional[str]:
    candidate = Path(executable).expanduser()
    if candidate.is_file():
        return str(candidate.resolve())
    if not candidate.is_absolute():
        return shutil.which(executable)
    return None


def is_protected_process(pid: int, name: str) -> bool:
    return pid <= 1 or pid == os.getpid() or name.lower() in PROTECTED_PROCESS_NAMES


@registry.register(
    name="launch_application",
    description="Start an application by path or by name on PATH and return its process id.",
    category="application",
    input_schema={
        "type": "object",
        "properties": {
            "application_path": {"type": "string", "description": "Executable path or name"},
            "arguments": {"type": "string", "description": "Command-line arguments", "default": ""},
            "working_directory": {"type": "string", "description": "Working directory (optional)"},
        },
        "required": ["application_path"],
    },
)
async def launch_application(
    application_path: str,
    arguments: str = "",
    working_directory: Optional[str] = None,
) -> str:
    if not application_path.strip():
        raise ValueError("application_path must not be empty")

    reason = check_application(application_path, arguments)
    if reason:
        log.warning("application.blocked", application=application_path, reason=reason)
        raise PermissionError(f"Launch blocked: {reason}")

    resolved = resolve_executable(application_path)
    if resolved is None:
        raise FileNotFoundError(f"Application not found: {application_path}")

    cwd = None
    if working_directory:
        cwd_path = Path(working_directory).expanduser()
        if not cwd_path.is_dir():
            raise NotADirectoryError(f"Working directory does not exist: {working_directory}")
        cwd = str(cwd_path)

    proc = await asyncio.create_subprocess_exec(
        resolved,
        *shlex.split(arguments),
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )

    # Brief pause so an immediate crash is reported instead of a dead PID
    await asyncio.sleep(0.1)
    if proc.returncode is not None and proc.returncode != 0:
        raise RuntimeError(f"Application exited immediately with code {proc.returncode}")

    log.info("application.launched", application=resolved, pid=proc.pid)
    return f"Launched {resolved} (PID: {proc.pid})"


@registry.register(
    name="close_application",
    description="Close a running application by process id (graceful terminate, then kill).",
    category="application",
    input_schema={
        "type": "object",
        "properties": {
            "process_id": {"type": "integer", "description": "PID of the process to close"},
        },
        "required": ["process_id"],
    },
)
async def close_application(process_id: int) -> str:
    if process_id <= 0:
        raise ValueError("process_id must be a positive integer")

    try:
        proc = psutil.Process(process_id)
        name = proc.name()
    except psutil.NoSuchProcess as e:
        raise ProcessLookupError(f"No process with PID {process_id}") from e

    if is_protected_process(process_id, name):
        raise PermissionError(f"System process '{name}' (PID: {process_id}) cannot be closed")

    def _stop() -> str:
        proc.terminate()
        try:
            proc.wait(timeout=TERMINATE_WAIT_SECONDS)
            return "closed"
        except psutil.TimeoutExpired:
            pass
        proc.kill()
        try:
            proc.wait(timeout=KILL_WAIT_SECONDS)
            return "killed"
        except psutil.TimeoutExpired as e:
            raise TimeoutError(f"Process '{name}' (PID: {process_id}) did not exit") from e

    try:
        outcome = await asyncio.to_thread(_stop)
    except psutil.NoSuchProcess:
        outcome = "closed"

    log.info("application.closed", pid=process_id, name=name, outcome=outcome)
    return f"Application '{name}' (PID: {process_id}) {outcome}"


@registry.register(
    name="get_running_applications",
    description="List running processes with PID, name and resident memory.",
    category="application",
    input_schema={"type": "object", "properties": {}, "required": []},
)
async def get_running_applications() -> str:

    def _collect() -> list[tuple[int, str, int]]:
        rows = []
        for p in psutil.process_iter(["pid", "name", "memory_info"]):
            try:
                info = p.info
                if not info.get("name"):
                    continue
                mem = info.get("memory_info")
                rows.append((info["pid"], info["name"], (mem.rss // (1024 * 1024)) if mem else 0))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        rows.sort(key=lambda r: r[1].lower())
        return rows

    rows = await asyncio.to_thread(_collect)
    lines = [
        f"Running applications: {len(rows)}",
        "",
        f"{'PID':<8} {'Name':<30} {'Memory(MB)':>10}",
        "-" * 50,
    ]
    lines += [f"{pid:<8} {name[:30]:<30} {mem:>10}" for pid, name, mem in rows[:MAX_LISTED_PROCESSES]]
    if len(rows) > MAX_LISTED_PROCESSES:
        lines += ["", f"... and {len(rows) - MAX_LISTED_PROCESSES} more"]
    return "\n".join(lines)
