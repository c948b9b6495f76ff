"""
main.py — TaskPilot Entry Point

Usage:
    taskpilot run "create notes.txt containing hello"
    taskpilot tools                          # list available tools
    taskpilot serve-tools                    # JSON-RPC tool server on stdio
    taskpilot sessions show <session_id>
    taskpilot sessions cleanup [--days N]
    taskpilot --config path/to/config.yaml --log-level DEBUG run "..."
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()
err_console = Console(stderr=True)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="taskpilot",
        description="TaskPilot: turn a natural-language request into supervised tool calls",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $TASKPILOT_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute one request")
    run.add_argument("request", help="What you want done, in plain language")
    run.add_argument("--provider", default=None, help="Provider name to use instead of the default")

    sub.add_parser("tools", help="List available tools (built-ins and extensions)")
    sub.add_parser("serve-tools", help="Serve the tool protocol (JSON-RPC 2.0) over stdio")

    sessions = sub.add_parser("sessions", help="Inspect or prune stored session snapshots")
    sessions_sub = sessions.add_subparsers(dest="sessions_command", required=True)
    show = sessions_sub.add_parser("show", help="Print a stored snapshot")
    show.add_argument("session_id")
    sessions_sub.add_parser("list", help="List stored session ids")
    cleanup = sessions_sub.add_parser("cleanup", help="Delete old snapshots")
    cleanup.add_argument("--days", type=float, default=None, help="Age threshold (default: from config)")

    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from taskpilot.config.settings import ConfigError, load_settings
    from taskpilot.observability.logger import get_logger, setup_logging

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        err_console.print(
            f"\n[red]Config validation failed:[/]\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n"
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        err_console.print(f"\n[red]Failed to load config:[/] {type(exc).__name__}: {exc}\n")
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        err_console.print(str(exc))
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    return settings, get_logger("taskpilot.main")


# ─────────────────────────────────────────────────────────────────────────────
# Wiring
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Runtime:
    settings: object
    validator: object
    dispatcher: object
    extensions: object
    state_store: object
    providers: Optional[object] = None
    orchestrator: Optional[object] = None

    async def aclose(self) -> None:
        try:
            await self.state_store.flush()
        finally:
            if self.providers is not None:
                await self.providers.aclose()


def build_runtime(settings, with_agent: bool = True) -> Runtime:
    """Assemble validator → tools → extensions → (providers → agent)."""
    from taskpilot.agent import AgentOrchestrator, ExecutionMonitor, TaskPlanner
    from taskpilot.brain.provider_manager import ProviderManager
    from taskpilot.config.secrets import secret_store_from_settings
    from taskpilot.memory.state_store import SessionStateStore
    from taskpilot.safety.input_validator import InputValidator
    from taskpilot.tools import ToolDispatcher, setup_tools
    from taskpilot.tools.extensions import ExtensionManager

    validator = InputValidator.from_settings(settings.safety)
    registry = setup_tools(validator=validator)
    dispatcher = ToolDispatcher(registry, default_timeout_seconds=settings.tools.default_timeout_seconds)

    extensions = ExtensionManager()
    extensions.load_from_paths(settings.tools.extension_paths)
    extensions.load_from_modules(settings.tools.extension_modules)
    if settings.tools.load_entry_points:
        extensions.load_entry_points()
    extensions.attach(dispatcher)

    state_store = SessionStateStore(settings.state_dir)
    runtime = Runtime(
        settings=settings,
        validator=validator,
        dispatcher=dispatcher,
        extensions=extensions,
        state_store=state_store,
    )
    if not with_agent:
        return runtime

    providers = ProviderManager.from_settings(settings, secret_store_from_settings(settings))
    runtime.providers = providers
    runtime.orchestrator = AgentOrchestrator(
        planner=TaskPlanner(providers, dispatcher),
        dispatcher=dispatcher,
        monitor=ExecutionMonitor(slow_result_seconds=settings.monitor.slow_result_seconds),
        state_store=state_store,
        validator=validator,
        max_iterations=settings.agent.max_iterations,
    )
    return runtime


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────

async def cmd_run(runtime: Runtime, request: str, provider: Optional[str], log) -> int:
    from taskpilot.exceptions import StateManagerError

    if provider:
        try:
            runtime.providers.set_active(provider)
        except KeyError as e:
            err_console.print(f"[red]{e.args[0]}[/]")
            return 1

    log.info("taskpilot.run", provider=runtime.providers.active_name)
    try:
        with console.status("[cyan]Working...[/]"):
            final = await runtime.orchestrator.execute_task(request)
    except StateManagerError as e:
        log.error("taskpilot.state_failure", error=e.message)
        err_console.print(f"[red]Session state could not be saved:[/] {e.message}")
        return 2

    style = "green" if final.success else "red"
    console.print(
        Panel(
            final.content or "[dim](no output)[/]",
            title=f"[{style}]{final.status.value}[/]",
            border_style=style,
            box=box.ROUNDED,
        )
    )
    console.print(
        f"[dim]session {final.session_id or '-'} · {final.steps_executed} step(s) · "
        f"{final.duration_seconds:.2f}s[/]"
    )
    return 0 if final.success else 1


def cmd_tools(runtime: Runtime) -> int:
    extension_tools = {
        handler.name: ext.name
        for ext in runtime.dispatcher.extensions
        for handler in ext.tool_handlers
    }
    table = Table(title="Available Tools", box=box.ROUNDED, border_style="dim")
    table.add_column("Tool", style="cyan", no_wrap=True)
    table.add_column("Source", no_wrap=True)
    table.add_column("Required arguments")
    table.add_column("Description")
    for schema in runtime.dispatcher.list_schemas():
        source = f"[magenta]{extension_tools[schema.name]}[/]" if schema.name in extension_tools else "built-in"
        table.add_row(schema.name, source, ", ".join(schema.required_arguments) or "-", schema.description)
    console.print(table)
    return 0


async def cmd_serve_tools(runtime: Runtime, log) -> int:
    from taskpilot.tools.protocol import ToolProtocolServer

    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
    writer = asyncio.StreamWriter(transport, protocol, reader, loop)

    log.info("taskpilot.serve_tools", tools=runtime.dispatcher.list_available_tools())
    await ToolProtocolServer(runtime.dispatcher).serve(reader, writer)
    return 0


def cmd_sessions(runtime: Runtime, args: argparse.Namespace) -> int:
    from taskpilot.exceptions import StateManagerError

    store = runtime.state_store
    if args.sessions_command == "list":
        for session_id in store.list_sessions():
            console.print(session_id)
        return 0

    if args.sessions_command == "show":
        try:
            snapshot = store.load_snapshot(args.session_id)
        except StateManagerError as e:
            err_console.print(f"[red]{e.message}[/]")
            return 1
        if snapshot is None:
            err_console.print(f"[yellow]No snapshot for session '{args.session_id}'[/]")
            return 1
        console.print_json(snapshot.model_dump_json())
        return 0

    days = args.days if args.days is not None else runtime.settings.state.cleanup_after_days
    removed = store.cleanup_older_than(days)
    console.print(f"Removed {removed} snapshot(s) older than {days:g} day(s).")
    return 0


async def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    settings, log = bootstrap(args)

    runtime = build_runtime(settings, with_agent=args.command == "run")
    log.info("taskpilot.starting", command=args.command, tools=len(runtime.dispatcher.list_available_tools()))
    try:
        if args.command == "run":
            return await cmd_run(runtime, args.request, args.provider, log)
        if args.command == "tools":
            return cmd_tools(runtime)
        if args.command == "serve-tools":
            return await cmd_serve_tools(runtime, log)
        return cmd_sessions(runtime, args)
    finally:
        await runtime.aclose()


def run() -> None:
    """Console-script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Interrupted.[/]")
        sys.exit(130)


if __name__ == "__main__":
    run()
