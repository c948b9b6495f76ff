"""
memory/state_store.py — Session State Store

One JSON snapshot per session: {state_dir}/{session_id}.state.json.

Writes are atomic: the snapshot is serialised to "<file>.tmp" in the same
directory and moved over the primary file with os.replace(), so a crash
mid-write leaves either the previous snapshot or none, never a truncated
file. save() runs the blocking write in a worker thread and is shielded
from cancellation, so a cancelled caller still leaves a complete snapshot
on disk. Reads and cleanup are synchronous and short.

Concurrent sessions are safe as long as each session id has one writer.
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from taskpilot.agent.session import SessionContext, StateSnapshot
from taskpilot.exceptions import StateManagerError
from taskpilot.observability.logger import get_logger

log = get_logger(__name__)

SNAPSHOT_SUFFIX = ".state.json"
TMP_SUFFIX = ".tmp"


class SessionStateStore:

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir).expanduser()
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateManagerError(
                f"cannot create state directory {self.state_dir}: {e}",
                context={"state_dir": str(self.state_dir)},
            ) from e
        self._pending: dict[str, asyncio.Future] = {}

    def path_for(self, session_id: str) -> Path:
        return self.state_dir / f"{session_id}{SNAPSHOT_SUFFIX}"

    # ── Write ─────────────────────────────────────────────────────────────────

    async def save(self, context: SessionContext) -> Path:
        """
        Persist the current state of `context`.

        The snapshot is taken immediately; writes for one session land in
        call order. Cancelling the caller does not abandon the write.
        """
        snapshot = StateSnapshot.from_context(context)
        session_id = snapshot.session_id
        write = asyncio.ensure_future(self._write_after(self._pending.get(session_id), snapshot))
        self._pending[session_id] = write
        write.add_done_callback(lambda task: self._forget(session_id, task))
        return await asyncio.shield(write)

    async def flush(self) -> None:
        """Wait for every in-flight write, including ones whose caller was cancelled."""
        while self._pending:
            await asyncio.gather(*self._pending.values(), return_exceptions=True)

    async def _write_after(self, previous: Optional[asyncio.Future], snapshot: StateSnapshot) -> Path:
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        return await asyncio.to_thread(self._write, snapshot)

    def _forget(self, session_id: str, task: asyncio.Future) -> None:
        if self._pending.get(session_id) is task:
            del self._pending[session_id]

    def _write(self, snapshot: StateSnapshot) -> Path:
        path = self.path_for(snapshot.session_id)
        tmp_path = path.with_name(path.name + TMP_SUFFIX)

        try:
            payload = snapshot.model_dump_json(indent=2)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except (OSError, ValueError, TypeError) as e:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    log.warning("state_store.tmp_cleanup_failed", file=str(tmp_path))
            log.error("state_store.save_failed", session_id=snapshot.session_id, error=str(e))
            raise StateManagerError(
                f"failed to save session {snapshot.session_id}: {e}",
                context={"session_id": snapshot.session_id, "path": str(path)},
            ) from e

        log.debug(
            "state_store.saved",
            session_id=snapshot.session_id,
            status=snapshot.status.value,
            results=len(snapshot.step_results),
        )
        return path

    # ── Read ──────────────────────────────────────────────────────────────────

    def load_snapshot(self, session_id: str) -> Optional[StateSnapshot]:
        path = self.path_for(session_id)
        if not path.exists():
            return None
        try:
            raw = path.read_text(encoding="utf-8")
            return StateSnapshot.model_validate_json(raw)
        except (OSError, PydanticValidationError) as e:
            log.error("state_store.load_failed", session_id=session_id, error=str(e))
            raise StateManagerError(
                f"failed to load session {session_id}: {e}",
                context={"session_id": session_id, "path": str(path)},
            ) from e

    def load(self, session_id: str) -> Optional[SessionContext]:
        snapshot = self.load_snapshot(session_id)
        if snapshot is None:
            return None
        log.debug("state_store.loaded", session_id=session_id)
        return snapshot.to_context()

    def list_sessions(self) -> list[str]:
        return sorted(p.name[: -len(SNAPSHOT_SUFFIX)] for p in self.state_dir.glob(f"*{SNAPSHOT_SUFFIX}"))

    # ── Delete ────────────────────────────────────────────────────────────────

    def clear(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StateManagerError(
                f"failed to clear session {session_id}: {e}",
                context={"session_id": session_id},
            ) from e
        log.info("state_store.cleared", session_id=session_id)
        return True

    def cleanup_older_than(self, days: float) -> int:
        """Delete snapshots last modified more than `days` ago. Best effort."""
        cutoff = time.time() - days * 24 * 60 * 60
        removed = 0
        for state_file in self.state_dir.glob(f"*{SNAPSHOT_SUFFIX}"):
            try:
                if state_file.stat().st_mtime < cutoff:
                    state_file.unlink()
                    removed += 1
                    log.info("state_store.old_state_removed", file=state_file.name)
            except OSError as e:
                log.warning("state_store.cleanup_failed", file=state_file.name, error=str(e))
        log.info("state_store.cleanup_done", removed=removed, days=days)
        return removed
