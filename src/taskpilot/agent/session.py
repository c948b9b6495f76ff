"""
agent/session.py — Session Data Model

SessionContext is the unit of work: one per execute_task() call, owned by
exactly one orchestrator run and passed explicitly through every phase.
Plans, steps and evaluations are immutable values; the context itself only
grows (append-only history lists) until it reaches a terminal state.

StateSnapshot is the serialisable projection written by the state store.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from taskpilot.tools.dispatcher import render_output
from taskpilot.tools.types import ToolResult

DEFAULT_STEP_TIMEOUT_SECONDS = 30.0


# ─────────────────────────────────────────────────────────────────────────────
# Status
# ─────────────────────────────────────────────────────────────────────────────

class SessionStatus(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED)


# ─────────────────────────────────────────────────────────────────────────────
# Plans
# ─────────────────────────────────────────────────────────────────────────────

class ExecutionStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    expected_outcome: str = ""       # advisory only, never checked
    timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS


class ExecutionPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str = ""
    steps: tuple[ExecutionStep, ...] = ()
    parameters: dict[str, Any] = Field(default_factory=dict)


class EvaluationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    retry: bool = False
    feedback: str = ""
    reason: str = ""


class FinalResult(BaseModel):
    content: str
    success: bool
    duration_seconds: float = 0.0
    steps_executed: int = 0
    session_id: Optional[str] = None
    status: SessionStatus = SessionStatus.IDLE


# ─────────────────────────────────────────────────────────────────────────────
# Session context
# ─────────────────────────────────────────────────────────────────────────────

class SessionContext:
    """
    Mutable state for one run. completed/cancelled are mutually exclusive
    and terminal: a second terminal mark raises RuntimeError.
    """

    def __init__(self, user_input: str, started_at: Optional[datetime] = None):
        self.user_input = user_input
        self.started_at = started_at or datetime.now(timezone.utc)
        self.plan: Optional[ExecutionPlan] = None
        self.status = SessionStatus.IDLE
        self._step_results: list[ToolResult] = []
        self._feedback: list[str] = []
        self.completed = False
        self.cancelled = False
        self.cancellation_reason: Optional[str] = None
        self.steps_executed = 0
        self.iterations = 0
        self._cancel_event = asyncio.Event()

    # ── Identity ──────────────────────────────────────────────────────────────

    @property
    def session_id(self) -> str:
        return derive_session_id(self.user_input, self.started_at)

    # ── History (append-only) ─────────────────────────────────────────────────

    @property
    def step_results(self) -> tuple[ToolResult, ...]:
        return tuple(self._step_results)

    @property
    def feedback(self) -> tuple[str, ...]:
        return tuple(self._feedback)

    def add_result(self, result: ToolResult) -> None:
        self._require_open()
        self._step_results.append(result)

    def add_feedback(self, feedback: str) -> None:
        self._require_open()
        if feedback:
            self._feedback.append(feedback)

    # ── Terminal states ───────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.completed or self.cancelled

    def mark_completed(self) -> None:
        self._require_open()
        self.completed = True
        self.status = SessionStatus.COMPLETED

    def mark_cancelled(self, reason: str) -> None:
        self._require_open()
        self.cancelled = True
        self.cancellation_reason = reason
        self.status = SessionStatus.CANCELLED

    def _require_open(self) -> None:
        if self.is_terminal:
            raise RuntimeError(f"session {self.session_id} is already {self.status.value}")

    # ── Cancellation signal ───────────────────────────────────────────────────

    def request_cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()

    # ── Output ────────────────────────────────────────────────────────────────

    def last_output(self) -> str:
        for result in reversed(self._step_results):
            if result.success:
                return result.output_text()
        return ""

    def final_response(self) -> str:
        if self.completed:
            return self.last_output()
        if self.cancelled:
            return f"Task was not completed: {self.cancellation_reason}"
        return ""

    def __repr__(self) -> str:
        return f"<SessionContext id={self.session_id} status={self.status.value}>"


def derive_session_id(user_input: str, started_at: datetime) -> str:
    """Deterministic: same input + start time always gives the same id."""
    digest = hashlib.sha256(user_input.encode("utf-8")).hexdigest()[:8]
    return f"{started_at:%Y%m%d%H%M%S}_{digest}"


# ─────────────────────────────────────────────────────────────────────────────
# Snapshot
# ─────────────────────────────────────────────────────────────────────────────

class StateSnapshot(BaseModel):
    session_id: str
    user_input: str
    started_at: datetime
    last_updated: datetime
    status: SessionStatus
    plan: Optional[ExecutionPlan] = None
    step_results: list[ToolResult] = Field(default_factory=list)
    feedback: list[str] = Field(default_factory=list)
    completed: bool = False
    cancelled: bool = False
    cancellation_reason: Optional[str] = None
    steps_executed: int = 0
    iterations: int = 0

    @classmethod
    def from_context(cls, context: SessionContext) -> "StateSnapshot":
        return cls(
            session_id=context.session_id,
            user_input=context.user_input,
            started_at=context.started_at,
            last_updated=datetime.now(timezone.utc),
            status=context.status,
            plan=context.plan,
            step_results=[_json_safe_result(r) for r in context.step_results],
            feedback=list(context.feedback),
            completed=context.completed,
            cancelled=context.cancelled,
            cancellation_reason=context.cancellation_reason,
            steps_executed=context.steps_executed,
            iterations=context.iterations,
        )

    def to_context(self) -> SessionContext:
        """Rebuild a SessionContext, replaying history in its original order."""
        context = SessionContext(self.user_input, started_at=self.started_at)
        context.plan = self.plan
        for result in self.step_results:
            context.add_result(result)
        for item in self.feedback:
            context.add_feedback(item)
        context.steps_executed = self.steps_executed
        context.iterations = self.iterations
        context.status = self.status
        context.completed = self.completed
        context.cancelled = self.cancelled
        context.cancellation_reason = self.cancellation_reason
        return context


def _json_safe_result(result: ToolResult) -> ToolResult:
    output = result.output
    if output is None or isinstance(output, (str, int, float, bool)):
        return result
    try:
        safe = json.loads(json.dumps(output, default=str))
    except (TypeError, ValueError):
        safe = render_output(output)
    return result.model_copy(update={"output": safe})
