"""
agent/orchestrator.py — Agent Orchestrator

Top-level state machine for one request:

    Idle → Planning → Executing → Evaluating → {Completed | Cancelled}
                ↑___________ retry ___________|

  1. Input validation. Invalid input returns a failed FinalResult at once;
     the planner and dispatcher are never called.
  2. Planning: TaskPlanner.generate_plan(context).
  3. Executing: each step in order through the ToolDispatcher, stopping at
     the first unsuccessful step. A step whose dispatch times out ends the
     run as Cancelled ("timeout: ...") without consulting the monitor.
  4. Evaluating: ExecutionMonitor.evaluate(aggregate, context).
     retry → feedback appended, back to Planning; success → Completed;
     otherwise → Cancelled with the monitor's reason.

Cancellation is an ordinary outcome: each awaited phase races the session's
cancel event and a cancel returns a "cancelled" phase result instead of
raising. Unexpected faults in a phase become synthetic failed ToolResults
(tool_name="<phase>") so the monitor can classify them. StateManagerError
is never converted: a run that cannot be persisted is aborted.

The snapshot is written after every phase transition and once more on
every exit path. Sessions are passed explicitly; the orchestrator only
keeps a registry of live contexts for cancel() and current_status(), so one
instance can drive several sessions concurrently.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Optional

from taskpilot.agent.monitor import ExecutionMonitor
from taskpilot.agent.planner import TaskPlanner
from taskpilot.agent.session import (
    ExecutionPlan,
    FinalResult,
    SessionContext,
    SessionStatus,
)
from taskpilot.exceptions import StateManagerError
from taskpilot.observability.logger import bind_session, clear_session, get_logger
from taskpilot.safety.input_validator import InputValidator
from taskpilot.tools.dispatcher import ToolDispatcher, render_output
from taskpilot.tools.types import ToolResult

if TYPE_CHECKING:
    from taskpilot.memory.state_store import SessionStateStore

log = get_logger(__name__)

DEFAULT_MAX_ITERATIONS = 10
USER_CANCELLATION = "user cancellation"


class PhaseStatus(str, Enum):
    OK = "ok"
    CANCELLED = "cancelled"
    FAULT = "fault"


class PhaseOutcome:
    """Result of one awaited phase: a value, a cancellation, or a fault result."""

    __slots__ = ("status", "value")

    def __init__(self, status: PhaseStatus, value: Any = None):
        self.status = status
        self.value = value

    @classmethod
    def ok(cls, value: Any) -> "PhaseOutcome":
        return cls(PhaseStatus.OK, value)

    @classmethod
    def cancelled(cls) -> "PhaseOutcome":
        return cls(PhaseStatus.CANCELLED)

    @classmethod
    def fault(cls, result: ToolResult) -> "PhaseOutcome":
        return cls(PhaseStatus.FAULT, result)


class AgentOrchestrator:
    """
    Usage:
        orchestrator = AgentOrchestrator(planner, dispatcher, monitor, state_store, validator)
        final = await orchestrator.execute_task("create notes.txt containing hello")
    """

    def __init__(
        self,
        planner: TaskPlanner,
        dispatcher: ToolDispatcher,
        monitor: ExecutionMonitor,
        state_store: Optional["SessionStateStore"] = None,
        validator: Optional[InputValidator] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        self._planner = planner
        self._dispatcher = dispatcher
        self._monitor = monitor
        self._state = state_store
        self._validator = validator or InputValidator()
        self._max_iterations = max_iterations

        # keyed by run, not session id: identical input in the same second
        # derives the same session id
        self._active: dict[int, SessionContext] = {}
        self._run_ids = itertools.count(1)
        self._last_status = SessionStatus.IDLE

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    async def execute_task(self, user_input: str) -> FinalResult:
        t0 = time.monotonic()

        validation = self._validator.validate_input(user_input)
        if not validation.valid:
            log.warning("orchestrator.input_rejected", error=validation.error)
            return FinalResult(
                content=f"input validation error: {validation.error}",
                success=False,
                duration_seconds=time.monotonic() - t0,
                steps_executed=0,
                status=SessionStatus.IDLE,
            )
        for warning in validation.warnings:
            log.warning("orchestrator.input_warning", warning=warning)

        context = SessionContext(user_input)
        session_id = context.session_id
        run_id = next(self._run_ids)
        self._active[run_id] = context
        bind_session(session_id)
        log.info("orchestrator.task_start", user_input=user_input[:120])

        failure_detail: Optional[str] = None
        try:
            content, failure_detail = await self._run(context)
        except asyncio.CancelledError:
            if not context.is_terminal:
                context.mark_cancelled(USER_CANCELLATION)
            log.info("orchestrator.task_cancelled_externally")
            raise
        except StateManagerError:
            if not context.is_terminal:
                context.mark_cancelled("state persistence failed")
            raise
        except Exception as e:
            log.error("orchestrator.task_error", error=str(e), exc_info=True)
            if not context.is_terminal:
                context.mark_cancelled(f"internal error: {type(e).__name__}: {e}")
            content = None
            failure_detail = f"{type(e).__name__}: {e}"
        finally:
            self._active.pop(run_id, None)
            self._last_status = context.status
            try:
                await self._persist(context)
            finally:
                clear_session()

        duration = time.monotonic() - t0
        if context.completed:
            final_content = content or ""
        else:
            final_content = _failure_message(context, failure_detail)

        log.info(
            "orchestrator.task_done",
            session_id=session_id,
            status=context.status.value,
            steps_executed=context.steps_executed,
            iterations=context.iterations,
            duration_seconds=round(duration, 3),
        )
        return FinalResult(
            content=final_content,
            success=context.completed,
            duration_seconds=duration,
            steps_executed=context.steps_executed,
            session_id=session_id,
            status=context.status,
        )

    def cancel(self, session_id: Optional[str] = None) -> bool:
        """Signal cancellation to one live session, or to all of them."""
        targets = [c for c in self._active.values() if session_id is None or c.session_id == session_id]
        for context in targets:
            context.request_cancel()
            log.info("orchestrator.cancel_requested", session_id=context.session_id)
        return bool(targets)

    def current_status(self, session_id: Optional[str] = None) -> SessionStatus:
        if session_id is not None:
            matching = [c for c in self._active.values() if c.session_id == session_id]
            return matching[-1].status if matching else SessionStatus.IDLE
        if self._active:
            return next(reversed(self._active.values())).status
        return self._last_status

    @property
    def active_sessions(self) -> list[str]:
        """Session ids of the live runs, oldest first. Duplicates mean concurrent identical runs."""
        return [c.session_id for c in self._active.values()]

    # ─────────────────────────────────────────────────────────────────────────
    # Main loop
    # ─────────────────────────────────────────────────────────────────────────

    async def _run(self, context: SessionContext) -> tuple[Optional[str], Optional[str]]:
        """Drive the loop to a terminal state. Returns (content, failure detail)."""
        last_failure: Optional[str] = None

        while True:
            if context.cancel_requested:
                context.mark_cancelled(USER_CANCELLATION)
                return None, None
            if context.iterations >= self._max_iterations:
                log.warning("orchestrator.iteration_limit", limit=self._max_iterations)
                context.mark_cancelled(f"iteration limit reached ({self._max_iterations})")
                return None, last_failure
            context.iterations += 1

            # ── Planning ──────────────────────────────────────────────────────
            await self._transition(context, SessionStatus.PLANNING)
            planned = await self._guarded(context, "planning", self._planner.generate_plan(context))
            if planned.status == PhaseStatus.CANCELLED:
                context.mark_cancelled(USER_CANCELLATION)
                return None, None

            aggregate: ToolResult
            if planned.status == PhaseStatus.FAULT:
                aggregate = planned.value
                context.add_result(aggregate)
            else:
                plan: ExecutionPlan = planned.value
                context.plan = plan
                await self._persist(context)

                # ── Executing ─────────────────────────────────────────────────
                await self._transition(context, SessionStatus.EXECUTING)
                executed = await self._execute_plan(context, plan)
                if executed is None:
                    return None, context.cancellation_reason
                aggregate = executed

            if not aggregate.success:
                last_failure = aggregate.error

            # ── Evaluating ────────────────────────────────────────────────────
            await self._transition(context, SessionStatus.EVALUATING)
            evaluation = self._monitor.evaluate(aggregate, context)
            log.info(
                "orchestrator.evaluation",
                success=evaluation.success,
                retry=evaluation.retry,
                reason=evaluation.reason,
            )

            if evaluation.retry:
                context.add_feedback(evaluation.feedback or evaluation.reason)
                await self._persist(context)
                continue

            if evaluation.success:
                context.mark_completed()
                return render_output(aggregate.output), None

            context.mark_cancelled(evaluation.reason)
            return None, last_failure

    async def _execute_plan(self, context: SessionContext, plan: ExecutionPlan) -> Optional[ToolResult]:
        """
        Run steps in order. Returns the aggregate outcome, or None when the
        session reached a terminal state here (user cancel or step timeout).
        """
        last_output: Any = None
        total_duration = 0.0

        for index, step in enumerate(plan.steps):
            log.info("orchestrator.step", index=index, tool=step.tool_name)

            check = self._validator.validate_tool_arguments(step.tool_name, step.arguments)
            if not check.valid:
                result = ToolResult.failure(f"ValidationError: {check.error}", tool_name=step.tool_name)
            else:
                outcome = await self._guarded(
                    context,
                    "executing",
                    self._dispatcher.execute(step.tool_name, step.arguments, step.timeout_seconds),
                )
                if outcome.status == PhaseStatus.CANCELLED:
                    context.mark_cancelled(USER_CANCELLATION)
                    return None
                result = outcome.value
                if outcome.status == PhaseStatus.OK:
                    context.steps_executed += 1

            context.add_result(result)
            await self._persist(context)
            total_duration += result.duration_seconds

            if result.cancelled:
                log.warning("orchestrator.step_timeout", tool=step.tool_name, error=result.error)
                context.mark_cancelled(f"timeout: {result.error}")
                return None
            if not result.success:
                return result
            last_output = result.output

        return ToolResult.ok(
            last_output,
            tool_name=plan.steps[-1].tool_name if plan.steps else "",
            duration_seconds=total_duration,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    async def _guarded(self, context: SessionContext, phase: str, awaitable: Awaitable[Any]) -> PhaseOutcome:
        """
        Await one phase while racing the session's cancel event.
        Faults become synthetic failed results; StateManagerError propagates.
        """
        task = asyncio.ensure_future(awaitable)
        if context.cancel_requested:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return PhaseOutcome.cancelled()

        cancel_wait = asyncio.ensure_future(context.wait_cancelled())
        try:
            done, _ = await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            cancel_wait.cancel()
            raise

        if task not in done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            log.info("orchestrator.phase_cancelled", phase=phase)
            return PhaseOutcome.cancelled()

        cancel_wait.cancel()
        try:
            return PhaseOutcome.ok(task.result())
        except StateManagerError:
            raise
        except asyncio.CancelledError:
            # the phase cancelled itself without a user signal
            return PhaseOutcome.cancelled()
        except Exception as e:
            log.error("orchestrator.phase_error", phase=phase, error=str(e), error_type=type(e).__name__)
            return PhaseOutcome.fault(ToolResult.failure(f"{type(e).__name__}: {e}", tool_name=f"<{phase}>"))

    async def _transition(self, context: SessionContext, status: SessionStatus) -> None:
        context.status = status
        log.debug("orchestrator.transition", status=status.value, iteration=context.iterations)
        await self._persist(context)

    async def _persist(self, context: SessionContext) -> None:
        if self._state is not None:
            await self._state.save(context)


def _failure_message(context: SessionContext, detail: Optional[str]) -> str:
    reason = context.cancellation_reason or "unknown reason"
    if reason == USER_CANCELLATION:
        return "Task cancelled: user cancellation"
    message = f"Task failed: {reason}"
    if detail and detail not in message:
        message += f" (detail: {detail})"
    return message
