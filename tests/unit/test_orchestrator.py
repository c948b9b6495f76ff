"""
tests/unit/test_orchestrator.py — Agent Orchestrator Unit Tests

Drives AgentOrchestrator with a scripted planner (AsyncMock), a real
ToolDispatcher over a private registry, the real ExecutionMonitor and a
SessionStateStore in tmp_path.

Covers:
  - input validation short-circuit (planner/dispatcher never called)
  - success, transient-failure retry, permanent failure
  - planning faults, iteration cap, step timeout, user cancellation
  - tool-argument validation, snapshot persistence, fatal state errors
  - concurrent runs that derive the same session id

Run with:
    pytest tests/unit/test_orchestrator.py -v
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from taskpilot.agent import AgentOrchestrator, ExecutionMonitor, SessionStatus
from taskpilot.agent.session import ExecutionPlan, ExecutionStep
from taskpilot.exceptions import PlanningError, ProviderConnectionError, StateManagerError
from taskpilot.memory import SessionStateStore
from taskpilot.tools import ToolDispatcher, ToolRegistry


def _plan(*steps: ExecutionStep) -> ExecutionPlan:
    return ExecutionPlan(description="test plan", steps=steps)


def _step(tool: str, timeout: float = 5.0, **arguments) -> ExecutionStep:
    return ExecutionStep(tool_name=tool, arguments=arguments, timeout_seconds=timeout)


class Harness:
    """Private registry with scripted tools plus an orchestrator wired to it."""

    def __init__(self, tmp_path, max_iterations: int = 10, state_store=None):
        self.calls: list[tuple[str, dict]] = []
        self.flaky_failures = 0
        self.flaky_error: type[Exception] = ConnectionError
        self.step_started = asyncio.Event()
        reg = ToolRegistry()

        @reg.register(
            name="write_file",
            description="Record a write",
            input_schema={
                "type": "object",
                "properties": {"path": {"type": "string"}, "content": {"type": "string"}},
                "required": ["path", "content"],
            },
        )
        async def write_file(path: str, content: str) -> str:
            self.calls.append(("write_file", {"path": path, "content": content}))
            return f"Wrote {len(content)} characters to {path}"

        @reg.register(name="flaky", description="Fails with a transient error first")
        async def flaky() -> str:
            self.calls.append(("flaky", {}))
            if self.flaky_failures > 0:
                self.flaky_failures -= 1
                raise self.flaky_error("connection timeout")
            return "recovered"

        @reg.register(name="broken", description="Fails permanently")
        async def broken() -> str:
            self.calls.append(("broken", {}))
            raise ValueError("bad value")

        @reg.register(name="hang", description="Never finishes")
        async def hang() -> str:
            self.step_started.set()
            await asyncio.sleep(60)
            return "never"

        self.dispatcher = ToolDispatcher(reg)
        self.planner = MagicMock()
        self.planner.generate_plan = AsyncMock()
        self.store = state_store if state_store is not None else SessionStateStore(tmp_path / "state")
        self.orchestrator = AgentOrchestrator(
            planner=self.planner,
            dispatcher=self.dispatcher,
            monitor=ExecutionMonitor(),
            state_store=self.store,
            max_iterations=max_iterations,
        )

    def plans(self, *plans_or_errors) -> None:
        self.planner.generate_plan.side_effect = list(plans_or_errors)


@pytest.fixture
def harness(tmp_path) -> Harness:
    return Harness(tmp_path)


# ─────────────────────────────────────────────────────────────────────────────
# Input validation
# ─────────────────────────────────────────────────────────────────────────────


class TestInputValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "x" * 10_001, "format C: drive"])
    async def test_rejected_before_planning(self, harness, text):
        final = await harness.orchestrator.execute_task(text)

        assert not final.success
        assert final.content.startswith("input validation error: ")
        assert final.steps_executed == 0
        assert final.status == SessionStatus.IDLE
        harness.planner.generate_plan.assert_not_called()
        assert harness.calls == []
        assert harness.store.list_sessions() == []


# ─────────────────────────────────────────────────────────────────────────────
# Main loop
# ─────────────────────────────────────────────────────────────────────────────


class TestExecution:
    @pytest.mark.asyncio
    async def test_single_step_success(self, harness):
        harness.plans(_plan(_step("write_file", path="test.txt", content="Hello World")))

        final = await harness.orchestrator.execute_task("create test.txt containing Hello World")

        assert final.success
        assert final.status == SessionStatus.COMPLETED
        assert final.steps_executed == 1
        assert final.content == "Wrote 11 characters to test.txt"
        assert harness.calls == [("write_file", {"path": "test.txt", "content": "Hello World"})]

    @pytest.mark.asyncio
    async def test_multi_step_output_is_last_step(self, harness):
        harness.plans(_plan(
            _step("write_file", path="a.txt", content="a"),
            _step("write_file", path="b.txt", content="bb"),
        ))
        final = await harness.orchestrator.execute_task("write two files")
        assert final.steps_executed == 2
        assert final.content == "Wrote 2 characters to b.txt"

    @pytest.mark.asyncio
    async def test_transient_failure_replans_with_feedback(self, harness):
        harness.flaky_failures = 1
        harness.plans(_plan(_step("flaky")), _plan(_step("flaky")))

        final = await harness.orchestrator.execute_task("try the flaky thing")

        assert final.success
        assert final.steps_executed == 2
        assert final.content == "recovered"
        assert harness.planner.generate_plan.await_count == 2
        second_context = harness.planner.generate_plan.await_args_list[1].args[0]
        assert len(second_context.feedback) == 1
        assert "retrying is recommended" in second_context.feedback[0]

    @pytest.mark.asyncio
    async def test_execution_stops_at_first_failure(self, harness):
        harness.plans(_plan(_step("broken"), _step("write_file", path="a.txt", content="a")))

        final = await harness.orchestrator.execute_task("do the broken thing")

        assert not final.success
        assert final.status == SessionStatus.CANCELLED
        assert final.content == "Task failed: permanent failure: ValueError: bad value"
        assert [c[0] for c in harness.calls] == ["broken"]
        assert harness.planner.generate_plan.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_tool_is_permanent(self, harness):
        harness.plans(_plan(_step("frobnicate")))
        final = await harness.orchestrator.execute_task("frobnicate it")
        assert not final.success
        assert "ToolNotFoundError" in final.content
        assert final.steps_executed == 1

    @pytest.mark.asyncio
    async def test_empty_plan_completes(self, harness):
        harness.plans(_plan())
        final = await harness.orchestrator.execute_task("nothing to do")
        assert final.success
        assert final.content == ""
        assert final.steps_executed == 0

    @pytest.mark.asyncio
    async def test_invalid_step_arguments_not_dispatched(self, harness):
        harness.plans(_plan(_step("write_file", path="/etc/passwd", content="x")))

        final = await harness.orchestrator.execute_task("overwrite the password file")

        assert not final.success
        assert "ValidationError" in final.content
        assert final.steps_executed == 0
        assert harness.calls == []


class TestPlanningFaults:
    @pytest.mark.asyncio
    async def test_planning_error_is_terminal(self, harness):
        harness.plans(PlanningError("model output is not valid JSON: Expecting value"))

        final = await harness.orchestrator.execute_task("plan something")

        assert not final.success
        assert final.status == SessionStatus.CANCELLED
        assert "PlanningError" in final.content
        assert harness.planner.generate_plan.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_provider_error_replans(self, harness):
        harness.plans(
            ProviderConnectionError("connection error contacting OpenAI", provider="OpenAI"),
            _plan(_step("write_file", path="a.txt", content="a")),
        )
        final = await harness.orchestrator.execute_task("write a file")
        assert final.success
        assert harness.planner.generate_plan.await_count == 2

    @pytest.mark.asyncio
    async def test_iteration_cap(self, tmp_path):
        harness = Harness(tmp_path, max_iterations=1)
        harness.flaky_failures = 5
        harness.plans(_plan(_step("flaky")), _plan(_step("flaky")))

        final = await harness.orchestrator.execute_task("keep trying")

        assert not final.success
        assert final.status == SessionStatus.CANCELLED
        assert final.content.startswith("Task failed: iteration limit reached (1)")
        assert harness.planner.generate_plan.await_count == 1


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────


class TestCancellation:
    @pytest.mark.asyncio
    async def test_step_timeout_is_terminal(self, harness):
        harness.plans(_plan(_step("hang", timeout=0.05)), _plan(_step("write_file", path="a", content="a")))

        final = await harness.orchestrator.execute_task("wait forever")

        assert not final.success
        assert final.status == SessionStatus.CANCELLED
        assert final.content.startswith("Task failed: timeout: Tool 'hang' timed out")
        assert harness.planner.generate_plan.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_raised_inside_tool_is_retried(self, harness):
        harness.flaky_error = TimeoutError
        harness.flaky_failures = 1
        harness.plans(_plan(_step("flaky")), _plan(_step("flaky")))

        final = await harness.orchestrator.execute_task("fetch the remote page")

        assert final.success
        assert final.status == SessionStatus.COMPLETED
        assert final.content == "recovered"
        assert harness.planner.generate_plan.await_count == 2
        second_context = harness.planner.generate_plan.await_args_list[1].args[0]
        assert "retrying is recommended" in second_context.feedback[0]
        assert harness.store.load(final.session_id).step_results[0].error == "TimeoutError: connection timeout"

    @pytest.mark.asyncio
    async def test_user_cancel_during_step(self, harness):
        harness.plans(_plan(_step("hang", timeout=30)))

        task = asyncio.create_task(harness.orchestrator.execute_task("wait forever"))
        await asyncio.wait_for(harness.step_started.wait(), timeout=2)

        assert harness.orchestrator.current_status() == SessionStatus.EXECUTING
        assert len(harness.orchestrator.active_sessions) == 1
        assert harness.orchestrator.cancel()

        final = await asyncio.wait_for(task, timeout=2)
        assert final.status == SessionStatus.CANCELLED
        assert final.content == "Task cancelled: user cancellation"
        assert harness.orchestrator.active_sessions == []
        assert harness.orchestrator.current_status() == SessionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_unknown_session(self, harness):
        assert not harness.orchestrator.cancel("nope")
        assert harness.orchestrator.current_status("nope") == SessionStatus.IDLE

    @pytest.mark.asyncio
    async def test_external_task_cancellation_propagates(self, harness):
        harness.plans(_plan(_step("hang", timeout=30)))
        task = asyncio.create_task(harness.orchestrator.execute_task("wait forever"))
        await asyncio.wait_for(harness.step_started.wait(), timeout=2)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        session_id = harness.store.list_sessions()[0]
        assert harness.store.load(session_id).status == SessionStatus.CANCELLED


# ─────────────────────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────────────────────


class TestPersistence:
    @pytest.mark.asyncio
    async def test_final_snapshot_written(self, harness):
        harness.plans(_plan(_step("write_file", path="test.txt", content="Hello World")))

        final = await harness.orchestrator.execute_task("create test.txt containing Hello World")

        context = harness.store.load(final.session_id)
        assert context.completed
        assert context.status == SessionStatus.COMPLETED
        assert context.plan.steps[0].tool_name == "write_file"
        assert len(context.step_results) == 1

    @pytest.mark.asyncio
    async def test_state_failure_is_fatal(self, tmp_path):
        failing_store = MagicMock()
        failing_store.save = AsyncMock(side_effect=StateManagerError("disk full"))
        harness = Harness(tmp_path, state_store=failing_store)
        harness.plans(_plan(_step("write_file", path="a", content="a")))

        with pytest.raises(StateManagerError, match="disk full"):
            await harness.orchestrator.execute_task("write a")
        assert harness.orchestrator.active_sessions == []


# ─────────────────────────────────────────────────────────────────────────────
# Concurrent sessions
# ─────────────────────────────────────────────────────────────────────────────


class TestConcurrentSessions:
    @pytest.fixture
    def gated(self, harness, monkeypatch) -> tuple[Harness, asyncio.Event, asyncio.Event]:
        # identical input within the same second derives the same session id
        monkeypatch.setattr("taskpilot.agent.session.derive_session_id", lambda *_: "20260101000000_deadbeef")
        release, both_in = asyncio.Event(), asyncio.Event()
        entered: list[int] = []

        @harness.dispatcher.registry.register(name="gate", description="Waits until released")
        async def gate() -> str:
            entered.append(1)
            if len(entered) == 2:
                both_in.set()
            await release.wait()
            return "released"

        harness.planner.generate_plan.side_effect = None
        harness.planner.generate_plan.return_value = _plan(_step("gate", timeout=10))
        return harness, release, both_in

    @pytest.mark.asyncio
    async def test_same_session_id_runs_are_tracked_separately(self, gated):
        harness, release, both_in = gated
        orchestrator = harness.orchestrator
        tasks = [asyncio.create_task(orchestrator.execute_task("fetch the status page")) for _ in range(2)]
        await asyncio.wait_for(both_in.wait(), timeout=2)

        assert orchestrator.active_sessions == ["20260101000000_deadbeef"] * 2
        assert orchestrator.current_status("20260101000000_deadbeef") == SessionStatus.EXECUTING

        release.set()
        finals = await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)

        assert all(f.success for f in finals)
        assert orchestrator.active_sessions == []
        assert orchestrator.current_status() == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_reaches_every_run_with_the_id(self, gated):
        harness, _, both_in = gated
        orchestrator = harness.orchestrator
        tasks = [asyncio.create_task(orchestrator.execute_task("fetch the status page")) for _ in range(2)]
        await asyncio.wait_for(both_in.wait(), timeout=2)

        assert orchestrator.cancel("20260101000000_deadbeef")
        finals = await asyncio.wait_for(asyncio.gather(*tasks), timeout=2)

        assert [f.status for f in finals] == [SessionStatus.CANCELLED] * 2
        assert orchestrator.active_sessions == []
