"""
tests/unit/test_agent_modules.py — Session, Planner and Monitor Unit Tests

Covers:
  - SessionContext: append-only history, exclusive terminal states,
    deterministic session ids, cancellation signal
  - TaskPlanner: prompt contents (tool catalog, feedback), plan parsing
    (fences, key casing, defaults, malformed JSON)
  - ExecutionMonitor: retry buckets, cancelled results, repeated-failure
    cap, slow-result and duration-anomaly notes

Run with:
    pytest tests/unit/test_agent_modules.py -v
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from taskpilot.agent import ExecutionMonitor, SessionContext, SessionStatus, TaskPlanner
from taskpilot.agent.monitor import ANOMALY_NOTE, REPEATED_FAILURE_NOTE, SLOW_FEEDBACK, classify_error
from taskpilot.agent.planner import DEFAULT_PLAN_DESCRIPTION, parse_plan
from taskpilot.agent.session import DEFAULT_STEP_TIMEOUT_SECONDS, derive_session_id
from taskpilot.brain.types import ResponseFormat
from taskpilot.exceptions import PlanningError
from taskpilot.tools import ToolDispatcher, ToolRegistry, ToolResult


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


class FakeProvider:
    """Streams a canned reply in small chunks and records the prompts it saw."""

    name = "fake"

    def __init__(self, reply: str, chunk_size: int = 7):
        self.reply = reply
        self.chunk_size = chunk_size
        self.prompts: list[tuple[str, ResponseFormat]] = []

    async def stream_response(self, prompt: str, response_format: ResponseFormat = ResponseFormat.TEXT):
        self.prompts.append((prompt, response_format))
        for i in range(0, len(self.reply), self.chunk_size):
            yield self.reply[i:i + self.chunk_size]


def _planner(reply: str) -> tuple[TaskPlanner, FakeProvider]:
    reg = ToolRegistry()

    @reg.register(
        name="write_file",
        description="Write a file",
        input_schema={"type": "object", "properties": {}, "required": ["path", "content"]},
    )
    async def write_file(path: str, content: str) -> str:
        return "ok"

    provider = FakeProvider(reply)
    providers = MagicMock()
    providers.get_active.return_value = provider
    return TaskPlanner(providers, ToolDispatcher(reg)), provider


def _context_with(*results: ToolResult) -> SessionContext:
    context = SessionContext("do something")
    for result in results:
        context.add_result(result)
    return context


# ─────────────────────────────────────────────────────────────────────────────
# SessionContext
# ─────────────────────────────────────────────────────────────────────────────


class TestSessionContext:
    def test_initial_state(self):
        context = SessionContext("hello")
        assert context.status == SessionStatus.IDLE
        assert context.step_results == ()
        assert context.feedback == ()
        assert not context.is_terminal

    def test_history_is_append_only(self):
        context = SessionContext("hello")
        context.add_result(ToolResult.ok("a"))
        context.add_feedback("retry please")
        context.add_feedback("")
        assert isinstance(context.step_results, tuple)
        assert [r.output for r in context.step_results] == ["a"]
        assert context.feedback == ("retry please",)

    def test_terminal_states_are_exclusive(self):
        context = SessionContext("hello")
        context.mark_completed()
        with pytest.raises(RuntimeError):
            context.mark_cancelled("late")
        with pytest.raises(RuntimeError):
            context.add_result(ToolResult.ok("x"))
        assert context.completed and not context.cancelled

    def test_cancelled_response(self):
        context = SessionContext("hello")
        context.mark_cancelled("iteration limit reached (3)")
        assert context.status == SessionStatus.CANCELLED
        assert context.final_response() == "Task was not completed: iteration limit reached (3)"

    def test_completed_response_is_last_successful_output(self):
        context = _context_with(ToolResult.ok("first"), ToolResult.failure("boom"), ToolResult.ok("second"))
        context.mark_completed()
        assert context.final_response() == "second"

    def test_session_id_is_deterministic(self):
        started = datetime(2024, 5, 1, 12, 30, 45, tzinfo=timezone.utc)
        a = SessionContext("same input", started_at=started)
        b = SessionContext("same input", started_at=started)
        c = SessionContext("other input", started_at=started)
        assert a.session_id == b.session_id
        assert a.session_id != c.session_id
        assert a.session_id.startswith("20240501123045_")
        assert derive_session_id("same input", started) == a.session_id

    def test_cancel_signal(self):
        context = SessionContext("hello")
        assert not context.cancel_requested
        context.request_cancel()
        assert context.cancel_requested


# ─────────────────────────────────────────────────────────────────────────────
# Planner
# ─────────────────────────────────────────────────────────────────────────────


class TestParsePlan:
    def test_full_plan(self):
        plan = parse_plan(json.dumps({
            "description": "write the file",
            "steps": [{
                "toolName": "write_file",
                "arguments": {"path": "test.txt", "content": "Hello World"},
                "expectedOutcome": "file exists",
                "timeout": 12,
            }],
            "parameters": {"k": "v"},
        }))
        assert plan.description == "write the file"
        assert plan.parameters == {"k": "v"}
        step = plan.steps[0]
        assert step.tool_name == "write_file"
        assert step.arguments == {"path": "test.txt", "content": "Hello World"}
        assert step.expected_outcome == "file exists"
        assert step.timeout_seconds == 12

    def test_keys_are_case_insensitive(self):
        plan = parse_plan('{"Description": "d", "Steps": [{"TOOLNAME": "t", "Arguments": {"a": 1}, "Timeout": 5}]}')
        assert plan.description == "d"
        assert plan.steps[0].tool_name == "t"
        assert plan.steps[0].arguments == {"a": 1}
        assert plan.steps[0].timeout_seconds == 5

    def test_snake_case_aliases(self):
        plan = parse_plan('{"steps": [{"tool_name": "t", "timeout_seconds": 9}]}')
        assert plan.steps[0].tool_name == "t"
        assert plan.steps[0].timeout_seconds == 9

    def test_missing_fields_default(self):
        plan = parse_plan("{}")
        assert plan.description == DEFAULT_PLAN_DESCRIPTION
        assert plan.steps == ()
        assert plan.parameters == {}

    @pytest.mark.parametrize("timeout", [None, 0, -3, "soon", True])
    def test_bad_timeouts_default(self, timeout):
        plan = parse_plan(json.dumps({"steps": [{"toolName": "t", "timeout": timeout}]}))
        assert plan.steps[0].timeout_seconds == DEFAULT_STEP_TIMEOUT_SECONDS

    def test_non_object_steps_skipped(self):
        plan = parse_plan('{"steps": ["nope", {"toolName": "t"}, 3]}')
        assert [s.tool_name for s in plan.steps] == ["t"]

    def test_markdown_fences_stripped(self):
        plan = parse_plan('```json\n{"description": "fenced"}\n```')
        assert plan.description == "fenced"

    def test_invalid_json_raises(self):
        with pytest.raises(PlanningError, match="not valid JSON"):
            parse_plan("I would write the file for you")

    def test_non_object_raises(self):
        with pytest.raises(PlanningError, match="JSON object"):
            parse_plan("[1, 2]")


class TestTaskPlanner:
    @pytest.mark.asyncio
    async def test_generate_plan_joins_stream(self):
        reply = json.dumps({"description": "d", "steps": [{"toolName": "write_file", "arguments": {}}]})
        planner, provider = _planner(reply)

        plan = await planner.generate_plan(SessionContext("create test.txt containing Hello World"))

        assert plan.steps[0].tool_name == "write_file"
        assert provider.prompts[0][1] == ResponseFormat.JSON

    def test_prompt_lists_tools_and_request(self):
        planner, _ = _planner("{}")
        prompt = planner.build_prompt(SessionContext("create notes.txt"))
        assert "- write_file: Write a file (required arguments: path, content)" in prompt
        assert prompt.rstrip().endswith("User request: create notes.txt")
        assert "Feedback from previous attempts" not in prompt

    def test_prompt_includes_all_feedback_in_order(self):
        planner, _ = _planner("{}")
        context = SessionContext("create notes.txt")
        context.add_feedback("first note")
        context.add_feedback("second note")
        prompt = planner.build_prompt(context)
        assert "Feedback from previous attempts" in prompt
        assert prompt.index("- first note") < prompt.index("- second note") < prompt.index("User request:")

    @pytest.mark.asyncio
    async def test_malformed_reply_raises(self):
        planner, _ = _planner("not json")
        with pytest.raises(PlanningError):
            await planner.generate_plan(SessionContext("x"))


# ─────────────────────────────────────────────────────────────────────────────
# Monitor
# ─────────────────────────────────────────────────────────────────────────────


class TestClassifyError:
    @pytest.mark.parametrize(
        "error, bucket",
        [
            ("connection timeout", "network"),
            ("Host UNREACHABLE", "network"),
            ("device busy", "resource"),
            ("rate limit exceeded", "resource"),
            ("file is locked by another process", "file_lock"),
            ("Access denied", "file_lock"),
            ("ToolNotFoundError: tool 'frobnicate' not found", None),
            (None, None),
        ],
    )
    def test_buckets(self, error, bucket):
        assert classify_error(error) == bucket


class TestExecutionMonitor:
    def test_success(self):
        monitor = ExecutionMonitor()
        result = ToolResult.ok("done", duration_seconds=1.0)
        evaluation = monitor.evaluate(result, _context_with(result))
        assert evaluation.success
        assert not evaluation.retry
        assert evaluation.reason == "execution completed successfully"

    def test_slow_success_adds_note(self):
        monitor = ExecutionMonitor(slow_result_seconds=10)
        result = ToolResult.ok("done", duration_seconds=11)
        evaluation = monitor.evaluate(result, _context_with(result))
        assert evaluation.success
        assert SLOW_FEEDBACK in evaluation.feedback

    def test_transient_failure_retries(self):
        monitor = ExecutionMonitor()
        result = ToolResult.failure("connection timeout")
        evaluation = monitor.evaluate(result, _context_with(result))
        assert not evaluation.success
        assert evaluation.retry
        assert evaluation.reason == "transient failure (network): connection timeout"

    def test_permanent_failure(self):
        monitor = ExecutionMonitor()
        result = ToolResult.failure("ToolNotFoundError: tool 'frobnicate' not found")
        evaluation = monitor.evaluate(result, _context_with(result))
        assert not evaluation.retry
        assert evaluation.reason.startswith("permanent failure:")

    def test_cancelled_never_retries(self):
        monitor = ExecutionMonitor()
        result = ToolResult.cancelled_result("Tool 'x' timed out after 1s")
        evaluation = monitor.evaluate(result, _context_with(result))
        assert not evaluation.success
        assert not evaluation.retry

    def test_three_recent_failures_block_retry(self):
        monitor = ExecutionMonitor()
        failures = [ToolResult.failure("connection timeout") for _ in range(3)]
        evaluation = monitor.evaluate(failures[-1], _context_with(*failures))
        assert not evaluation.retry
        assert REPEATED_FAILURE_NOTE in evaluation.feedback

    def test_two_of_last_three_block_retry(self):
        monitor = ExecutionMonitor()
        history = [ToolResult.failure("busy"), ToolResult.ok("x"), ToolResult.failure("busy")]
        evaluation = monitor.evaluate(history[-1], _context_with(*history))
        assert not evaluation.retry

    def test_older_failures_outside_window_ignored(self):
        monitor = ExecutionMonitor()
        history = [
            ToolResult.failure("busy"),
            ToolResult.failure("busy"),
            ToolResult.ok("x"),
            ToolResult.ok("y"),
            ToolResult.failure("busy"),
        ]
        evaluation = monitor.evaluate(history[-1], _context_with(*history))
        assert evaluation.retry

    def test_duration_anomaly_note(self):
        monitor = ExecutionMonitor()
        history = [ToolResult.ok("a", duration_seconds=1.0) for _ in range(4)]
        history.append(ToolResult.ok("b", duration_seconds=10.0))
        evaluation = monitor.evaluate(history[-1], _context_with(*history))
        assert evaluation.success
        assert ANOMALY_NOTE in evaluation.feedback
