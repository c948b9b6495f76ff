"""
agent/planner.py — Task Planner

Turns a SessionContext into an ExecutionPlan using the active language
model. The prompt lists the current tool catalog (built-ins plus any
extension tools), the plan JSON schema, and every piece of feedback the
monitor has accumulated so far, oldest first.

The model is streamed in JSON mode; chunks are joined before parsing.
Structurally invalid JSON raises PlanningError. Missing fields default
to empty rather than erroring.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

from taskpilot.agent.session import (
    DEFAULT_STEP_TIMEOUT_SECONDS,
    ExecutionPlan,
    ExecutionStep,
    SessionContext,
)
from taskpilot.brain.llm_client import BaseLLMProvider
from taskpilot.brain.types import ResponseFormat
from taskpilot.exceptions import PlanningError
from taskpilot.observability.logger import get_logger
from taskpilot.tools.dispatcher import ToolDispatcher

log = get_logger(__name__)

DEFAULT_PLAN_DESCRIPTION = "plan generated"

_PLAN_SYSTEM = """\
You are the planner for a local task-automation agent.
Turn the user's request into an ordered list of tool calls.
Use only the tools listed below, with exactly the argument names shown.
Return ONLY valid JSON, no markdown fences, no explanation.

Available tools:
{tool_list}

Required format:
{{"description": "what the plan does",
  "steps": [{{"toolName": "tool name",
             "arguments": {{"argument": "value"}},
             "expectedOutcome": "what should happen",
             "timeout": 30}}],
  "parameters": {{}}}}"""

_FEEDBACK_HEADER = "Feedback from previous attempts (address every point):"


class ActiveProviderSource(Protocol):
    def get_active(self) -> BaseLLMProvider: ...


class TaskPlanner:
    """Uses the active provider to build an ExecutionPlan for a session."""

    def __init__(self, providers: ActiveProviderSource, dispatcher: ToolDispatcher):
        self._providers = providers
        self._dispatcher = dispatcher

    async def generate_plan(self, context: SessionContext) -> ExecutionPlan:
        provider = self._providers.get_active()
        prompt = self.build_prompt(context)

        log.info(
            "planner.generate_plan",
            provider=provider.name,
            feedback_items=len(context.feedback),
            prompt_chars=len(prompt),
        )
        chunks = [chunk async for chunk in provider.stream_response(prompt, ResponseFormat.JSON)]
        plan = parse_plan("".join(chunks))
        log.info("planner.plan_ready", steps=len(plan.steps), tools=[s.tool_name for s in plan.steps])
        return plan

    def build_prompt(self, context: SessionContext) -> str:
        parts = [_PLAN_SYSTEM.format(tool_list=self._tool_list())]
        if context.feedback:
            parts.append(_FEEDBACK_HEADER + "\n" + "\n".join(f"- {f}" for f in context.feedback))
        parts.append(f"User request: {context.user_input}")
        return "\n\n".join(parts)

    def _tool_list(self) -> str:
        lines = []
        for schema in self._dispatcher.list_schemas():
            required = ", ".join(schema.required_arguments) or "none"
            lines.append(f"- {schema.name}: {schema.description} (required arguments: {required})")
        return "\n".join(lines) if lines else "- none"


# ─────────────────────────────────────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────────────────────────────────────

def parse_plan(content: str) -> ExecutionPlan:
    text = _strip_fences(content)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        log.warning("planner.parse_failed", error=str(e), raw=text[:200])
        raise PlanningError(f"model output is not valid JSON: {e}", context={"raw": text[:500]}) from e
    if not isinstance(data, dict):
        raise PlanningError(
            f"model output must be a JSON object, got {type(data).__name__}",
            context={"raw": text[:500]},
        )

    fields = _lower_keys(data)
    raw_steps = fields.get("steps")
    steps = []
    if isinstance(raw_steps, list):
        for index, raw in enumerate(raw_steps):
            if not isinstance(raw, dict):
                log.warning("planner.step_skipped", index=index, reason="not an object")
                continue
            steps.append(_parse_step(raw))

    parameters = fields.get("parameters")
    return ExecutionPlan(
        description=str(fields.get("description") or DEFAULT_PLAN_DESCRIPTION),
        steps=tuple(steps),
        parameters=parameters if isinstance(parameters, dict) else {},
    )


def _parse_step(raw: dict[str, Any]) -> ExecutionStep:
    fields = _lower_keys(raw)
    tool_name = fields.get("toolname", fields.get("tool_name", fields.get("tool", "")))
    arguments = fields.get("arguments")
    timeout = fields.get("timeout", fields.get("timeoutseconds", fields.get("timeout_seconds")))
    return ExecutionStep(
        tool_name=str(tool_name or ""),
        arguments=arguments if isinstance(arguments, dict) else {},
        expected_outcome=str(fields.get("expectedoutcome", fields.get("expected_outcome", "")) or ""),
        timeout_seconds=_timeout(timeout),
    )


def _timeout(value: Any) -> float:
    if isinstance(value, bool):
        return DEFAULT_STEP_TIMEOUT_SECONDS
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return DEFAULT_STEP_TIMEOUT_SECONDS
    return seconds if seconds > 0 else DEFAULT_STEP_TIMEOUT_SECONDS


def _lower_keys(data: dict[str, Any]) -> dict[str, Any]:
    return {str(k).lower(): v for k, v in data.items()}


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.splitlines()
        end = len(lines) - 1 if lines[-1].strip() == "```" else len(lines)
        text = "\n".join(lines[1:end])
    return text.strip()
