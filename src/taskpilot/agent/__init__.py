from taskpilot.agent.monitor import ExecutionMonitor
from taskpilot.agent.orchestrator import AgentOrchestrator
from taskpilot.agent.planner import TaskPlanner
from taskpilot.agent.session import (
    EvaluationResult,
    ExecutionPlan,
    ExecutionStep,
    FinalResult,
    SessionContext,
    SessionStatus,
    StateSnapshot,
)

__all__ = [
    "AgentOrchestrator",
    "TaskPlanner",
    "ExecutionMonitor",
    "SessionContext",
    "SessionStatus",
    "ExecutionPlan",
    "ExecutionStep",
    "EvaluationResult",
    "FinalResult",
    "StateSnapshot",
]
