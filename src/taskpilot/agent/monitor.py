"""
agent/monitor.py — Execution Monitor

Judges an aggregated step outcome and decides whether the orchestrator
should re-plan. Rules, in order:

  1. Success → successful evaluation; a slow run (> slow_result_seconds)
     only adds a performance note.
  2. Failure → the error text is matched (case-insensitive substring)
     against three transient buckets; any hit means retry.
     Cancelled results are never retried.
  3. If at least 2 of the last 3 recorded outcomes failed, retry is forced
     off and a "repeated failure" note is appended.
  4. If the last recorded duration is more than twice the session average,
     an anomaly note is appended (informational only).
"""

from __future__ import annotations

from typing import Optional

from taskpilot.agent.session import EvaluationResult, SessionContext
from taskpilot.observability.logger import get_logger
from taskpilot.tools.types import ToolResult

log = get_logger(__name__)

SLOW_RESULT_SECONDS = 300.0
RECENT_WINDOW = 3
RECENT_FAILURE_LIMIT = 2

RETRYABLE_BUCKETS: dict[str, tuple[str, ...]] = {
    "network": ("network", "timeout", "connection", "unreachable"),
    "resource": ("busy", "temporary", "throttle", "rate limit"),
    "file_lock": ("locked", "sharing violation", "access denied"),
}

_BUCKET_FEEDBACK = {
    "network": "The failure looks like a transient network problem; retrying is recommended.",
    "resource": "The resource was busy or rate limited; retrying is recommended.",
    "file_lock": "The file appears to be locked or temporarily inaccessible; retrying is recommended.",
}

PERMANENT_FEEDBACK = "The failure looks permanent; not retrying."
SLOW_FEEDBACK = "Execution took unusually long; consider optimising the plan."
REPEATED_FAILURE_NOTE = "Repeated failures detected; investigate the root cause."
ANOMALY_NOTE = "The last step took much longer than the session average."


def classify_error(error: Optional[str]) -> Optional[str]:
    """Return the retry bucket name an error text falls in, or None."""
    if not error:
        return None
    lowered = error.lower()
    for bucket, keywords in RETRYABLE_BUCKETS.items():
        if any(keyword in lowered for keyword in keywords):
            return bucket
    return None


class ExecutionMonitor:

    def __init__(self, slow_result_seconds: float = SLOW_RESULT_SECONDS):
        self.slow_result_seconds = slow_result_seconds

    def evaluate(self, result: ToolResult, context: SessionContext) -> EvaluationResult:
        log.info(
            "monitor.evaluate",
            status=result.status.value,
            duration_seconds=round(result.duration_seconds, 3),
            tool=result.tool_name or None,
        )

        notes: list[str] = []
        if result.success:
            success, retry, reason = True, False, "execution completed successfully"
            if result.duration_seconds > self.slow_result_seconds:
                notes.append(SLOW_FEEDBACK)
                log.warning("monitor.slow_result", duration_seconds=result.duration_seconds)
        elif result.cancelled:
            success, retry, reason = False, False, f"execution was cancelled: {result.error or 'cancelled'}"
            notes.append("Cancelled steps are not retried.")
        else:
            success = False
            bucket = classify_error(result.error)
            retry = bucket is not None
            if bucket:
                reason = f"transient failure ({bucket}): {result.error}"
                notes.append(_BUCKET_FEEDBACK[bucket])
                log.warning("monitor.retryable", bucket=bucket, error=result.error)
            else:
                reason = f"permanent failure: {result.error}"
                notes.append(PERMANENT_FEEDBACK)
                log.error("monitor.permanent", error=result.error)

        retry = self._check_history(context, notes, retry)

        return EvaluationResult(
            success=success,
            retry=retry,
            feedback=" ".join(notes),
            reason=reason,
        )

    def _check_history(self, context: SessionContext, notes: list[str], retry: bool) -> bool:
        history = context.step_results
        if not history:
            return retry

        recent_failures = sum(1 for r in history[-RECENT_WINDOW:] if not r.success)
        if recent_failures >= RECENT_FAILURE_LIMIT:
            retry = False
            notes.append(REPEATED_FAILURE_NOTE)
            log.warning("monitor.repeated_failure", recent_failures=recent_failures)

        average = sum(r.duration_seconds for r in history) / len(history)
        last = history[-1].duration_seconds
        if average > 0 and last > average * 2:
            notes.append(ANOMALY_NOTE)
            log.warning("monitor.duration_anomaly", average_seconds=average, last_seconds=last)

        return retry
