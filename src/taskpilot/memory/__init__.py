from taskpilot.memory.state_store import SessionStateStore

__all__ = ["SessionStateStore"]
