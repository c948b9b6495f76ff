"""
TaskPilot — local agent-execution engine.

A natural-language request is planned by a language model into tool calls,
executed step by step, evaluated, and re-planned on transient failures.
"""

__version__ = "0.1.0"
