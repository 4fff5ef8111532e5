"""
goalflow - goal decomposition and wave-based orchestration.

Turns a goal into a validated dependency graph of sub-tasks, schedules it
in waves behind a human approval gate, and replans around failures.
"""

__version__ = "0.1.0"

from goalflow.core.orchestrator import GoalOrchestrator, GoalReport

__all__ = ["GoalOrchestrator", "GoalReport", "__version__"]
