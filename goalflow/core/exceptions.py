"""Exception hierarchy for goalflow."""


class GoalflowError(Exception):
    """Base exception for goalflow errors."""

    pass


class ConstructionError(GoalflowError):
    """The goal graph could not be built into a presentable plan."""

    pass


class CycleDetectedError(ConstructionError):
    """An edge batch would introduce a dependency cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class CycleResolutionError(ConstructionError):
    """No repair strategy eliminates a detected cycle."""

    def __init__(self, cycle: list[str], reason: str = "no repair strategy applies") -> None:
        self.cycle = cycle
        super().__init__(f"Cannot resolve cycle {' -> '.join(cycle)}: {reason}")


class AssignmentError(GoalflowError):
    """A sub-task could not be bound to a worker."""

    pass


class InvalidTransitionError(GoalflowError):
    """A lifecycle transition is not allowed from the current state."""

    pass


class ApprovalDeniedError(GoalflowError):
    """The approver rejected or did not clearly approve a request."""

    pass


class GoalCancelledError(GoalflowError):
    """The goal was cancelled and accepts no further work."""

    pass
