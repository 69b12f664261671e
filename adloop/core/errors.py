"""
Error taxonomy for the decision loop.

Guardrail denials are not errors; they come back as a negative GuardResult.
"""


class AdloopError(Exception):
    """Base class for all decision loop errors."""


class InputError(AdloopError, ValueError):
    """Malformed snapshot, history or request - rejected before any state is created."""


class PolicyError(InputError):
    """Policy failed validation."""

    def __init__(self, issues):
        self.issues = list(issues)
        super().__init__(f"Invalid policy: {'; '.join(self.issues)}")


class NotFoundError(AdloopError, LookupError):
    """Referenced operation or job does not exist."""


class InvalidTransitionError(AdloopError):
    """Requested status change is not allowed from the record's current status."""

    def __init__(self, record: str, record_id: str, current: str, target: str):
        self.record = record
        self.record_id = record_id
        self.current = current
        self.target = target
        super().__init__(f"{record} {record_id}: cannot move from '{current}' to '{target}'")


class ExecutionError(AdloopError):
    """The ads platform action executor reported a failure."""
