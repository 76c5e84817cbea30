from __future__ import annotations


class DataUnavailableError(RuntimeError):
    """Raised when an upstream read (therapist, enrollment, sessions) fails.

    Callers must surface this as a failed result. Falling back to an empty or
    zero workload would hide over-capacity risk.

    Args:
        message: High-level human-readable message for logs and API callers.
        technical_detail: Optional technical detail (query, driver error, etc.).
    """

    def __init__(self, message: str, *, technical_detail: str | None = None) -> None:
        super().__init__(message)
        self.technical_detail = technical_detail


class InvalidPlanTransitionError(ValueError):
    """Raised when a substitution plan status change is not a legal transition.

    Args:
        current: Status the plan is in.
        target: Status that was requested.
    """

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Cannot transition substitution plan from '{current}' to '{target}'"
        )
        self.current = current
        self.target = target


class SessionReassignmentError(RuntimeError):
    """Raised when a substitute's sessions can no longer be reassigned.

    Typically the sessions were moved or cancelled after the plan was built.
    """
