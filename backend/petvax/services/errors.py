from typing import Optional


class PlannerError(Exception):
    """Base class for turn-scoped failures the assistant turns into reply text."""

    reason = "planner_error"

    def __init__(self, message: str = "", reason: Optional[str] = None) -> None:
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason


class InterpreterUnavailable(PlannerError):
    reason = "interpreter_unavailable"


class ActionValidationError(PlannerError):
    reason = "missing_required_field"

    def __init__(self, field: str, message: str = "", reason: Optional[str] = None) -> None:
        super().__init__(message or f"{field} is required", reason=reason)
        self.field = field


class ResolutionError(PlannerError):
    reason = "no_resolvable_pet"

    def __init__(self, message: str = "", pet_name: Optional[str] = None) -> None:
        super().__init__(message or "no pet could be resolved")
        self.pet_name = pet_name


class StorageError(PlannerError):
    reason = "storage_unavailable"


class SessionConflictError(StorageError):
    reason = "session_conflict"
