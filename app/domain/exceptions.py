"""
Domain exceptions for group formation.

Only structural problems are raised. Constraint violations on individual
proposals are returned as data (see ``Violation``) so callers can see every
problem at once.
"""
from typing import Optional


class GroupFormationError(Exception):
    """Base class for group formation errors."""

    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputError(GroupFormationError, ValueError):
    """Invalid request: empty candidate set, bad parameters, missing exception reason."""
    pass


class ConcurrencyConflictError(GroupFormationError):
    """Another run assigned some of the same plots first."""

    retryable = True

    def __init__(self, message: str, conflicting_plot_ids: Optional[list[str]] = None):
        super().__init__(message)
        self.conflicting_plot_ids = conflicting_plot_ids or []


class FormationCancelledError(GroupFormationError):
    """The run was cancelled before anything was persisted."""
    pass


class ExternalServiceError(Exception):
    """An external collaborator (e.g. the supervisor service) failed."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
