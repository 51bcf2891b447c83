"""Exceptions raised by thread dispatch components.

Admission denials and stale interactions are never raised; they are
returned as typed results. These exceptions cover programming errors
and invalid input only.
"""


class DispatchError(Exception):
    """Base class for thread dispatch errors."""

    pass


class SessionConflictError(DispatchError):
    """Raised when creating a session for a thread that already has an active one."""

    pass


class ScheduleError(DispatchError, ValueError):
    """Raised when a schedule descriptor is invalid."""

    pass
