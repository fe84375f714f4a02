"""Error taxonomy for the stage state engine.

Every error carries the HTTP status it maps to and a caller-safe message.
SessionMissing and StateValidationError are raised before any storage
access. VersionConflict is an expected outcome of a lost race, not a fault.
"""

from __future__ import annotations


class StateSyncError(Exception):
    """Base class for caller-visible stage state outcomes."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SessionMissing(StateSyncError):
    status_code = 400

    def __init__(self, message: str = "Session key header required") -> None:
        super().__init__(message)


class UnknownStateKind(StateSyncError):
    status_code = 404

    def __init__(self, kind: str) -> None:
        super().__init__(f"Unknown state kind '{kind}'")
        self.kind = kind


class StateValidationError(StateSyncError):
    """Payload does not match the registered shape for its kind."""

    status_code = 400

    def __init__(self, kind: str, label: str | None = None, errors: list[dict] | None = None) -> None:
        super().__init__(f"Invalid {(label or kind).lower()} payload")
        self.kind = kind
        self.errors = errors or []


class VersionConflict(StateSyncError):
    """The caller's expected version no longer matches the stored one."""

    status_code = 409

    def __init__(self, kind: str, current_version: int, label: str | None = None) -> None:
        super().__init__(f"{(label or kind).capitalize()} state version conflict")
        self.kind = kind
        self.current_version = current_version


class StoreUnavailable(StateSyncError):
    """Durable store unreachable, failing, or too slow. Cause is chained."""

    status_code = 500

    def __init__(self, kind: str, operation: str, label: str | None = None) -> None:
        super().__init__(f"Failed to {operation} {(label or kind).lower()} state")
        self.kind = kind
        self.operation = operation
