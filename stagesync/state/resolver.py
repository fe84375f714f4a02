"""Map store outcomes to caller-facing results.

Pure functions of their inputs; no I/O. The HTTP adapter turns a Resolution
into a JSONResponse, but nothing here depends on the web framework.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from stagesync.state.errors import StateSyncError, StateValidationError, StoreUnavailable, VersionConflict
from stagesync.state.schemas import StateHistoryEntry, StateRecord

GENERIC_FAULT_MESSAGE = "Internal server error"


@dataclass(frozen=True)
class Resolution:
    status_code: int
    body: Any


def _iso(value: datetime | None) -> str | None:
    return value.isoformat().replace("+00:00", "Z") if value is not None else None


class ConflictResolver:
    """Turns StateRecords and StateSyncErrors into (status, body) pairs."""

    def __init__(self, expose_conflict_version: bool = True, expose_validation_errors: bool = True) -> None:
        self.expose_conflict_version = expose_conflict_version
        self.expose_validation_errors = expose_validation_errors

    def document(self, record: StateRecord | None) -> Resolution:
        """200 with the canonical document, or ``null`` when nothing is stored."""
        if record is None:
            return Resolution(200, None)
        return Resolution(200, self.render(record))

    def empty_document(self, empty: dict[str, Any]) -> Resolution:
        """200 with an unsaved default document (version 0, no timestamp)."""
        return Resolution(200, {**empty, "version": 0, "updatedAt": None})

    def history(self, entries: list[StateHistoryEntry]) -> Resolution:
        return Resolution(
            200,
            [
                {
                    "id": str(e.id),
                    "actorId": e.actor_id,
                    "version": e.version,
                    "state": e.state,
                    "createdAt": _iso(e.created_at),
                }
                for e in entries
            ],
        )

    def failure(self, error: StateSyncError) -> Resolution:
        """Map an engine error to its status and a caller-safe body."""
        if isinstance(error, VersionConflict):
            body: dict[str, Any] = {"message": error.message}
            if self.expose_conflict_version:
                body["expectedVersion"] = error.current_version
            return Resolution(409, body)

        if isinstance(error, StateValidationError):
            body = {"message": error.message}
            if self.expose_validation_errors and error.errors:
                body["errors"] = [
                    {"loc": list(err.get("loc", [])), "msg": err.get("msg", "")} for err in error.errors
                ]
            return Resolution(400, body)

        if isinstance(error, StoreUnavailable):
            # Cause is logged by the store; only the per-kind summary goes out
            return Resolution(500, {"message": error.message})

        if error.status_code >= 500:
            return Resolution(error.status_code, {"message": GENERIC_FAULT_MESSAGE})
        return Resolution(error.status_code, {"message": error.message})

    @staticmethod
    def render(record: StateRecord) -> dict[str, Any]:
        """Wire form: payload fields flattened alongside version and updatedAt."""
        return {
            **record.payload,
            "version": record.version,
            "updatedAt": _iso(record.updated_at),
        }
