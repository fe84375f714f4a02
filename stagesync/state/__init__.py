"""Stage state module: versioned, stage-scoped JSON documents.

Public API: VersionedStateStore, the kind registry, the resolver and all
error and schema types.
"""

from stagesync.state.errors import (
    SessionMissing,
    StateSyncError,
    StateValidationError,
    StoreUnavailable,
    UnknownStateKind,
    VersionConflict,
)
from stagesync.state.registry import StateKind, StateTypeRegistry, default_registry
from stagesync.state.resolver import ConflictResolver, Resolution
from stagesync.state.schemas import StateHistoryEntry, StateRecord
from stagesync.state.store import VersionedStateStore

__all__ = [
    "VersionedStateStore",
    # Registry
    "StateKind",
    "StateTypeRegistry",
    "default_registry",
    # Resolution
    "ConflictResolver",
    "Resolution",
    # Records
    "StateHistoryEntry",
    "StateRecord",
    # Errors
    "SessionMissing",
    "StateSyncError",
    "StateValidationError",
    "StoreUnavailable",
    "UnknownStateKind",
    "VersionConflict",
]
