"""Presence module: heartbeat-based collaborator awareness."""

from stagesync.presence.tracker import ExpiringMap, Heartbeat, PresenceRecord, PresenceTracker

__all__ = [
    "ExpiringMap",
    "Heartbeat",
    "PresenceRecord",
    "PresenceTracker",
]
