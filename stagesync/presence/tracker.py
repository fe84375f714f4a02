"""Presence tracking: who is active on which stage.

Each actor owns exactly one PresenceRecord, overwritten on every heartbeat,
so the most recent heartbeat decides which stage an actor is on. Records
live in an ExpiringMap and vanish once they are older than the TTL. No
versioning: each actor only writes its own entry, so last write wins.

Presence is per-process. Behind several app instances peers only see
actors whose heartbeats reached the same instance.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ExpiringMap(Generic[K, V]):
    """Map whose entries expire ``ttl`` after they were last written.

    Expired entries are swept lazily whenever the map is read, or eagerly
    via sweep(). ``clock`` is injectable for tests.
    """

    def __init__(self, ttl: timedelta, clock: Clock = _utcnow) -> None:
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[K, tuple[datetime, V]] = {}

    def set(self, key: K, value: V, at: datetime | None = None) -> datetime:
        """Store ``value`` stamped with ``at`` (default now); return the stamp."""
        now = at or self._clock()
        self._entries[key] = (now, value)
        return now

    def get(self, key: K) -> V | None:
        self.sweep()
        entry = self._entries.get(key)
        return entry[1] if entry else None

    def sweep(self) -> int:
        """Drop expired entries and return how many were removed."""
        cutoff = self._clock() - self.ttl
        expired = [key for key, (stamp, _) in self._entries.items() if stamp < cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def values(self) -> list[V]:
        self.sweep()
        return [value for _, value in self._entries.values()]

    def __len__(self) -> int:
        self.sweep()
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


@dataclass(frozen=True)
class PresenceRecord:
    actor_id: str
    stage_slug: str
    updated_at: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "actorId": self.actor_id,
            "stageSlug": self.stage_slug,
            "updatedAt": self.updated_at.isoformat().replace("+00:00", "Z"),
        }


@dataclass(frozen=True)
class Heartbeat:
    """Result of one heartbeat: the caller's own record plus stage peers."""

    record: PresenceRecord
    peers: list[PresenceRecord]

    def to_dict(self) -> dict:
        return {**self.record.to_dict(), "peers": [p.to_dict() for p in self.peers]}


class PresenceTracker:
    """Last-seen-per-actor map with stage-scoped peer queries.

    Peers returned by heartbeat() and query() include the caller itself.
    """

    def __init__(self, ttl_seconds: float = 45.0, clock: Clock = _utcnow) -> None:
        self._records: ExpiringMap[str, PresenceRecord] = ExpiringMap(timedelta(seconds=ttl_seconds), clock)
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._records.ttl

    def heartbeat(self, actor_id: str, stage_slug: str) -> Heartbeat:
        """Upsert the actor's record on ``stage_slug`` and snapshot that stage."""
        actor_id = actor_id.strip()
        stage_slug = stage_slug.strip()
        if not actor_id:
            raise ValueError("actor_id must be non-empty")
        if not stage_slug:
            raise ValueError("stage_slug must be non-empty")

        previous = self._records.get(actor_id)
        record = PresenceRecord(actor_id=actor_id, stage_slug=stage_slug, updated_at=self._clock())
        self._records.set(actor_id, record, at=record.updated_at)
        if previous is not None and previous.stage_slug != stage_slug:
            logger.debug("Actor %s moved from stage %s to %s", actor_id, previous.stage_slug, stage_slug)

        return Heartbeat(record=record, peers=self.query(stage_slug))

    def query(self, stage_slug: str) -> list[PresenceRecord]:
        """Non-expired records on ``stage_slug``, most recently seen first."""
        stage_slug = stage_slug.strip()
        peers = [r for r in self._records.values() if r.stage_slug == stage_slug]
        return sorted(peers, key=lambda r: r.updated_at, reverse=True)

    def sweep(self) -> int:
        """Eagerly drop expired records."""
        removed = self._records.sweep()
        if removed:
            logger.debug("Swept %d stale presence records", removed)
        return removed

    def active_count(self) -> int:
        return len(self._records)

    def reset(self) -> None:
        self._records.clear()
