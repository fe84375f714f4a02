"""Versioned stage state store: load and compare-and-swap save.

One row per (session_id, kind). Saves are optimistic: the caller submits the
version it last saw and the write lands only if that is still the stored
version. The check and the write are a single statement, so two racing
callers can never both succeed. A first save against a key that already
exists is refused before the insert is attempted; the insert still guards
against a racer that creates the row in between:

  first save   INSERT ... ON CONFLICT (session_id, kind) DO NOTHING RETURNING
  later saves  UPDATE ... WHERE version = :expected RETURNING

An empty RETURNING means the caller lost; the current version is read back
and reported in VersionConflict. Nothing is retried here.

All methods follow the session injection pattern: pass ``session`` to join
an outer transaction, omit it to run in (and commit) a fresh one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, NoReturn, TypeVar

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stagesync.state.errors import StateValidationError, StoreUnavailable, VersionConflict
from stagesync.state.registry import StateTypeRegistry, default_registry
from stagesync.state.schemas import StateHistoryEntry, StateRecord
from stagesync.storage.database import Database
from stagesync.storage.models import StageState, StageStateEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INSERT_BY_DIALECT = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _aware(dt: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


class VersionedStateStore:
    """Generic load / CAS save over the stage_states table."""

    def __init__(
        self,
        db: Database,
        registry: StateTypeRegistry | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.db = db
        self.registry = registry or default_registry()
        self.timeout = timeout
        try:
            self._insert = _INSERT_BY_DIALECT[db.dialect]
        except KeyError:
            raise ValueError(f"Unsupported database dialect for conditional upsert: {db.dialect}") from None

    # ------------------------------------------------------------------
    # load()
    # ------------------------------------------------------------------

    async def load(self, session_id: str, kind: str, session: AsyncSession | None = None) -> StateRecord | None:
        """Current document for (session_id, kind), or None if never saved."""
        entry = self.registry.get(kind)
        if session is None:

            async def _run() -> StateRecord | None:
                async with self.db.session() as s:
                    return await self._load(session_id, kind, s)

            return await self._guard(entry.name, entry.label, "load", _run)
        return await self._guard(entry.name, entry.label, "load", lambda: self._load(session_id, kind, session))

    async def _load(self, session_id: str, kind: str, session: AsyncSession) -> StateRecord | None:
        result = await session.execute(
            select(StageState).where(StageState.session_id == session_id).where(StageState.kind == kind)
        )
        row = result.scalars().first()
        if row is None:
            return None
        return self._to_record(row)

    # ------------------------------------------------------------------
    # save()
    # ------------------------------------------------------------------

    async def save(
        self,
        session_id: str,
        kind: str,
        payload: Any,
        expected_version: int,
        actor_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> StateRecord:
        """Compare-and-swap ``payload`` in at ``expected_version + 1``.

        Raises StateValidationError before touching the store, VersionConflict
        when ``expected_version`` is stale, StoreUnavailable on store faults.
        """
        entry = self.registry.get(kind)
        if isinstance(expected_version, bool) or not isinstance(expected_version, int) or expected_version < 0:
            raise StateValidationError(kind, entry.label, [{"loc": ["version"], "msg": "version must be an integer >= 0"}])
        document = entry.validate(payload)
        actor = actor_id or session_id

        if session is None:

            async def _run() -> StateRecord:
                async with self.db.session() as s:
                    record = await self._save(session_id, kind, document, expected_version, actor, s)
                    await s.commit()
                    return record

            record = await self._guard(entry.name, entry.label, "persist", _run)
        else:
            record = await self._guard(
                entry.name,
                entry.label,
                "persist",
                lambda: self._save(session_id, kind, document, expected_version, actor, session),
            )
        logger.debug("Saved %s state for session %s at version %d", kind, session_id, record.version)
        return record

    async def _save(
        self,
        session_id: str,
        kind: str,
        document: dict[str, Any],
        expected_version: int,
        actor_id: str,
        session: AsyncSession,
    ) -> StateRecord:
        now = datetime.now(UTC)

        if expected_version == 0:
            # Existing row: conflict without attempting the insert
            current = await self._current_version(session_id, kind, session)
            if current != 0:
                self._conflict(session_id, kind, expected_version, current)
            stmt = (
                self._insert(StageState)
                .values(session_id=session_id, kind=kind, state=document, version=1, updated_at=now)
                .on_conflict_do_nothing(index_elements=["session_id", "kind"])
                .returning(StageState.version)
            )
        else:
            stmt = (
                update(StageState)
                .where(StageState.session_id == session_id)
                .where(StageState.kind == kind)
                .where(StageState.version == expected_version)
                .values(state=document, version=StageState.version + 1, updated_at=now)
                .returning(StageState.version)
                .execution_options(synchronize_session=False)
            )

        result = await session.execute(stmt)
        new_version = result.scalar_one_or_none()

        if new_version is None:
            current = await self._current_version(session_id, kind, session)
            self._conflict(session_id, kind, expected_version, current)

        session.add(
            StageStateEvent(
                session_id=session_id,
                kind=kind,
                actor_id=actor_id,
                version=new_version,
                state=document,
                created_at=now,
            )
        )
        await session.flush()

        return StateRecord(
            session_id=session_id,
            kind=kind,
            payload=document,
            version=new_version,
            updated_at=now,
        )

    def _conflict(self, session_id: str, kind: str, expected_version: int, current: int) -> NoReturn:
        logger.info(
            "Version conflict on %s state for session %s: expected %d, stored %d",
            kind,
            session_id,
            expected_version,
            current,
        )
        raise VersionConflict(kind, current, self.registry.get(kind).label)

    async def _current_version(self, session_id: str, kind: str, session: AsyncSession) -> int:
        result = await session.execute(
            select(StageState.version).where(StageState.session_id == session_id).where(StageState.kind == kind)
        )
        return result.scalar_one_or_none() or 0

    # ------------------------------------------------------------------
    # history()
    # ------------------------------------------------------------------

    async def history(
        self,
        session_id: str,
        kind: str,
        limit: int = 20,
        session: AsyncSession | None = None,
    ) -> list[StateHistoryEntry]:
        """Accepted saves for (session_id, kind), newest first."""
        entry = self.registry.get(kind)
        if session is None:

            async def _run() -> list[StateHistoryEntry]:
                async with self.db.session() as s:
                    return await self._history(session_id, kind, limit, s)

            return await self._guard(entry.name, entry.label, "load", _run)
        return await self._guard(entry.name, entry.label, "load", lambda: self._history(session_id, kind, limit, session))

    async def _history(self, session_id: str, kind: str, limit: int, session: AsyncSession) -> list[StateHistoryEntry]:
        result = await session.execute(
            select(StageStateEvent)
            .where(StageStateEvent.session_id == session_id)
            .where(StageStateEvent.kind == kind)
            .order_by(StageStateEvent.version.desc())
            .limit(limit)
        )
        return [
            StateHistoryEntry(
                id=ev.id,
                session_id=ev.session_id,
                kind=ev.kind,
                actor_id=ev.actor_id,
                version=ev.version,
                state=ev.state,
                created_at=_aware(ev.created_at),
            )
            for ev in result.scalars()
        ]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _guard(self, kind: str, label: str, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Bound the storage round-trip and translate driver faults."""
        try:
            return await asyncio.wait_for(call(), timeout=self.timeout)
        except (SQLAlchemyError, OSError, TimeoutError) as e:
            logger.error("State store unavailable (%s %s): %r", operation, kind, e)
            raise StoreUnavailable(kind, operation, label) from e

    def _to_record(self, row: StageState) -> StateRecord:
        """Convert ORM StageState to StateRecord DTO."""
        return StateRecord(
            session_id=row.session_id,
            kind=row.kind,
            payload=row.state,
            version=row.version,
            updated_at=_aware(row.updated_at),
        )
