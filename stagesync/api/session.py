"""Session context extraction.

The session key is an opaque identifier already validated upstream; this
module only reads it off the request and fails closed when it is missing.
The actor id names who is writing or heartbeating and falls back to the
session key; heartbeats without either header fall back to the client address.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from stagesync.state.errors import SessionMissing

SESSION_HEADER = "x-session-key"
ACTOR_HEADER = "x-actor-id"


@dataclass(frozen=True)
class SessionContext:
    session_id: str
    actor_id: str


class SessionContextResolver:
    def __init__(self, session_header: str = SESSION_HEADER, actor_header: str = ACTOR_HEADER) -> None:
        self.session_header = session_header.lower()
        self.actor_header = actor_header.lower()

    def resolve(self, headers: Mapping[str, str]) -> SessionContext:
        """Return the request's session context or raise SessionMissing.

        ``headers`` must be case-insensitive (Starlette's Headers is).
        """
        session_id = (headers.get(self.session_header) or "").strip()
        if not session_id:
            raise SessionMissing()
        actor_id = (headers.get(self.actor_header) or "").strip() or session_id
        return SessionContext(session_id=session_id, actor_id=actor_id)

    def actor(self, headers: Mapping[str, str], fallback: str | None = None) -> str:
        """Actor id for presence.

        Actor header, else session key, else ``fallback`` (the client address
        for anonymous heartbeats), else SessionMissing.
        """
        actor_id = (headers.get(self.actor_header) or "").strip()
        if actor_id:
            return actor_id
        session_id = (headers.get(self.session_header) or "").strip()
        if session_id:
            return session_id
        if fallback and fallback.strip():
            return fallback.strip()
        raise SessionMissing()
