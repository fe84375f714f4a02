"""REST API for stage state synchronization.

Endpoints:
  GET  /state/{kind}           - Current document (null if never saved)
  PUT  /state/{kind}           - Compare-and-swap save (body: payload + version)
  GET  /history/{kind}         - Accepted saves, newest first
  GET  /{kind}-state           - Alias of GET /state/{kind}
  PUT  /{kind}-state           - Alias of PUT /state/{kind}
  POST /presence/heartbeat     - Record presence, get stage peers
  GET  /presence?stage=slug    - Peers active on a stage
  GET  /health                 - Health check (DB connectivity)

State and history endpoints require the session key header.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from stagesync.api.session import SessionContextResolver
from stagesync.config import Settings
from stagesync.presence import PresenceTracker
from stagesync.state import ConflictResolver, Resolution, StateSyncError, VersionedStateStore
from stagesync.storage.database import Database

logger = logging.getLogger(__name__)


def _respond(resolution: Resolution) -> JSONResponse:
    return JSONResponse(resolution.body, status_code=resolution.status_code)


def create_app(
    store: VersionedStateStore,
    presence: PresenceTracker,
    database: Database,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    sessions = SessionContextResolver(settings.session_header, settings.actor_header)
    resolver = ConflictResolver()
    registry = store.registry

    async def get_state(request: Request) -> JSONResponse:
        """GET /state/{kind} - Current document for the caller's session."""
        kind = request.path_params["kind"]
        try:
            entry = registry.get(kind)
            ctx = sessions.resolve(request.headers)
            record = await store.load(ctx.session_id, entry.name)
        except StateSyncError as e:
            return _respond(resolver.failure(e))

        if record is None and request.query_params.get("fallback") == "empty":
            return _respond(resolver.empty_document(entry.empty_document()))
        return _respond(resolver.document(record))

    async def put_state(request: Request) -> JSONResponse:
        """PUT /state/{kind} - Save if the submitted version is current."""
        kind = request.path_params["kind"]
        try:
            entry = registry.get(kind)
            ctx = sessions.resolve(request.headers)
        except StateSyncError as e:
            return _respond(resolver.failure(e))

        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"message": "Invalid JSON body"}, status_code=400)

        if not isinstance(body, dict) or "version" not in body:
            return JSONResponse({"message": f"Invalid {entry.label} payload"}, status_code=400)

        payload = {k: v for k, v in body.items() if k not in ("version", "updatedAt")}
        try:
            record = await store.save(
                ctx.session_id,
                entry.name,
                payload,
                expected_version=body["version"],
                actor_id=ctx.actor_id,
            )
        except StateSyncError as e:
            return _respond(resolver.failure(e))
        return _respond(resolver.document(record))

    async def get_history(request: Request) -> JSONResponse:
        """GET /history/{kind}?limit=20 - Change history for the caller's session."""
        kind = request.path_params["kind"]
        try:
            limit = int(request.query_params.get("limit", str(settings.history_default_limit)))
        except ValueError:
            return JSONResponse({"message": "limit must be an integer"}, status_code=400)
        limit = min(max(limit, 1), settings.history_max_limit)

        try:
            entry = registry.get(kind)
            ctx = sessions.resolve(request.headers)
            entries = await store.history(ctx.session_id, entry.name, limit=limit)
        except StateSyncError as e:
            return _respond(resolver.failure(e))
        return _respond(resolver.history(entries))

    async def heartbeat(request: Request) -> JSONResponse:
        """POST /presence/heartbeat - Mark the caller present on a stage."""
        try:
            client_host = request.client.host if request.client else None
            actor_id = sessions.actor(request.headers, fallback=client_host)
        except StateSyncError as e:
            return _respond(resolver.failure(e))

        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"message": "Invalid JSON body"}, status_code=400)

        stage_slug = body.get("stageSlug") if isinstance(body, dict) else None
        if not isinstance(stage_slug, str) or not stage_slug.strip():
            return JSONResponse({"message": "Missing stageSlug"}, status_code=400)

        beat = presence.heartbeat(actor_id, stage_slug)
        return JSONResponse(beat.to_dict())

    async def list_presence(request: Request) -> JSONResponse:
        """GET /presence?stage=slug - Peers on a stage."""
        stage_slug = (request.query_params.get("stage") or "").strip()
        if not stage_slug:
            return JSONResponse({"message": "Missing stage query parameter"}, status_code=400)
        return JSONResponse([r.to_dict() for r in presence.query(stage_slug)])

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy", "kinds": registry.names(), "presence": presence.active_count()})
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return JSONResponse({"status": "unhealthy"}, status_code=503)

    routes = [
        Route("/state/{kind}", get_state, methods=["GET"]),
        Route("/state/{kind}", put_state, methods=["PUT"]),
        Route("/history/{kind}", get_history),
        Route("/presence/heartbeat", heartbeat, methods=["POST"]),
        Route("/presence", list_presence),
        Route("/health", health),
        Route("/{kind}-state", get_state, methods=["GET"]),
        Route("/{kind}-state", put_state, methods=["PUT"]),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
