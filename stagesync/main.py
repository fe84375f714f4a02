"""stagesync entry point.

Initializes all components and starts the server:
  Settings -> Database -> VersionedStateStore + PresenceTracker -> App -> Uvicorn

Uses Starlette lifespan so the connection check and migrations run on the
same event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from stagesync.api.rest import create_app
from stagesync.config import Settings
from stagesync.presence import PresenceTracker
from stagesync.state import VersionedStateStore, default_registry
from stagesync.storage.database import Database
from stagesync.storage.migrator import run_migrations

logger = logging.getLogger(__name__)


def create_components(settings: Settings) -> dict:
    """Build all components in dependency order.

    Nothing here touches the network; the database is connected in lifespan.
    """
    database = Database(settings)
    store = VersionedStateStore(database, default_registry(), timeout=settings.db_timeout)
    presence = PresenceTracker(ttl_seconds=settings.presence_ttl_seconds)
    return {"database": database, "store": store, "presence": presence}


def build_app(settings: Settings, components: dict | None = None) -> Starlette:
    """Build the ASGI app; ``components`` may be injected for tests."""
    components = components or create_components(settings)
    database: Database = components["database"]

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await database.connect()
        applied = await run_migrations(database.engine)
        if applied:
            logger.info("Applied %d migration(s) on startup", len(applied))
        app.state.components = components
        logger.info("stagesync ready (kinds: %s)", ", ".join(components["store"].registry.names()))
        try:
            yield
        finally:
            await database.disconnect()
            logger.info("stagesync shut down")

    return create_app(
        components["store"],
        components["presence"],
        database,
        settings,
        lifespan=lifespan,
    )


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if settings.database_url:
        logger.info("Database: DATABASE_URL override")
    else:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)
    logger.info("Presence TTL: %ss", settings.presence_ttl_seconds)

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
