from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from dragons_keep.api.routes import router
from dragons_keep.config import Settings, get_bind_address, load_settings
from dragons_keep.registry import SessionRegistry
from dragons_keep.websocket_hub import RoomHub

NAME = "dragons-keep"
VERSION = "0.1.0"

logger = logging.getLogger(__name__)


async def _evict_idle_rooms(registry: SessionRegistry, *, ttl_s: float, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        registry.evict_idle(ttl_s)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the hub application.

    The SessionRegistry and RoomHub are created by the lifespan and live on
    `app.state` until shutdown. Nothing is persisted: every room is gone when
    the process exits.
    """

    if settings is None:
        load_dotenv(override=False)
        settings = load_settings()

    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.registry = SessionRegistry(
            default_speed=settings.default_speed,
            sight_radius=settings.sight_radius,
            code_prefix=settings.code_prefix,
        )
        app.state.hub = RoomHub(max_pending=settings.outbox_size)

        evictor: asyncio.Task[None] | None = None
        if settings.room_idle_ttl_s:
            evictor = asyncio.create_task(
                _evict_idle_rooms(
                    app.state.registry,
                    ttl_s=settings.room_idle_ttl_s,
                    interval_s=settings.eviction_interval_s,
                )
            )
        logger.info("%s %s ready (default speed %.1f, rooms in memory only)", NAME, VERSION, settings.default_speed)
        try:
            yield
        finally:
            if evictor is not None:
                evictor.cancel()
                try:
                    await evictor
                except asyncio.CancelledError:
                    pass

    app = FastAPI(title=NAME, version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.include_router(router)

    @app.get("/")
    async def _root() -> dict[str, object]:
        return {"ok": True, "server": "Dragon's Keep Hub"}

    @app.get("/info")
    async def info() -> dict[str, str]:
        return {"name": NAME, "version": VERSION}

    return app


app = create_app()


def run() -> None:
    import uvicorn

    host, port = get_bind_address()
    uvicorn.run("dragons_keep.main:app", host=host, port=port)
