from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import List, Optional
import asyncio
import os

from backend import SnapshotStore
from constants import (
    CORS_ORIGINS,
    RELAY_MAX_PENDING,
    RELAY_WRITE_THROUGH,
    REDIS_URL,
    ROOM_TTL_SECONDS,
    SWEEP_INTERVAL_SECONDS,
)
from logging_config import get_logger, setup_logging
from registry import RoomRegistry
from relay import RelayBroker
from routers.rooms import rooms_router
from schemas.rooms import HealthResponse

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(
    redis_url: Optional[str] = REDIS_URL,
    ttl_seconds: int = ROOM_TTL_SECONDS,
    write_through: bool = RELAY_WRITE_THROUGH,
    max_pending: int = RELAY_MAX_PENDING,
    sweep_interval: float = SWEEP_INTERVAL_SECONDS,
    cors_origins: Optional[List[str]] = None,
) -> FastAPI:
    """Build the relay application.

    The snapshot store, room registry and relay broker are created per
    application in the lifespan handler and kept on ``app.state``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = await SnapshotStore.connect(redis_url, ttl_seconds)
        registry = RoomRegistry()
        app.state.store = store
        app.state.registry = registry
        app.state.broker = RelayBroker(registry, store, write_through=write_through, max_pending=max_pending)
        sweeper = asyncio.create_task(store.run_sweeper(sweep_interval))
        logger.info(f"Room relay started (store: {store.backend_name}, degraded: {store.degraded})")
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            await store.close()
            logger.info("Room relay stopped")

    app = FastAPI(title="Room Relay", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins if cors_origins is not None else CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        store = app.state.store
        registry = app.state.registry
        return HealthResponse(
            status="ok",
            store=store.backend_name,
            degraded=store.degraded,
            live_rooms=registry.room_count,
            live_connections=registry.connection_count,
        )

    @app.websocket("/")
    @app.websocket("/ws")
    async def relay_endpoint(websocket: WebSocket, code: Optional[str] = None):
        """Live relay for one room.

        Query parameters:
        - code: Required room code; the connection is refused without it
        """
        await app.state.broker.handle(websocket, code)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
