"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance with its own SubscriptionRegistry and BroadcastDispatcher on
app.state. Two apps never share relay state, so tests can build as many
isolated instances as they like.

Lifespan manages the background price simulator: started after startup,
stopped and awaited at shutdown.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from feedrelay import __version__
from feedrelay.api import api_router
from feedrelay.config import Settings, settings
from feedrelay.logging_config import configure_logging
from feedrelay.realtime import BroadcastDispatcher, SubscriptionRegistry

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs
    at shutdown.
    """
    config: Settings = app.state.settings
    logger.info(
        "feedrelay.starting",
        version=__version__,
        environment=config.environment,
        port=config.port,
    )

    simulator = None
    simulator_task = None
    if config.simulator_enabled:
        from feedrelay.feeds.simulator import PriceSimulator

        simulator = PriceSimulator.from_settings(app.state.dispatcher.publish, config)
        simulator_task = asyncio.create_task(simulator.run_loop())
        logger.info("feedrelay.simulator_started", feed_id=config.simulator_feed_id)

    yield

    # Shutdown
    logger.info("feedrelay.shutdown", connections=app.state.registry.connection_count())

    if simulator is not None:
        simulator.stop()
        simulator_task.cancel()
        try:
            await simulator_task
        except asyncio.CancelledError:
            pass


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Build and return the FastAPI application."""
    config = app_settings or settings
    configure_logging(config.log_level, json=config.log_json)

    app = FastAPI(
        title="Feed Relay",
        description="WebSocket publish/subscribe relay for live price feeds",
        version=__version__,
        lifespan=lifespan,
    )

    registry = SubscriptionRegistry()
    app.state.settings = config
    app.state.registry = registry
    app.state.dispatcher = BroadcastDispatcher(registry)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount API routes
    app.include_router(api_router)

    # Mount WebSocket route
    from feedrelay.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: feedrelay.main:app)
app = create_app()
