"""FastAPI application factory for the chat relay."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Response
from fastapi.staticfiles import StaticFiles

from .. import __version__
from ..config.settings import RuntimeConfig
from ..metrics import CONTENT_TYPE_LATEST, RelayMetrics
from ..services.relay import RelayService
from . import routes
from .errors import setup_error_handlers

logger = logging.getLogger("serialchat.web")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("Web application started")
    yield
    # Streams still open at this point end on their next step.
    app.state.shutdown.set()
    logger.info("Web application stopped")


def create_app(
    relay: RelayService,
    shutdown: asyncio.Event,
    config: RuntimeConfig,
    metrics: RelayMetrics | None = None,
) -> FastAPI:
    app = FastAPI(
        title="serialchat",
        description="Chat relay between browsers and a serial-attached board",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.relay = relay
    app.state.shutdown = shutdown
    app.state.config = config

    setup_error_handlers(app)
    app.include_router(routes.router)

    if metrics is not None and config.metrics_enabled:
        app.state.metrics = metrics

        @app.get("/metrics", include_in_schema=False)
        async def prometheus_metrics() -> Response:
            return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    # Mounted last: "/" would shadow every route registered after it.
    static_dir = Path(config.static_dir)
    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")
    else:
        logger.warning("Static directory %s not found; chat UI not served", static_dir)

    return app
