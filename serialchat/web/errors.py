from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..errors import HubClosedError, MessageValidationError

logger = logging.getLogger("serialchat.web")


def setup_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MessageValidationError)
    async def _invalid_message(_: Request, exc: MessageValidationError) -> JSONResponse:
        logger.info("Rejected chat message: %s", exc.message)
        return JSONResponse(status_code=422, content={"detail": exc.message})

    @app.exception_handler(HubClosedError)
    async def _hub_closed(_: Request, exc: HubClosedError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": "relay is shutting down"})
