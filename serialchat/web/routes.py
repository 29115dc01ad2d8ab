"""HTTP routes: post a chat message, stream chat events, health."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from ..models import Message
from ..services.relay import MessageStream, RelayService

router = APIRouter(tags=["chat"])

EVENT_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


def get_relay(request: Request) -> RelayService:
    return request.app.state.relay


def get_shutdown(request: Request) -> asyncio.Event:
    return request.app.state.shutdown


async def _event_source(stream: MessageStream) -> AsyncIterator[bytes]:
    async with stream:
        async for message in stream:
            yield b"data: " + message.to_json() + b"\n\n"


class EventStreamResponse(StreamingResponse):
    """SSE response that owns its stream and releases it however it ends.

    The subscription exists before the body iterator first runs, so it is
    closed here too, even when the response is cancelled before any chunk.
    """

    media_type = "text/event-stream"

    def __init__(self, stream: MessageStream) -> None:
        super().__init__(_event_source(stream), headers=EVENT_STREAM_HEADERS)
        self.stream = stream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.stream.aclose()


@router.post("/message")
async def post_message(request: Request, relay: RelayService = Depends(get_relay)) -> dict:
    form = await request.form()
    message = Message.from_form(form)
    delivered = await relay.publish(message)
    return {"status": "accepted", "delivered": delivered}


@router.get("/events")
async def events(
    request: Request,
    relay: RelayService = Depends(get_relay),
    shutdown: asyncio.Event = Depends(get_shutdown),
) -> EventStreamResponse:
    # Subscribe before the response starts so nothing published after the
    # request arrived is missed.
    stream = relay.open_stream(shutdown, is_disconnected=request.is_disconnected)
    return EventStreamResponse(stream)


@router.get("/healthz", tags=["health"])
async def healthz(relay: RelayService = Depends(get_relay)) -> dict:
    return {"status": "ok", "subscribers": relay.subscriber_count}
