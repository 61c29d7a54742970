"""
FastAPI routes: live push channel (Server-Sent Events).

    GET    /api/sse/subscribe   — open a stream for the caller
    DELETE /api/sse/subscribe   — force-close every stream the caller holds
    GET    /api/sse/stats       — connection counts

Frames are `id:` / `event:` / `data:` with a JSON data line. A stream ends
when the client goes away, the connection lifetime elapses, or the registry
closes it. Clients reconnect.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from carewatch.app.alerts.models import Actor
from carewatch.app.alerts.registry import ConnectionRegistry, LiveConnection
from carewatch.app.api.deps import get_actor, get_container
from carewatch.app.container import AlertContainer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sse", tags=["live-push"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def event_stream(registry: ConnectionRegistry, conn: LiveConnection) -> AsyncIterator[str]:
    try:
        async for message in conn.messages():
            yield message.to_sse()
    finally:
        registry.remove(conn)
        logger.info(
            "SSE stream ended: user=%s conn=%s", conn.user_id, conn.id,
            extra={"user_id": conn.user_id},
        )


@router.get("/subscribe", summary="Open the caller's live push stream")
async def subscribe(
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
):
    conn = container.registry.subscribe(actor.user_id)
    return StreamingResponse(
        event_stream(container.registry, conn),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.delete("/subscribe", summary="Close every live stream the caller holds")
async def unsubscribe(
    actor: Actor = Depends(get_actor),
    container: AlertContainer = Depends(get_container),
):
    return {"userId": actor.user_id, "closed": container.registry.unsubscribe(actor.user_id)}


@router.get("/stats")
async def connection_stats(container: AlertContainer = Depends(get_container)):
    return container.registry.stats()
