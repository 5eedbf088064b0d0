from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from headscale_admin.dependencies import ConsoleServices, get_services, require_principal
from headscale_admin.identity import Principal
from headscale_admin.services.push import PushRelay, Subscription

router = APIRouter(prefix="/api", tags=["events"])

KEEP_ALIVE_FRAME = ": keep-alive\n\n"


async def relay_frames(
    relay: PushRelay,
    subscription: Subscription,
    *,
    keepalive_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> AsyncIterator[str]:
    """Yield SSE frames for one viewer until it leaves or the relay stops."""
    try:
        yield ": connected\n\n"
        while subscription.active:
            if await is_disconnected():
                break
            message = await subscription.next_message(keepalive_seconds)
            if message is None:
                if not subscription.active:
                    break
                yield KEEP_ALIVE_FRAME
                continue
            yield message.encode()
    finally:
        relay.unsubscribe(subscription)


@router.get("/realtime")
async def realtime(
    request: Request,
    principal: Principal = Depends(require_principal),
    services: ConsoleServices = Depends(get_services),
) -> StreamingResponse:
    relay = services.relay
    subscription = relay.subscribe(principal.name)
    frames = relay_frames(
        relay,
        subscription,
        keepalive_seconds=services.settings.push_keepalive_seconds,
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
