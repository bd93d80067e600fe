"""Server-Sent Events bridge for streaming events.

Each event is written as one ``data: <json>`` record.  A normal end of
stream is signalled by :data:`DONE_MARKER` and a cancelled one by a
``cancelled`` record, so a receiver that sees the connection close with
neither knows the transport was severed.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from palaver.cancellation import CancelToken
from palaver.events import CancelledEvent, StreamEvent

logger = logging.getLogger(__name__)

DONE_MARKER = "data: [DONE]\n\n"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(event: StreamEvent) -> str:
    """Frame one event as an SSE ``data:`` record."""
    return f"data: {json.dumps(event.to_dict(), default=str)}\n\n"


def encode_error(exc: BaseException) -> str:
    payload = {
        "type": "error",
        "message": str(exc) or type(exc).__name__,
        "code": getattr(exc, "code", None),
    }
    return f"data: {json.dumps(payload, default=str)}\n\n"


async def sse_generator(
    event_stream: AsyncIterator[StreamEvent],
    cancel_token: CancelToken | None = None,
) -> AsyncIterator[str]:
    """Convert an event iterator into SSE-formatted strings.

    If *cancel_token* fires, the stream ends with one ``cancelled`` record
    and no end-of-stream marker.  The source's own
    :class:`~palaver.events.CancelledEvent` is used when it is the next
    event; otherwise one is synthesized from the token.  An exception
    escaping the source is reported as a single error record, also without
    the marker.
    """
    try:
        async for event in event_stream:
            if isinstance(event, CancelledEvent):
                yield encode_event(event)
                return
            if cancel_token is not None and cancel_token.cancelled:
                yield encode_event(CancelledEvent(reason=cancel_token.reason))
                return
            yield encode_event(event)
    except Exception as e:
        logger.error(f"Event stream failed: {e}")
        yield encode_error(e)
        return
    finally:
        aclose = getattr(event_stream, "aclose", None)
        if aclose is not None:
            await aclose()
    if cancel_token is not None and cancel_token.cancelled:
        yield encode_event(CancelledEvent(reason=cancel_token.reason))
        return
    yield DONE_MARKER


async def watch_disconnect(
    is_disconnected: Callable[[], Awaitable[bool]],
    cancel_token: CancelToken,
    interval: float = 0.5,
) -> None:
    """Cancel *cancel_token* once *is_disconnected* reports true.

    Meant to run as a background task next to a streaming response, e.g.
    with Starlette's ``request.is_disconnected``.  Returns when the token
    is cancelled by anyone.
    """
    while not cancel_token.cancelled:
        if await is_disconnected():
            cancel_token.cancel("client disconnected")
            return
        try:
            await asyncio.wait_for(cancel_token.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
