"""
Order Stream (Server-Sent Events)

Turns an outlet subscription on the order event broker into a
``text/event-stream`` body. The first frame is always a ``connection``
message so clients can tell the channel is open; idle periods produce
``: keep-alive`` comments that keep proxies from closing the socket.
"""

import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional

from app.schemas import StreamEventType, StreamMessage
from app.services.events import BaseOrderEventBroker

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keep-alive\n\n"


def format_sse(data: str, event: Optional[str] = None) -> str:
    """Frame one payload as an SSE event (multi-line data is split per line)."""
    lines = []
    if event:
        lines.append(f"event: {event}")
    lines.extend(f"data: {line}" for line in data.splitlines() or [""])
    return "\n".join(lines) + "\n\n"


async def order_event_stream(
    outlet_id: str,
    broker: BaseOrderEventBroker,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive_seconds: float = 15.0,
) -> AsyncIterator[str]:
    """Yield SSE frames for an outlet until the client goes away."""
    subscription = await broker.subscribe(outlet_id)
    logger.info(f"Stream opened for outlet {outlet_id} ({broker.provider_name})")
    try:
        hello = StreamMessage(
            type=StreamEventType.CONNECTION,
            message="Connected to order stream",
            timestamp=datetime.now(timezone.utc),
            outlet_id=outlet_id,
        )
        yield format_sse(hello.to_json())

        while not await is_disconnected():
            payload = await subscription.next_message(timeout=keepalive_seconds)
            if payload is None:
                yield KEEPALIVE_FRAME
                continue
            yield format_sse(payload)
    finally:
        await subscription.close()
        logger.info(f"Stream closed for outlet {outlet_id}")
