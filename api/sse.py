"""Server-sent events helpers."""
import asyncio
import json
from typing import AsyncIterator, Optional, TypeVar

from fastapi.responses import StreamingResponse

T = TypeVar("T")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_event(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def sse_response(stream: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(stream, media_type="text/event-stream", headers=SSE_HEADERS)


async def with_heartbeat(source: AsyncIterator[T], interval: float) -> AsyncIterator[Optional[T]]:
    """Re-yield ``source``, yielding None whenever ``interval`` passes without an item."""
    iterator = source.__aiter__()
    pending = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=interval)
            if not done:
                yield None
                continue
            finished, pending = pending, None
            try:
                item = finished.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        # the read in flight must not outlive the consumer
        if pending is not None:
            pending.cancel()
