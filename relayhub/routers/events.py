from fastapi import APIRouter
from fastapi.responses import StreamingResponse
import asyncio, json
import logging
from typing import Dict, Any, Set, Tuple

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/events", tags=["events"])

# (loop, queue) per connected client; publishers may run in worker threads
_subscribers: Set[Tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = set()

async def _event_stream():
    queue: asyncio.Queue = asyncio.Queue()
    subscriber = (asyncio.get_running_loop(), queue)
    _subscribers.add(subscriber)
    try:
        yield f"data: {json.dumps({'type': 'connected'})}\n\n"
        while True:
            data = await queue.get()
            yield f"data: {json.dumps(data, default=str)}\n\n"
    finally:
        _subscribers.discard(subscriber)

@router.get("/sse")
async def sse():
    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(_event_stream(), media_type="text/event-stream", headers=headers)

def publish_event(event: Dict[str, Any]):
    """Fan an event out to every SSE client; safe to call from any thread"""
    for loop, queue in list(_subscribers):
        try:
            loop.call_soon_threadsafe(queue.put_nowait, event)
        except RuntimeError:
            # client loop already closed
            _subscribers.discard((loop, queue))
            logger.debug("Dropped SSE subscriber with closed loop")
