"""
In-process publish/subscribe over server-sent events.

Admin browser tabs hold a long-lived ``GET /api/events`` stream; routes that
change state call ``bus.broadcast(...)`` and every connected tab receives a
frame and re-fetches. Delivery is best effort and at most once: nothing is
stored, so a subscriber that connects later never sees earlier frames.
"""

import asyncio
import json
import logging
import threading
import time
from typing import Any, AsyncIterator, Dict, Optional, Set

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .config import Config

logger = logging.getLogger(__name__)

RETRY_MS = 3000
SUBSCRIBER_QUEUE_SIZE = 100


def now_ms() -> int:
    return int(time.time() * 1000)


def format_frame(event_type: str, payload: Optional[Dict[str, Any]] = None) -> str:
    data = json.dumps({"type": event_type, "payload": payload or {}, "ts": now_ms()}, default=str)
    return f"event: message\ndata: {data}\n\n"


class Subscriber:
    """One open event stream. Owned by the connection handler that created it.

    The queue is bounded; a subscriber that stops reading loses new frames
    instead of growing without limit.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = SUBSCRIBER_QUEUE_SIZE):
        self.loop = loop
        self.queue: "asyncio.Queue[str]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def deliver(self, frame: str) -> None:
        # broadcast may run on a threadpool worker
        self.loop.call_soon_threadsafe(self._offer, frame)

    def _offer(self, frame: str) -> None:
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("Subscriber queue full, dropping frame (%d dropped)", self.dropped)


class EventBus:
    def __init__(self, heartbeat_interval: float = 15.0, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.heartbeat_interval = heartbeat_interval
        self.queue_size = queue_size
        self._subscribers: Set[Subscriber] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscriber:
        sub = Subscriber(asyncio.get_running_loop(), self.queue_size)
        with self._lock:
            self._subscribers.add(sub)
        logger.debug("Event subscriber connected (%d open)", len(self))
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        with self._lock:
            self._subscribers.discard(sub)
        logger.debug("Event subscriber disconnected (%d open)", len(self))

    def broadcast(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> int:
        frame = format_frame(event_type, payload)
        with self._lock:
            targets = list(self._subscribers)
        delivered = 0
        for sub in targets:
            try:
                sub.deliver(frame)
                delivered += 1
            except RuntimeError:
                # loop already closed; the handler's finally block will unsubscribe
                logger.debug("Dropping frame for closed subscriber")
        return delivered

    async def stream(self) -> AsyncIterator[str]:
        """Frames for one connection; the subscription lives exactly as long as the generator."""
        sub = self.subscribe()
        try:
            yield f"retry: {RETRY_MS}\n\n"
            while True:
                try:
                    frame = await asyncio.wait_for(sub.queue.get(), timeout=self.heartbeat_interval)
                except asyncio.TimeoutError:
                    yield f": keep-alive {now_ms()}\n\n"
                    continue
                yield frame
        finally:
            self.unsubscribe(sub)


bus = EventBus(heartbeat_interval=Config.SSE_HEARTBEAT_SECONDS)


def get_event_bus() -> EventBus:
    return bus


# ----------------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------------

router = APIRouter(prefix="/api", tags=["events"])


class ActivityRequest(BaseModel):
    type: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


@router.get("/events")
async def events(event_bus: EventBus = Depends(get_event_bus)):
    return StreamingResponse(
        event_bus.stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.post("/activity")
def activity(body: ActivityRequest, event_bus: EventBus = Depends(get_event_bus)):
    if not body.type:
        raise HTTPException(status_code=400, detail="type required")
    event_bus.broadcast(body.type, body.payload or {})
    return {"ok": True}
