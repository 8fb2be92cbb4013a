"""
In-process event bus fanning JSON events out to every open SSE subscription.

Delivery is best-effort and at-most-once per connected client: nothing is
persisted, and a client that was disconnected reconciles by re-fetching.
"""
import asyncio
import json
import logging
from typing import AsyncIterator, Optional

from clawchat.config import SSE_QUEUE_SIZE

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"


class EventType:
    """Values of the `type` field of every broadcast event."""
    MESSAGE = "message"
    DELETE = "delete"
    UPDATE = "update"
    APP_STATE_UPDATED = "appStateUpdated"
    AGENT_STATUS = "agentStatus"
    AGENT_STATE = "agentState"
    AGENT_TYPING = "agentTyping"  # legacy boolean form of agentState
    SCROLL_TO_MESSAGE = "scrollToMessage"
    WIDGET_ERROR = "widgetError"


def encode_event(event: dict) -> str:
    """Serialize one event as an SSE data frame."""
    return f"data: {json.dumps(event, separators=(',', ':'))}\n\n"


class Subscription:
    """
    One open output sink (a browser tab, a device, a standalone widget page).

    Frames are buffered in a bounded queue so `broadcast` never awaits a slow
    reader. A full queue counts as a failed write.
    """

    def __init__(self, bus: "EventBus", maxsize: int) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def send(self, frame: str) -> bool:
        """Queue a pre-encoded frame for this sink only. Returns False if the sink is unusable."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    def send_event(self, event: dict) -> bool:
        return self.send(encode_event(event))

    async def frames(self) -> AsyncIterator[str]:
        """Yield queued frames until the subscription is closed."""
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def _shutdown(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Reader is far behind; drop its backlog so it sees the end marker.
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(None)


class EventBus:
    """Owns the subscriber set. Construct one per server (or per test)."""

    def __init__(self, queue_size: int = SSE_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self._queue_size)
        self._subscribers.add(sub)
        logger.debug(f"SSE subscriber added ({len(self._subscribers)} open)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        """Remove a sink. Safe to call more than once."""
        if sub in self._subscribers:
            self._subscribers.discard(sub)
            logger.debug(f"SSE subscriber removed ({len(self._subscribers)} open)")
        sub._shutdown()

    def broadcast(self, event: dict) -> int:
        """Serialize `event` once and queue it on every open sink. Returns the delivery count."""
        frame = encode_event(event)
        delivered = 0
        for sub in list(self._subscribers):
            if sub.send(frame):
                delivered += 1
            else:
                logger.warning("Dropping SSE subscriber that cannot accept data")
                self.unsubscribe(sub)
        return delivered

    def heartbeat(self) -> None:
        for sub in list(self._subscribers):
            if not sub.send(HEARTBEAT_FRAME):
                self.unsubscribe(sub)

    async def run_heartbeat(self, interval: float) -> None:
        """Emit a keep-alive comment on every sink each `interval` seconds, forever."""
        while True:
            await asyncio.sleep(interval)
            self.heartbeat()

    def close_all(self) -> None:
        for sub in list(self._subscribers):
            self.unsubscribe(sub)
