"""
Message feed controller.

Keeps one chronologically ordered, locally coherent list of wire-shaped
messages while REST pages, live events and the user's own actions all feed
into it. Unchanged messages keep their object identity across merges so a
renderer can skip them.
"""
import asyncio
import logging
from typing import Any, Callable, Optional

import httpx

from clawchat.agent import IDLE, TYPING, is_busy
from clawchat.bus import EventType
from clawchat.config import AGENT_STATE_POLL_INTERVAL, SSE_RECONNECT_DELAY
from clawchat.sse_client import iter_sse
from clawchat.widget.host import BOTTOM_TOLERANCE, ScrollViewport

logger = logging.getLogger(__name__)


def merge_messages(prev: list[dict], fetched: list[dict]) -> list[dict]:
    """
    Adopt `fetched`, reusing the previously held object for every message whose
    content did not change. Returns `prev` itself when nothing changed at all.
    """
    if not prev:
        return fetched
    by_id = {m["id"]: m for m in prev}
    changed = len(prev) != len(fetched)
    result = []
    for m in fetched:
        existing = by_id.get(m["id"])
        if existing is not None and existing.get("content") == m.get("content"):
            result.append(existing)
            continue
        changed = True
        result.append(m)
    return result if changed else prev


def reconcile(prev: list[dict], fetched: list[dict]) -> list[dict]:
    """
    Merge a fresh newest-page fetch into the held list. Messages older than
    the fetched window that are still held (scroll-loaded history) are kept in
    front.
    """
    if not prev:
        return fetched
    fetched_ids = {m["id"] for m in fetched}
    oldest = fetched[0]["createdAt"] if fetched else ""
    older_kept = [m for m in prev if m["createdAt"] < oldest and m["id"] not in fetched_ids]
    merged = merge_messages(prev, fetched)
    return older_kept + merged if older_kept else merged


def is_internal(message: dict) -> bool:
    return message.get("role") == "agent" and message.get("type", "message") != "message"


def group_internal(messages: list[dict]) -> list[tuple[str, Any]]:
    """
    Collapse runs of consecutive internal work messages (thoughts, tool
    traffic) into one group for display: [("message", m) | ("internal", [m, ...])].
    """
    groups: list[tuple[str, Any]] = []
    for m in messages:
        if is_internal(m):
            if groups and groups[-1][0] == "internal":
                groups[-1][1].append(m)
            else:
                groups.append(("internal", [m]))
        else:
            groups.append(("message", m))
    return groups


class ScrollTracker:
    """
    Auto-scroll policy. After a change the feed follows the bottom only when it
    was already at the bottom and the initial load is done; `force` overrides.
    """

    def __init__(self, viewport: ScrollViewport, tolerance: float = BOTTOM_TOLERANCE) -> None:
        self.viewport = viewport
        self.tolerance = tolerance
        self.ready = False
        self.pinned = True

    def on_scroll(self) -> None:
        self.pinned = self.viewport.at_bottom(self.tolerance)

    def on_change(self, force: bool = False) -> bool:
        """Call after the list or the busy indicator changed. Returns True if it scrolled."""
        if force or (self.ready and self.pinned):
            self.viewport.scroll_to_bottom()
            self.pinned = True
            return True
        return False


class PrependAnchor:
    """
    Keep the first visible message in place while older messages are inserted
    above it: `anchor_top` reports that element's on-screen top (or None).

        with PrependAnchor(viewport, lambda: layout.top_of(first_id)):
            feed.prepend(older)
    """

    def __init__(self, viewport: ScrollViewport, anchor_top: Callable[[], Optional[float]]) -> None:
        self.viewport = viewport
        self._anchor_top = anchor_top
        self._before: Optional[float] = None

    def __enter__(self) -> "PrependAnchor":
        self._before = self._anchor_top()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None or self._before is None:
            return
        after = self._anchor_top()
        if after is not None:
            self.viewport.scroll_top += after - self._before


class FeedState:
    """The client-side view: messages plus agent connectivity and work state."""

    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.has_more = False
        self.agent_connected: Optional[bool] = None
        self.agent_state = IDLE
        self.toast: Optional[str] = None
        self.scroll_target: Optional[str] = None
        self.app_state_listeners: list[Callable[[str, str], Any]] = []

    @property
    def agent_busy(self) -> bool:
        return is_busy(self.agent_state)

    def index_of(self, message_id: str) -> int:
        for i, m in enumerate(self.messages):
            if m["id"] == message_id:
                return i
        return -1

    def prepend(self, older: list[dict]) -> None:
        held = {m["id"] for m in self.messages}
        self.messages = [m for m in older if m["id"] not in held] + self.messages

    def apply_event(self, event: dict) -> bool:
        """Apply one live event. Returns True when the message list or busy indicator changed."""
        etype = event.get("type")

        if etype == EventType.MESSAGE:
            msg = event["message"]
            if self.index_of(msg["id"]) >= 0:
                return False
            self.messages = self.messages + [msg]
            return True

        if etype == EventType.DELETE:
            kept = [m for m in self.messages if m["id"] != event.get("id")]
            changed = len(kept) != len(self.messages)
            self.messages = kept
            return changed

        if etype == EventType.UPDATE:
            msg = event["message"]
            i = self.index_of(msg["id"])
            if i < 0:
                return False
            self.messages = self.messages[:i] + [msg] + self.messages[i + 1:]
            return True

        if etype == EventType.AGENT_STATUS:
            was_connected = self.agent_connected
            connected = bool(event.get("connected"))
            self.agent_connected = connected
            if connected and not was_connected:
                self.toast = "Agent connected"
            elif not connected and (was_connected or event.get("error")):
                self.toast = f"Agent offline: {event.get('error') or 'Connection failed'}"
            return False

        if etype in (EventType.AGENT_STATE, EventType.AGENT_TYPING):
            was_busy = self.agent_busy
            if etype == EventType.AGENT_STATE:
                self.agent_state = event.get("state") or IDLE
            else:
                self.agent_state = TYPING if event.get("active") else IDLE
            return was_busy != self.agent_busy

        if etype == EventType.SCROLL_TO_MESSAGE:
            self.scroll_target = event.get("messageId")
            return False

        if etype == EventType.APP_STATE_UPDATED:
            for listener in list(self.app_state_listeners):
                listener(event.get("conversationId"), event.get("appId"))
            return False

        return False


class FeedClient:
    """
    Drives a FeedState from a running server: initial load, paging, user
    actions, and the live event stream with reconnect-and-refetch.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        state: Optional[FeedState] = None,
        tracker: Optional[ScrollTracker] = None,
        reconnect_delay: float = SSE_RECONNECT_DELAY,
        poll_interval: Optional[float] = AGENT_STATE_POLL_INTERVAL,
    ) -> None:
        self.client = client
        self.state = state or FeedState()
        self.tracker = tracker
        self.reconnect_delay = reconnect_delay
        self.poll_interval = poll_interval
        self.connections = 0

    def _changed(self, force: bool = False) -> None:
        if self.tracker is not None:
            self.tracker.on_change(force=force)

    async def _page(self, **params) -> Optional[dict]:
        res = await self.client.get("/api/messages", params={k: v for k, v in params.items() if v})
        if not res.is_success:
            logger.warning(f"Message fetch failed: HTTP {res.status_code}")
            return None
        return res.json()

    async def load(self, around: Optional[str] = None) -> None:
        data = await self._page(around=around)
        if data is None:
            return
        self.state.messages = data["messages"]
        self.state.has_more = data["hasMore"]
        if around is None:
            self._changed(force=True)
        if self.tracker is not None:
            self.tracker.ready = True
        if around is None:
            await self.poll_agent_state()

    async def poll_agent_state(self) -> None:
        """
        Re-read the agent's work state. agentState events sent while the stream
        was down are lost, and an interrupted turn may never report idle.
        """
        try:
            res = await self.client.get("/api/agent/state")
        except httpx.HTTPError as e:
            logger.info(f"Agent state poll failed: {e}")
            return
        if not res.is_success:
            return
        try:
            data = res.json()
        except ValueError:
            return
        was_busy = self.state.agent_busy
        self.state.agent_state = (data.get("state") if isinstance(data, dict) else None) or IDLE
        if was_busy != self.state.agent_busy:
            self._changed()

    async def refresh(self) -> None:
        """Full re-fetch merged into what is held."""
        data = await self._page()
        if data is None:
            return
        merged = reconcile(self.state.messages, data["messages"])
        changed = merged is not self.state.messages
        self.state.messages = merged
        self.state.has_more = data["hasMore"]
        if changed:
            self._changed()

    async def load_older(self, anchor: Optional[PrependAnchor] = None) -> int:
        if not self.state.has_more or not self.state.messages:
            return 0
        data = await self._page(before=self.state.messages[0]["createdAt"])
        if data is None:
            return 0
        if data["messages"]:
            if anchor is not None:
                with anchor:
                    self.state.prepend(data["messages"])
            else:
                self.state.prepend(data["messages"])
        self.state.has_more = data["hasMore"]
        return len(data["messages"])

    async def jump_to(self, message_id: str) -> None:
        """Bring a message into the held window, loading around it when it is not held."""
        if self.state.index_of(message_id) < 0:
            await self.load(around=message_id)
        self.state.scroll_target = message_id

    # ── user actions ──────────────────────────

    async def send(self, content: str) -> dict:
        res = await self.client.post("/api/messages", json={"content": content})
        res.raise_for_status()
        self._changed(force=True)
        return res.json()

    async def edit(self, message_id: str, content: str) -> dict:
        res = await self.client.patch(f"/api/messages/{message_id}", json={"content": content})
        res.raise_for_status()
        return res.json()

    async def delete(self, message_id: str) -> None:
        res = await self.client.delete(f"/api/messages/{message_id}")
        res.raise_for_status()

    async def forget_from(self, message_id: str) -> list[str]:
        res = await self.client.post("/api/forget/from", json={"messageId": message_id})
        data = res.json()
        if not res.is_success:
            self.state.toast = data.get("error") or "Failed to forget"
            return []
        return data.get("deleted", [])

    async def stop(self) -> None:
        try:
            await self.client.post("/api/stop")
        except httpx.HTTPError as e:
            logger.warning(f"Stop request failed: {e}")
        self.state.toast = "Stopped"

    # ── live stream ───────────────────────────

    async def handle_event(self, event: dict) -> None:
        if self.state.apply_event(event):
            self._changed()
        if event.get("type") == EventType.SCROLL_TO_MESSAGE and event.get("messageId"):
            await self.jump_to(event["messageId"])

    async def run(self, max_connections: Optional[int] = None) -> None:
        """
        Follow the event stream forever (or for `max_connections` connections).
        Every reconnect re-fetches messages and agent state first, since events
        sent while disconnected are lost.
        """
        poller = asyncio.create_task(self._poll_loop()) if self.poll_interval else None
        try:
            while max_connections is None or self.connections < max_connections:
                if self.connections > 0:
                    try:
                        await self.refresh()
                    except httpx.HTTPError as e:
                        logger.warning(f"Refresh after reconnect failed: {e}")
                    await self.poll_agent_state()
                self.connections += 1
                try:
                    async for event in iter_sse(self.client):
                        await self.handle_event(event)
                except httpx.HTTPError as e:
                    logger.info(f"Event stream dropped: {e}")
                if max_connections is not None and self.connections >= max_connections:
                    break
                await asyncio.sleep(self.reconnect_delay)
        finally:
            if poller is not None:
                poller.cancel()

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.poll_agent_state()
