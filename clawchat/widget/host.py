"""
Host side of the widget protocol.

A WidgetHost owns one sandboxed frame: it accepts messages only from that
frame's content window, validates them, forwards state and action calls to a
WidgetBackend, and resizes the frame while keeping the feed's scroll position
visually stable. Any fault while handling one message is reported through the
error channel and never escapes into the caller.
"""
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from clawchat.db.models import DEFAULT_CONVERSATION
from clawchat.widget.backend import WidgetBackend
from clawchat.widget.protocol import (
    GetState, SetState, Resize, Request, WidgetError,
    State, Response, StateUpdated,
    WidgetProtocolError, parse_widget_message,
)

logger = logging.getLogger(__name__)

MIN_HEIGHT = 60
MAX_HEIGHT = 5000
DEFAULT_HEIGHT = 100
PRELOAD_MARGIN = 500      # px around the viewport within which widgets are rendered
BOTTOM_TOLERANCE = 50     # px from the end that still counts as "at bottom"

# Scroll adjustments chosen for a resize
NO_ADJUST = "none"
OFFSET = "offset"
PIN_BOTTOM = "pin"


@dataclass
class Rect:
    """Vertical extent in viewport (client) coordinates."""
    top: float
    bottom: float


@dataclass
class ScrollViewport:
    """The message feed's scroll container."""
    scroll_top: float = 0.0
    client_height: float = 0.0
    scroll_height: float = 0.0
    top: float = 0.0

    @property
    def center(self) -> float:
        return self.top + self.client_height / 2

    def at_bottom(self, tolerance: float = BOTTOM_TOLERANCE) -> bool:
        return self.scroll_top + self.client_height >= self.scroll_height - tolerance

    def scroll_to_bottom(self) -> None:
        self.scroll_top = max(0.0, self.scroll_height - self.client_height)


def scroll_adjustment(viewport: ScrollViewport, element: Rect, delta: float) -> str:
    """
    Decide how to keep the view stable when `element` changes height by `delta`.
    Must be evaluated before the new height is applied.

    - feed at (or near) bottom: re-pin to bottom once the resize is applied
    - element entirely above the viewport centre: shift scroll by `delta`
    - otherwise (including an element straddling the centre line): leave it
    """
    if delta == 0:
        return NO_ADJUST
    if viewport.at_bottom():
        return PIN_BOTTOM
    if element.bottom < viewport.center:
        return OFFSET
    return NO_ADJUST


def clamp_height(height: Any) -> Optional[int]:
    """Clamp a reported height into [MIN_HEIGHT, MAX_HEIGHT]; None for NaN, infinities or negatives."""
    if isinstance(height, bool) or not isinstance(height, (int, float)):
        return None
    if isinstance(height, float) and (math.isnan(height) or math.isinf(height)):
        return None
    if height < 0:
        return None
    return int(min(max(math.ceil(height), MIN_HEIGHT), MAX_HEIGHT))


class WidgetFrame:
    """
    A sandboxed frame as seen by the host. `content_window` is the identity
    token the frame's messages arrive with; `post` delivers host messages in.
    """

    def __init__(self, post: Callable[[dict], Any], top: float = 0.0, height: int = DEFAULT_HEIGHT) -> None:
        self.content_window = object()
        self._post = post
        self.top = top
        self.height = height

    @property
    def rect(self) -> Rect:
        return Rect(self.top, self.top + self.height)

    def post_message(self, message: dict) -> None:
        self._post(message)


class WidgetHost:
    def __init__(
        self,
        frame: WidgetFrame,
        backend: WidgetBackend,
        conversation_id: str = DEFAULT_CONVERSATION,
        viewport: Optional[ScrollViewport] = None,
    ) -> None:
        self.frame = frame
        self.backend = backend
        self.conversation_id = conversation_id
        self.viewport = viewport
        self.tracked_app_ids: set[str] = set()

    def _post(self, message) -> None:
        self.frame.post_message(message.to_wire())

    async def _report(self, error: str, stack: Optional[str] = None, app_id: Optional[str] = None) -> None:
        try:
            await self.backend.report_error(self.conversation_id, error, stack, app_id)
        except Exception as e:
            logger.warning(f"[Widget] error report failed: {e} (original: {error})")

    async def handle_message(self, source: Any, data: Any) -> bool:
        """
        Process one inbound message. Returns False when it was ignored because
        it did not come from this host's frame.
        """
        if source is not self.frame.content_window:
            return False

        try:
            msg = parse_widget_message(data)
        except WidgetProtocolError as e:
            logger.warning(f"[Widget] rejected message: {e}")
            rid = e.request_id
            if isinstance(rid, (int, str)) and not isinstance(rid, bool):
                self._post(Response(id=rid, error=f"Invalid request: {e}"))
            await self._report(str(e))
            return True

        try:
            await self._dispatch(msg)
        except Exception as e:
            logger.exception(f"[Widget] host failed handling '{msg.type}'")
            await self._report(f"Host failed handling '{msg.type}': {e}", app_id=getattr(msg, "app_id", None))
        return True

    async def _dispatch(self, msg) -> None:
        if isinstance(msg, GetState):
            self.tracked_app_ids.add(msg.app_id)
            try:
                record = await self.backend.get_state(self.conversation_id, msg.app_id)
            except Exception as e:
                logger.warning(f"[Widget] get-state {msg.app_id} failed: {e}")
                record = None
            self._post(State(state=record["state"] if record else None))

        elif isinstance(msg, SetState):
            try:
                await self.backend.set_state(self.conversation_id, msg.app_id, msg.state)
            except Exception as e:
                await self._report(f"set-state failed: {e}", app_id=msg.app_id)

        elif isinstance(msg, Resize):
            await self.apply_resize(msg.height)

        elif isinstance(msg, Request):
            try:
                data = await self.backend.app_action(self.conversation_id, msg.app_id, msg.action, msg.payload)
            except Exception as e:
                self._post(Response(id=msg.id, error=str(e) or type(e).__name__))
                return
            self._post(Response(id=msg.id, data=data))

        elif isinstance(msg, WidgetError):
            await self._report(msg.error, msg.stack)

    async def apply_resize(self, height: Any) -> Optional[str]:
        """Apply a reported height. Returns the scroll adjustment made, or None if rejected."""
        new_height = clamp_height(height)
        if new_height is None:
            await self._report(f"Invalid resize height: {height!r}")
            return None

        delta = new_height - self.frame.height
        adjustment = NO_ADJUST
        if self.viewport is not None:
            adjustment = scroll_adjustment(self.viewport, self.frame.rect, delta)
            if adjustment == OFFSET:
                self.viewport.scroll_top += delta
            self.viewport.scroll_height += delta

        self.frame.height = new_height
        if adjustment == PIN_BOTTOM:
            self.viewport.scroll_to_bottom()
        return adjustment

    def notify_app_state_updated(self, conversation_id: str, app_id: str) -> bool:
        """Relay an appStateUpdated bus event as a pull-based invalidation."""
        if conversation_id != self.conversation_id or app_id not in self.tracked_app_ids:
            return False
        self._post(StateUpdated(app_id=app_id))
        return True


Listener = Callable[[Any, Any], Awaitable[Any]]


class HostWindow:
    """The host page's window-level `message` listener registry."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def post(self, source: Any, data: Any) -> None:
        """Deliver a message event to every listener; each one checks the source itself."""
        for listener in list(self._listeners):
            await listener(source, data)


class WidgetContainer:
    """
    One embedded widget in the feed. Shows a placeholder until the container
    comes within `preload_margin` of the viewport, then creates the frame and
    host; leaving that range drops them again but keeps the last height.
    """

    def __init__(
        self,
        window: HostWindow,
        make_host: Callable[[], WidgetHost],
        preload_margin: float = PRELOAD_MARGIN,
    ) -> None:
        self._window = window
        self._make_host = make_host
        self._margin = preload_margin
        self.host: Optional[WidgetHost] = None
        self.height = DEFAULT_HEIGHT
        self.mounted = False

    @property
    def rendered(self) -> bool:
        return self.host is not None

    def mount(self) -> None:
        if not self.mounted:
            self._window.add_listener(self._on_message)
            self.mounted = True

    def unmount(self) -> None:
        if self.mounted:
            self._window.remove_listener(self._on_message)
            self.mounted = False
        self._drop_host()

    def intersect(self, container: Rect, viewport: Rect) -> bool:
        """Intersection-observer callback. Returns whether the widget is rendered afterwards."""
        if not self.mounted:
            return False
        near = container.bottom >= viewport.top - self._margin and container.top <= viewport.bottom + self._margin
        if near and self.host is None:
            self.host = self._make_host()
            self.host.frame.height = self.height
        elif not near:
            self._drop_host()
        return self.rendered

    def _drop_host(self) -> None:
        if self.host is not None:
            self.height = self.host.frame.height
            self.host = None

    async def _on_message(self, source: Any, data: Any) -> None:
        if self.host is not None:
            await self.host.handle_message(source, data)

    def notify_app_state_updated(self, conversation_id: str, app_id: str) -> bool:
        if self.host is None:
            return False
        return self.host.notify_app_state_updated(conversation_id, app_id)
