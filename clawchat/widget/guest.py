"""
Widget side of the protocol: the `widget` object exposed to widget code.

`WidgetRuntime` is the embedded variant and only ever talks to its host
through posted messages. `StandaloneWidgetRuntime` is the fullscreen variant:
it holds its own authenticated HTTP client and learns about external state
changes from the event stream.
"""
import asyncio
import inspect
import itertools
import logging
import traceback
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Optional

from clawchat.bus import EventType
from clawchat.config import WIDGET_REQUEST_TIMEOUT
from clawchat.db.models import DEFAULT_CONVERSATION
from clawchat.widget.backend import WidgetBackend
from clawchat.widget.protocol import (
    GetState, SetState, Resize, Request, WidgetError,
    State, Response, StateUpdated,
    WidgetProtocolError, parse_host_message,
)

logger = logging.getLogger(__name__)

StateCallback = Callable[[Any], Any]


class WidgetRequestError(Exception):
    """A widget `request` that was rejected, failed, or timed out."""


class _BaseRuntime(ABC):
    def __init__(self, request_timeout: float = WIDGET_REQUEST_TIMEOUT) -> None:
        self.request_timeout = request_timeout
        self.tracked_app_ids: set[str] = set()
        self._state_callback: Optional[StateCallback] = None
        self._inflight: set[asyncio.Future] = set()

    def on_state(self, callback: StateCallback) -> None:
        if not callable(callback):
            self.report_error("onState requires a function callback")
            return
        self._state_callback = callback

    def _deliver_state(self, state: Any) -> None:
        if self._state_callback is not None:
            self._state_callback(state)

    def _spawn(self, result: Any) -> None:
        if inspect.isawaitable(result):
            fut = asyncio.ensure_future(result)
            self._inflight.add(fut)
            fut.add_done_callback(self._inflight.discard)

    async def settle(self) -> None:
        """Wait until every outbound send (and whatever it triggered) has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    @abstractmethod
    def report_error(self, error: str, stack: Optional[str] = None) -> None:
        """Send an error report to wherever this runtime logs widget failures."""

    @staticmethod
    def _check_app_id(method: str, app_id: Any) -> Optional[str]:
        if not app_id or not isinstance(app_id, str):
            return f"{method}: appId must be a non-empty string"
        return None

    def _timeout_error(self) -> WidgetRequestError:
        return WidgetRequestError(f"Request timeout after {self.request_timeout:g}s")


class WidgetRuntime(_BaseRuntime):
    """
    Embedded runtime. `post` sends one message to the host (postMessage to the
    parent frame); it may return an awaitable, which is tracked for `settle()`.
    """

    def __init__(self, post: Callable[[dict], Any], request_timeout: float = WIDGET_REQUEST_TIMEOUT) -> None:
        super().__init__(request_timeout)
        self._post_to_host = post
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._last_height = 0

    def _send(self, message) -> None:
        self._spawn(self._post_to_host(message.to_wire()))

    def report_error(self, error: str, stack: Optional[str] = None) -> None:
        self._send(WidgetError(error=str(error), stack=stack or "".join(traceback.format_stack(limit=5))))

    # ── widget API ────────────────────────────

    def get_state(self, app_id: str) -> None:
        problem = self._check_app_id("getState", app_id)
        if problem:
            self.report_error(problem)
            return
        self.tracked_app_ids.add(app_id)
        self._send(GetState(app_id=app_id))

    def set_state(self, app_id: str, state: Any) -> None:
        problem = self._check_app_id("setState", app_id)
        if problem:
            self.report_error(problem)
            return
        self._send(SetState(app_id=app_id, state=state))

    async def request(self, app_id: str, action: str, payload: Any = None) -> Any:
        """Resolve with the action result, or raise WidgetRequestError (including after the timeout)."""
        problem = self._check_app_id("request", app_id)
        if problem:
            raise WidgetRequestError(problem)
        if not action or not isinstance(action, str):
            raise WidgetRequestError("request: action must be a non-empty string")

        request_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        self._send(Request(id=request_id, app_id=app_id, action=action, payload=payload))
        try:
            return await asyncio.wait_for(fut, self.request_timeout)
        except asyncio.TimeoutError:
            raise self._timeout_error() from None
        finally:
            # A response arriving after this point finds no pending entry and is ignored.
            self._pending.pop(request_id, None)

    def report_height(self, height: float) -> None:
        if height != self._last_height:
            self._last_height = height
            self._send(Resize(height=height))

    # ── host -> widget ────────────────────────

    def receive(self, data: Any) -> None:
        try:
            msg = parse_host_message(data)
        except WidgetProtocolError as e:
            # Unknown host traffic is not an error for the widget.
            logger.debug(f"Ignoring host message: {e}")
            return
        try:
            if isinstance(msg, State):
                self._deliver_state(msg.state)
            elif isinstance(msg, Response):
                self._settle_request(msg)
            elif isinstance(msg, StateUpdated) and msg.app_id in self.tracked_app_ids:
                self.get_state(msg.app_id)
        except Exception as e:
            self.report_error(f"Message handler error: {e}", traceback.format_exc())

    def _settle_request(self, msg: Response) -> None:
        fut = self._pending.pop(msg.id, None)
        if fut is None or fut.done():
            return
        if msg.error:
            fut.set_exception(WidgetRequestError(msg.error))
        elif msg.data is not None and not msg.data.get("ok"):
            fut.set_exception(WidgetRequestError(msg.data.get("error") or "Request failed"))
        else:
            fut.set_result(msg.data.get("result") if msg.data else None)

    @property
    def pending_requests(self) -> int:
        return len(self._pending)


class StandaloneWidgetRuntime(_BaseRuntime):
    """Fullscreen runtime: same widget API, carried over HTTP plus the event stream."""

    def __init__(
        self,
        backend: WidgetBackend,
        conversation_id: str = DEFAULT_CONVERSATION,
        request_timeout: float = WIDGET_REQUEST_TIMEOUT,
    ) -> None:
        super().__init__(request_timeout)
        self.backend = backend
        self.conversation_id = conversation_id

    def report_error(self, error: str, stack: Optional[str] = None) -> None:
        self._spawn(self.backend.report_error(self.conversation_id, str(error), stack))

    async def _fetch_state(self, app_id: str) -> None:
        try:
            record = await self.backend.get_state(self.conversation_id, app_id)
        except Exception as e:
            logger.warning(f"getState {app_id} failed: {e}")
            record = None
        self._deliver_state(record["state"] if record else None)

    def get_state(self, app_id: str) -> None:
        problem = self._check_app_id("getState", app_id)
        if problem:
            self.report_error(problem)
            return
        self.tracked_app_ids.add(app_id)
        self._spawn(self._fetch_state(app_id))

    async def _store_state(self, app_id: str, state: Any) -> None:
        try:
            await self.backend.set_state(self.conversation_id, app_id, state)
        except Exception as e:
            self.report_error(f"setState failed: {e}")

    def set_state(self, app_id: str, state: Any) -> None:
        problem = self._check_app_id("setState", app_id)
        if problem:
            self.report_error(problem)
            return
        self._spawn(self._store_state(app_id, state))

    async def request(self, app_id: str, action: str, payload: Any = None) -> Any:
        problem = self._check_app_id("request", app_id)
        if problem:
            raise WidgetRequestError(problem)
        if not action or not isinstance(action, str):
            raise WidgetRequestError("request: action must be a non-empty string")
        try:
            data = await asyncio.wait_for(
                self.backend.app_action(self.conversation_id, app_id, action, payload),
                self.request_timeout,
            )
        except asyncio.TimeoutError:
            # Only the wait is abandoned; the server-side action is not cancelled.
            raise self._timeout_error() from None
        except WidgetRequestError:
            raise
        except Exception as e:
            raise WidgetRequestError(str(e) or type(e).__name__) from e
        if not data.get("ok"):
            raise WidgetRequestError(data.get("error") or "Request failed")
        return data.get("result")

    def handle_event(self, event: dict) -> bool:
        """Bus event hook: re-pull state for tracked apps of this conversation."""
        if (
            event.get("type") == EventType.APP_STATE_UPDATED
            and event.get("conversationId") == self.conversation_id
            and event.get("appId") in self.tracked_app_ids
        ):
            self.get_state(event["appId"])
            return True
        return False

    async def listen(self, events: AsyncIterator[dict]) -> None:
        async for event in events:
            self.handle_event(event)
