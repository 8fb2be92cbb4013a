"""
Agent liveness monitor.

Every notification to the external agent doubles as a liveness probe: a 2xx
answer means the agent is reachable, anything else means it is not. Status
changes and the agent's self-reported work state are relayed onto the
event bus.
"""
import asyncio
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from clawchat.bus import EventBus, EventType, Subscription
from clawchat.config import AGENT_URL, AGENT_NOTIFY_TIMEOUT, AGENT_PROBE_TIMEOUT

logger = logging.getLogger(__name__)

# Work state is an open string tag. Only "idle" changes behaviour (no stop
# affordance); the other well-known labels exist for display purposes.
IDLE = "idle"
WELL_KNOWN_STATES = (IDLE, "inference", "tool_execution", "compaction")
TYPING = "typing"


def is_busy(state: Optional[str]) -> bool:
    return bool(state) and state != IDLE


@dataclass
class AgentStatus:
    connected: Optional[bool] = None   # None until the first notify
    error: Optional[str] = None
    state: str = IDLE

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Delivery:
    """Outcome of one call to the agent."""
    ok: bool
    status_code: Optional[int] = None
    data: Any = None
    error: Optional[str] = None


def _error_from_response(res: httpx.Response) -> str:
    error = f"HTTP {res.status_code}"
    try:
        body = res.json()
    except ValueError:
        return error
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return error


class AgentLivenessMonitor:
    def __init__(
        self,
        bus: EventBus,
        agent_url: str = AGENT_URL,
        notify_timeout: float = AGENT_NOTIFY_TIMEOUT,
        probe_timeout: float = AGENT_PROBE_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._bus = bus
        self.agent_url = agent_url.rstrip("/")
        self._notify_timeout = notify_timeout
        self._probe_timeout = probe_timeout
        self._client = httpx.AsyncClient(transport=transport)
        self._pending: set[asyncio.Task] = set()
        self.status = AgentStatus()

    # ── notifications ─────────────────────────

    def notify(self, event_type: str, payload: dict) -> asyncio.Task:
        """Fire-and-forget notification. The caller never waits on the agent."""
        task = asyncio.create_task(self.deliver(event_type, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def deliver(self, event_type: str, payload: Any) -> Delivery:
        """POST one event to `<agent_url>/events` and record the outcome as liveness."""
        event = {
            "source": "chat",
            "type": event_type,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            res = await self._client.post(
                f"{self.agent_url}/events", json=event, timeout=self._notify_timeout
            )
        except httpx.HTTPError as e:
            error = str(e) or type(e).__name__
            logger.warning(f"Agent notify '{event_type}' failed: {error}")
            self._record_failure(error)
            return Delivery(ok=False, error=error)

        if res.is_success:
            self._record(True)
            try:
                data = res.json()
            except ValueError:
                data = None
            return Delivery(ok=True, status_code=res.status_code, data=data)

        error = _error_from_response(res)
        logger.warning(f"Agent notify '{event_type}' rejected: {error}")
        self._record_failure(error)
        return Delivery(ok=False, status_code=res.status_code, error=error)

    async def probe(self) -> dict:
        """
        Health check used once per new SSE subscription.
        Returns the agentStatus event to hand to that subscriber; shared
        status is left to notify, which is the liveness signal of record.
        """
        try:
            res = await self._client.get(f"{self.agent_url}/info/health", timeout=self._probe_timeout)
        except httpx.HTTPError:
            return {"type": EventType.AGENT_STATUS, "connected": False, "error": "Agent unreachable"}
        if res.is_success:
            return {"type": EventType.AGENT_STATUS, "connected": True}
        return {"type": EventType.AGENT_STATUS, "connected": False, "error": _error_from_response(res)}

    def probe_subscriber(self, sub: Subscription) -> asyncio.Task:
        """Probe in the background and write the result to `sub` only."""
        async def _run():
            event = await self.probe()
            sub.send_event(event)

        task = asyncio.create_task(_run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def request(self, method: str, path: str, timeout: float, **kwargs) -> httpx.Response:
        """Plain call to the agent for proxies. Transport errors propagate to the caller."""
        return await self._client.request(method, f"{self.agent_url}{path}", timeout=timeout, **kwargs)

    # ── status bookkeeping ────────────────────

    def _record(self, connected: bool, error: Optional[str] = None) -> bool:
        """
        Store connectivity and broadcast it when it flips, or when the agent
        stays down with a different error than before.
        """
        prev_connected, prev_error = self.status.connected, self.status.error
        error = None if connected else (error or "Connection failed")
        self.status.connected = connected
        self.status.error = error

        if prev_connected is connected and (connected or error == prev_error):
            return False
        event = {"type": EventType.AGENT_STATUS, "connected": connected}
        if not connected:
            event["error"] = error
        logger.info(f"Agent status: connected={connected} error={error}")
        self._bus.broadcast(event)
        return True

    def _record_failure(self, error: str) -> None:
        self._record(False, error)
        # A failed notify means the agent cannot be mid-turn.
        self.clear_busy()

    def set_state(self, state: Optional[str]) -> None:
        """Relay the agent's self-reported work state verbatim."""
        self.status.state = state or IDLE
        self._bus.broadcast({"type": EventType.AGENT_STATE, "state": self.status.state})

    def set_typing(self, active: bool) -> None:
        """Legacy boolean indicator, mapped onto the work state."""
        self.status.state = TYPING if active else IDLE
        self._bus.broadcast({"type": EventType.AGENT_TYPING, "active": bool(active)})
        self._bus.broadcast({"type": EventType.AGENT_STATE, "state": self.status.state})

    def clear_busy(self) -> None:
        self.set_typing(False)

    @property
    def busy(self) -> bool:
        return is_busy(self.status.state)

    # ── lifecycle ─────────────────────────────

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self._client.aclose()
