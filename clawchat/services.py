"""
Shared chat operations used by the public app, the agent app, and the MCP tools.

`ChatServices` groups the per-server collaborators (event bus, liveness
monitor, app-action handlers). Each FastAPI app keeps one on `app.state`;
tests build their own.
"""
import importlib.util
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import aiosqlite
import httpx
from fastapi import Request

from clawchat.agent import AgentLivenessMonitor
from clawchat.bus import EventBus, EventType
from clawchat.config import APPS_DIR, AGENT_URL
from clawchat.db import crud
from clawchat.db.models import Attachment, Message, AppState, message_to_dict, DEFAULT_CONVERSATION

logger = logging.getLogger(__name__)

ActionHandler = Callable[[str, Any, str], Awaitable[Any]]

_APP_ID_RE = re.compile(r"[\w\-]+")


def valid_app_id(app_id: Any) -> bool:
    return isinstance(app_id, str) and bool(_APP_ID_RE.fullmatch(app_id))


class AppActionRegistry:
    """
    Server-side handlers for widget `request` actions.

    A handler is `async def handle(action, payload, conversation_id)`. It is
    either registered directly or loaded from `<apps_dir>/<app_id>/handler.py`;
    file handlers are reloaded when the file changes.
    """

    def __init__(self, apps_dir: str | os.PathLike = APPS_DIR) -> None:
        self.apps_dir = Path(apps_dir)
        self._registered: dict[str, ActionHandler] = {}
        self._loaded: dict[str, tuple[float, ActionHandler]] = {}

    def register(self, app_id: str, handler: ActionHandler) -> None:
        self._registered[app_id] = handler

    def resolve(self, app_id: str) -> Optional[ActionHandler]:
        if app_id in self._registered:
            return self._registered[app_id]
        if not valid_app_id(app_id):
            return None
        path = self.apps_dir / app_id / "handler.py"
        if not path.is_file():
            self._loaded.pop(app_id, None)
            return None

        mtime = path.stat().st_mtime
        cached = self._loaded.get(app_id)
        if cached and cached[0] == mtime:
            return cached[1]

        spec = importlib.util.spec_from_file_location(f"clawchat_app_{app_id}", path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        handler = getattr(module, "handle", None)
        if handler is None:
            logger.warning(f"[App] {path} defines no handle(); ignoring")
            return None
        self._loaded[app_id] = (mtime, handler)
        logger.info(f"[App] Loaded handler: {app_id}")
        return handler


class ChatServices:
    def __init__(
        self,
        bus: Optional[EventBus] = None,
        monitor: Optional[AgentLivenessMonitor] = None,
        actions: Optional[AppActionRegistry] = None,
        agent_url: str = AGENT_URL,
        agent_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.bus = bus or EventBus()
        self.monitor = monitor or AgentLivenessMonitor(self.bus, agent_url, transport=agent_transport)
        self.actions = actions or AppActionRegistry()

    async def aclose(self) -> None:
        self.bus.close_all()
        await self.monitor.aclose()

    # ─────────────────────────────────────────────
    # Messages
    # ─────────────────────────────────────────────

    async def post_user_message(
        self,
        db: aiosqlite.Connection,
        content: str,
        conversation_id: Optional[str] = None,
        attachment: Optional[Attachment] = None,
        attachment_path: Optional[str] = None,
    ) -> Message:
        """
        Persist, broadcast, then notify the agent. Agent reachability never blocks the write.
        `attachment_path` is where an uploaded file landed on disk, passed to the agent only.
        """
        msg = await crud.msg_append(db, "user", content, conversation_id=conversation_id,
                                    attachment=attachment)
        self.bus.broadcast({"type": EventType.MESSAGE, "message": message_to_dict(msg)})
        payload = {
            "conversationId": msg.conversation_id,
            "messageId": msg.id,
            "content": msg.content,
        }
        if attachment:
            payload["attachment"] = message_to_dict(msg)["attachment"]
            if attachment_path:
                payload["attachment"]["path"] = attachment_path
        self.monitor.notify("user_message", payload)
        return msg

    async def post_agent_message(
        self,
        db: aiosqlite.Connection,
        content: str,
        conversation_id: Optional[str] = None,
        msg_type: str = "message",
        name: Optional[str] = None,
        attachment: Optional[Attachment] = None,
    ) -> Message:
        msg = await crud.msg_append(db, "agent", content, conversation_id=conversation_id,
                                    msg_type=msg_type, name=name, attachment=attachment)
        self.bus.broadcast({"type": EventType.MESSAGE, "message": message_to_dict(msg)})
        if msg_type == "message":
            # A final reply ends the turn.
            self.monitor.clear_busy()
        return msg

    async def edit_message(self, db: aiosqlite.Connection, message_id: str, content: str) -> Message:
        msg = await crud.msg_update(db, message_id, content)
        self.bus.broadcast({"type": EventType.UPDATE, "message": message_to_dict(msg)})
        return msg

    async def delete_message(self, db: aiosqlite.Connection, message_id: str, notify_agent: bool = True) -> Message:
        msg = await crud.msg_get(db, message_id)
        if msg is None or not await crud.msg_delete(db, message_id):
            raise crud.MessageNotFound(message_id)
        self.bus.broadcast({"type": EventType.DELETE, "id": message_id})
        if notify_agent:
            self.monitor.notify("message_deleted", {
                "conversationId": msg.conversation_id,
                "messageId": message_id,
            })
        return msg

    async def forget_from(self, db: aiosqlite.Connection, message_id: str) -> list[str]:
        """Delete a message and everything after it, one `delete` event per id."""
        target = await crud.msg_get(db, message_id)
        if target is None:
            raise crud.MessageNotFound(message_id)
        ids = await crud.msg_delete_from(db, message_id)
        for mid in ids:
            self.bus.broadcast({"type": EventType.DELETE, "id": mid})
        self.monitor.notify("messages_forgotten", {
            "conversationId": target.conversation_id,
            "fromMessageId": message_id,
            "messageIds": ids,
        })
        return ids

    def scroll_to(self, message_id: str) -> None:
        self.bus.broadcast({"type": EventType.SCROLL_TO_MESSAGE, "messageId": message_id})

    # ─────────────────────────────────────────────
    # Widget state, actions and errors
    # ─────────────────────────────────────────────

    async def set_app_state(
        self,
        db: aiosqlite.Connection,
        conversation_id: str,
        app_id: str,
        state: Any,
        version: Optional[int] = None,
    ) -> AppState:
        """Last-writer-wins upsert followed by an invalidation broadcast."""
        record = await crud.app_state_set(db, conversation_id, app_id, state, version=version or 1)
        self.bus.broadcast({
            "type": EventType.APP_STATE_UPDATED,
            "conversationId": conversation_id,
            "appId": app_id,
        })
        return record

    async def app_action(self, conversation_id: str, app_id: str, action: str, payload: Any) -> dict:
        """
        Run a widget action. Always returns `{ok, result}` or `{ok: False, error}`;
        handler and agent failures are reported in-band.
        """
        try:
            handler = self.actions.resolve(app_id)
        except Exception as e:
            logger.warning(f"[App] Failed to load handler for {app_id}: {e}")
            return {"ok": False, "error": f"Failed to load handler: {e}"}

        if handler is not None:
            try:
                result = await handler(action, payload, conversation_id)
            except Exception as e:
                logger.warning(f"[App] {app_id}.{action} raised: {e}")
                return {"ok": False, "error": str(e) or type(e).__name__}
            return {"ok": True, "result": result}

        delivery = await self.monitor.deliver("widget_action", {
            "conversationId": conversation_id,
            "appId": app_id,
            "action": action,
            "payload": payload,
        })
        if not delivery.ok:
            return {"ok": False, "error": delivery.error}
        data = delivery.data
        if isinstance(data, dict):
            if data.get("ok") is False:
                return {"ok": False, "error": str(data.get("error") or "Action failed")}
            return {"ok": True, "result": data.get("result")}
        return {"ok": True, "result": data}

    def report_widget_error(
        self,
        conversation_id: str,
        error: str,
        stack: Optional[str] = None,
        app_id: Optional[str] = None,
    ) -> dict:
        """Log, broadcast and forward a widget fault. Never fails."""
        report = {
            "conversationId": conversation_id or DEFAULT_CONVERSATION,
            "appId": app_id,
            "error": error,
            "stack": stack,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        logger.warning(f"[Widget] {app_id or '?'} in {report['conversationId']}: {error}\n{stack or ''}".rstrip())
        self.bus.broadcast({"type": EventType.WIDGET_ERROR, **report})
        self.monitor.notify("widget_error", report)
        return report


def get_services(request: Request) -> ChatServices:
    return request.app.state.services
