"""
Server-side operations a widget host needs, behind one interface.

`ServicesBackend` runs them in-process; `HttpWidgetBackend` uses the public
widget HTTP surface (`/api/app-state`, `/api/app-action`, `/api/widget-error`).
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import quote

import httpx

from clawchat.db import crud
from clawchat.db.database import get_db
from clawchat.db.models import app_state_to_dict

logger = logging.getLogger(__name__)


class WidgetBackend(ABC):
    @abstractmethod
    async def get_state(self, conversation_id: str, app_id: str) -> Optional[dict]:
        """The stored record `{state, version, updatedAt}` or None."""

    @abstractmethod
    async def set_state(self, conversation_id: str, app_id: str, state: Any) -> None: ...

    @abstractmethod
    async def app_action(self, conversation_id: str, app_id: str, action: str, payload: Any) -> dict:
        """`{ok, result}` or `{ok: False, error}`."""

    @abstractmethod
    async def report_error(self, conversation_id: str, error: str,
                           stack: Optional[str] = None, app_id: Optional[str] = None) -> None: ...


class ServicesBackend(WidgetBackend):
    def __init__(self, services) -> None:
        self._services = services

    async def get_state(self, conversation_id, app_id):
        db = await get_db()
        record = await crud.app_state_get(db, conversation_id, app_id)
        return app_state_to_dict(record) if record else None

    async def set_state(self, conversation_id, app_id, state):
        db = await get_db()
        await self._services.set_app_state(db, conversation_id, app_id, state)

    async def app_action(self, conversation_id, app_id, action, payload):
        return await self._services.app_action(conversation_id, app_id, action, payload)

    async def report_error(self, conversation_id, error, stack=None, app_id=None):
        self._services.report_widget_error(conversation_id, error, stack, app_id)


class HttpWidgetBackend(WidgetBackend):
    """Talks to a running ClawChat server; `client` carries base_url and the session cookie."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @staticmethod
    def _path(kind: str, conversation_id: str, app_id: str) -> str:
        return f"/api/{kind}/{quote(conversation_id, safe='')}/{quote(app_id, safe='')}"

    async def get_state(self, conversation_id, app_id):
        res = await self._client.get(self._path("app-state", conversation_id, app_id))
        if res.status_code == 404:
            return None
        res.raise_for_status()
        return res.json()

    async def set_state(self, conversation_id, app_id, state):
        res = await self._client.post(self._path("app-state", conversation_id, app_id), json={"state": state})
        res.raise_for_status()

    async def app_action(self, conversation_id, app_id, action, payload):
        res = await self._client.post(
            self._path("app-action", conversation_id, app_id),
            json={"action": action, "payload": payload},
        )
        try:
            return res.json()
        except ValueError:
            return {"ok": False, "error": f"HTTP {res.status_code}"}

    async def report_error(self, conversation_id, error, stack=None, app_id=None):
        try:
            await self._client.post(
                f"/api/widget-error/{quote(conversation_id, safe='')}",
                json={"error": error, "stack": stack, "appId": app_id},
            )
        except httpx.HTTPError as e:
            # Error reporting is a best-effort side channel.
            logger.debug(f"Widget error report failed: {e}")
