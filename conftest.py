"""
Shared fixtures for the ClawChat unit tests.

Everything runs in-process: an in-memory database installed as the shared
connection, a fake agent behind httpx.MockTransport, and the FastAPI apps
reached through httpx.ASGITransport. test_e2e.py is the only module that
talks to a real server, and it skips itself when none is running.
"""
import json

import httpx
import pytest
import pytest_asyncio

import clawchat.db.database as dbmod
from clawchat.agent_api import create_agent_app
from clawchat.main import create_app
from clawchat.services import AppActionRegistry, ChatServices


class FakeAgent:
    """Stand-in for the external agent process. Records every event it is sent."""

    def __init__(self) -> None:
        self.events: list[dict] = []
        self.up = True
        self.status_code = 200
        self.action_result = {"ok": True, "result": None}

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["type"] == event_type]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if not self.up:
            raise httpx.ConnectError("Connection refused", request=request)
        path = request.url.path
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": f"agent failed on {path}"})
        if path == "/events":
            event = json.loads(request.content)
            self.events.append(event)
            if event["type"] == "widget_action":
                return httpx.Response(200, json=self.action_result)
            return httpx.Response(200, json={"ok": True})
        if path == "/stop":
            return httpx.Response(200, json={"ok": True, "stopped": True})
        if path == "/info/health":
            return httpx.Response(200, json={"status": "ok"})
        if path.startswith("/info/"):
            return httpx.Response(200, json={"endpoint": path.rsplit("/", 1)[-1]})
        return httpx.Response(404, json={"error": "Not found"})


def received(sub) -> list[dict]:
    """Decode every data frame queued on a subscription so far (heartbeats skipped)."""
    events = []
    while not sub._queue.empty():
        frame = sub._queue.get_nowait()
        if frame and frame.startswith("data: "):
            events.append(json.loads(frame[len("data: "):]))
    return events


@pytest.fixture
def events_of():
    return received


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
def apps_dir(tmp_path):
    path = tmp_path / "apps"
    path.mkdir()
    return path


@pytest.fixture
def chat_public_dir(tmp_path):
    return tmp_path / "chat-public"


@pytest.fixture
def prompts_dir(tmp_path):
    path = tmp_path / "prompts"
    path.mkdir()
    return path


@pytest_asyncio.fixture
async def db():
    conn = await dbmod.connect(":memory:")
    dbmod._db = conn
    try:
        yield conn
    finally:
        dbmod._db = None
        await conn.close()


@pytest_asyncio.fixture
async def services(db, agent, apps_dir):
    svc = ChatServices(
        actions=AppActionRegistry(apps_dir),
        agent_url="http://agent.test",
        agent_transport=httpx.MockTransport(agent.handler),
    )
    try:
        yield svc
    finally:
        await svc.aclose()


@pytest_asyncio.fixture
async def client(services, apps_dir, chat_public_dir, prompts_dir):
    """Public app with auth disabled."""
    app = create_app(
        services=services, auth_enabled=False, apps_dir=str(apps_dir), manage_services=False,
        chat_public_dir=str(chat_public_dir), prompts_dir=str(prompts_dir),
    )
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def auth_client(services, apps_dir, chat_public_dir, prompts_dir):
    """Public app behind the session cookie gate."""
    app = create_app(
        services=services, auth_enabled=True, apps_dir=str(apps_dir), manage_services=False,
        chat_public_dir=str(chat_public_dir), prompts_dir=str(prompts_dir),
    )
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def agent_client(services, chat_public_dir):
    app = create_agent_app(services, chat_public_dir=str(chat_public_dir))
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://agent-api.test") as c:
        yield c
