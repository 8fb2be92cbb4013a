"""
MCP tool handlers, called through dispatch_tool the way the MCP server does.
"""
import json

import pytest

from clawchat.db import crud
from clawchat.mcp_server import TOOLS, build_server
from clawchat.tools.dispatch import TOOLS_DISPATCH, dispatch_tool


async def _call(services, db, name, /, **arguments):
    out = await dispatch_tool(services, db, name, arguments)
    assert len(out) == 1
    return json.loads(out[0].text)


def test_every_listed_tool_has_a_handler(services):
    assert {t.name for t in TOOLS} == set(TOOLS_DISPATCH)
    assert build_server(services).name == "ClawChat"


@pytest.mark.asyncio
async def test_msg_send_broadcasts_and_ends_turn(services, db, events_of):
    services.monitor.set_state("inference")
    sub = services.bus.subscribe()

    result = await _call(services, db, "msg_send", content="Done!")
    assert result["messageId"]

    events = events_of(sub)
    assert events[0]["type"] == "message"
    assert events[0]["message"]["role"] == "agent"
    assert {"type": "agentState", "state": "idle"} in events
    assert not services.monitor.busy


@pytest.mark.asyncio
async def test_internal_messages_keep_turn_open(services, db):
    services.monitor.set_state("tool_execution")
    await _call(services, db, "msg_send", content="ls -la", type="tool_call", name="bash")
    assert services.monitor.busy

    [msg] = await crud.msg_list(db)
    assert msg.type == "tool_call"
    assert msg.name == "bash"


@pytest.mark.asyncio
async def test_msg_send_requires_content(services, db):
    assert await _call(services, db, "msg_send", content=" ") == {"error": "Content required"}


@pytest.mark.asyncio
async def test_msg_list_search_and_limit(services, db):
    for text in ("Buy milk", "buy eggs", "call mom"):
        await crud.msg_append(db, "user", text)

    found = await _call(services, db, "msg_list", search="BUY")
    assert [m["content"] for m in found] == ["Buy milk", "buy eggs"]

    newest = await _call(services, db, "msg_list", limit=1)
    assert [m["content"] for m in newest] == ["call mom"]

    everything = await _call(services, db, "msg_list", limit=10)
    assert len(everything) == 3
    assert await _call(services, db, "msg_list", limit=-2) == []


@pytest.mark.asyncio
async def test_msg_update_and_delete(services, db, agent, events_of):
    msg = await crud.msg_append(db, "agent", "v1")
    thought = await crud.msg_append(db, "agent", "hmm", msg_type="thought")
    sub = services.bus.subscribe()

    updated = await _call(services, db, "msg_update", message_id=msg.id, content="v2")
    assert updated["content"] == "v2"
    assert await _call(services, db, "msg_update", message_id=thought.id, content="x") == {
        "error": "Cannot edit internal messages"
    }

    assert await _call(services, db, "msg_delete", message_id=msg.id) == {"ok": True}
    assert await _call(services, db, "msg_delete", message_id=msg.id) == {
        "error": "Message not found", "message_id": msg.id
    }
    assert [e["type"] for e in events_of(sub)] == ["update", "delete"]

    # The agent deleted it itself, so it is not told about it.
    await services.monitor.drain()
    assert agent.of_type("message_deleted") == []


@pytest.mark.asyncio
async def test_state_and_scroll_tools(services, db, events_of):
    sub = services.bus.subscribe()
    assert await _call(services, db, "agent_set_state", state="compaction") == {"ok": True, "state": "compaction"}
    assert await _call(services, db, "chat_scroll_to", message_id="m1") == {"ok": True}
    assert await _call(services, db, "chat_scroll_to") == {"error": "messageId required"}
    assert events_of(sub) == [
        {"type": "agentState", "state": "compaction"},
        {"type": "scrollToMessage", "messageId": "m1"},
    ]


@pytest.mark.asyncio
async def test_app_state_tools(services, db, events_of):
    sub = services.bus.subscribe()
    assert await _call(services, db, "app_state_get", app_id="todo") == {"error": "Not found"}

    stored = await _call(services, db, "app_state_set", app_id="todo", state={"items": ["a"]}, version=3)
    assert stored["version"] == 3
    assert events_of(sub) == [{"type": "appStateUpdated", "conversationId": "default", "appId": "todo"}]

    got = await _call(services, db, "app_state_get", app_id="todo")
    assert got["state"] == {"items": ["a"]}

    assert await _call(services, db, "app_state_set", app_id="todo") == {"error": "State required"}
    assert await _call(services, db, "app_state_get", app_id="../x") == {"error": "Invalid appId"}

    too_big = await _call(services, db, "app_state_set", app_id="todo", state="x" * (1024 * 1024 + 1))
    assert too_big["error"] == "State too large"


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments(services, db):
    assert await _call(services, db, "rm_rf") == {"error": "Unknown tool: rm_rf"}
    result = await _call(services, db, "msg_update", content="no id")
    assert result["error"].startswith("Invalid arguments")
