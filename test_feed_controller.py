"""
Client-side feed: merge/reconcile identity rules, live event application,
auto-scroll policy, and FeedClient against the public app.
"""
import json

import httpx
import pytest

from clawchat.db import crud
from clawchat.feed.controller import (
    FeedClient, FeedState, PrependAnchor, ScrollTracker, group_internal, merge_messages, reconcile,
)
from clawchat.widget.host import ScrollViewport


def _m(mid, content="x", created="2024-01-01T00:00:00", **extra):
    return {"id": mid, "role": "user", "type": "message", "content": content, "createdAt": created, **extra}


# ─────────────────────────────────────────────
# Merging
# ─────────────────────────────────────────────

def test_merge_keeps_identity_of_unchanged_messages():
    a, b = _m("a", "one"), _m("b", "two")
    prev = [a, b]

    assert merge_messages(prev, [_m("a", "one"), _m("b", "two")]) is prev

    edited = _m("b", "two!")
    merged = merge_messages(prev, [_m("a", "one"), edited])
    assert merged[0] is a
    assert merged[1] is edited

    merged = merge_messages(prev, [_m("a", "one")])
    assert merged == [a]
    assert merged[0] is a


def test_reconcile_keeps_scroll_loaded_history():
    old = _m("old", created="2024-01-01T00:00:00")
    mid = _m("mid", created="2024-01-01T00:00:01")
    new = _m("new", created="2024-01-01T00:00:02")
    held = [old, mid]

    result = reconcile(held, [_m("mid", created=mid["createdAt"]), new])
    assert [m["id"] for m in result] == ["old", "mid", "new"]
    assert result[0] is old
    assert result[1] is mid


def test_group_internal_collapses_runs():
    msgs = [
        _m("1"),
        _m("2", role="agent", type="thought"),
        _m("3", role="agent", type="tool_call", name="grep"),
        _m("4", role="agent"),
        _m("5", role="agent", type="tool_result"),
    ]
    groups = group_internal(msgs)
    assert [kind for kind, _ in groups] == ["message", "internal", "message", "internal"]
    assert [m["id"] for m in groups[1][1]] == ["2", "3"]


# ─────────────────────────────────────────────
# Live events
# ─────────────────────────────────────────────

def test_apply_message_events():
    state = FeedState()
    m = _m("a")
    assert state.apply_event({"type": "message", "message": m})
    assert not state.apply_event({"type": "message", "message": m})

    assert state.apply_event({"type": "update", "message": _m("a", "edited")})
    assert state.messages[0]["content"] == "edited"
    assert not state.apply_event({"type": "update", "message": _m("zzz")})

    assert state.apply_event({"type": "delete", "id": "a"})
    assert not state.apply_event({"type": "delete", "id": "a"})
    assert state.messages == []


def test_agent_state_and_status_events():
    state = FeedState()
    assert state.apply_event({"type": "agentState", "state": "tool_execution"})
    assert state.agent_busy
    assert not state.apply_event({"type": "agentState", "state": "inference"})
    assert state.apply_event({"type": "agentTyping", "active": False})
    assert not state.agent_busy

    state.apply_event({"type": "agentStatus", "connected": False, "error": "Connection refused"})
    assert state.toast == "Agent offline: Connection refused"
    state.apply_event({"type": "agentStatus", "connected": True})
    assert state.toast == "Agent connected"
    assert state.agent_connected is True


def test_scroll_and_app_state_events():
    state = FeedState()
    seen = []
    state.app_state_listeners.append(lambda conv, app: seen.append((conv, app)))

    state.apply_event({"type": "scrollToMessage", "messageId": "m7"})
    state.apply_event({"type": "appStateUpdated", "conversationId": "default", "appId": "counter"})
    state.apply_event({"type": "somethingNew"})

    assert state.scroll_target == "m7"
    assert seen == [("default", "counter")]


# ─────────────────────────────────────────────
# Scrolling
# ─────────────────────────────────────────────

def test_scroll_tracker_follows_bottom_only_when_pinned():
    vp = ScrollViewport(scroll_top=0, client_height=500, scroll_height=2000)
    tracker = ScrollTracker(vp)

    assert not tracker.on_change()          # initial load not finished
    tracker.ready = True
    assert tracker.on_change()
    assert vp.scroll_top == 1500

    vp.scroll_top = 200
    tracker.on_scroll()
    vp.scroll_height = 2500
    assert not tracker.on_change()
    assert vp.scroll_top == 200

    assert tracker.on_change(force=True)
    assert vp.scroll_top == 2000
    assert tracker.pinned


def test_prepend_anchor_keeps_first_visible_message_in_place():
    vp = ScrollViewport(scroll_top=0, client_height=500, scroll_height=2000)
    tops = iter([10.0, 610.0])
    with PrependAnchor(vp, lambda: next(tops)):
        pass
    assert vp.scroll_top == 600


# ─────────────────────────────────────────────
# FeedClient
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_feed_client_load_send_and_live_events(client, services, db):
    for i in range(3):
        await crud.msg_append(db, "user", f"m{i}")
    vp = ScrollViewport(client_height=500, scroll_height=3000)
    feed = FeedClient(client, tracker=ScrollTracker(vp))

    await feed.load()
    assert [m["content"] for m in feed.state.messages] == ["m0", "m1", "m2"]
    assert feed.tracker.ready
    assert vp.scroll_top == 2500

    sent = await feed.send("hello")
    await feed.handle_event({"type": "message", "message": sent})
    await feed.handle_event({"type": "message", "message": sent})
    assert [m["content"] for m in feed.state.messages][-1] == "hello"
    assert len(feed.state.messages) == 4

    edited = await feed.edit(sent["id"], "hello!")
    await feed.handle_event({"type": "update", "message": edited})
    assert feed.state.messages[-1]["content"] == "hello!"

    await feed.delete(sent["id"])
    await feed.handle_event({"type": "delete", "id": sent["id"]})
    assert len(feed.state.messages) == 3


@pytest.mark.asyncio
async def test_feed_client_pages_older_history(client, db):
    for i in range(5):
        await crud.msg_append(db, "user", f"m{i}")

    feed = FeedClient(client)
    data = (await client.get("/api/messages", params={"limit": 2})).json()
    feed.state.messages, feed.state.has_more = data["messages"], data["hasMore"]

    assert await feed.load_older() == 3
    assert [m["content"] for m in feed.state.messages] == [f"m{i}" for i in range(5)]
    assert not feed.state.has_more
    assert await feed.load_older() == 0


@pytest.mark.asyncio
async def test_scroll_request_loads_unheld_message(client, db):
    target = await crud.msg_append(db, "agent", "target")
    feed = FeedClient(client)

    await feed.handle_event({"type": "scrollToMessage", "messageId": target.id})
    assert feed.state.scroll_target == target.id
    assert feed.state.index_of(target.id) == 0


@pytest.mark.asyncio
async def test_forget_failure_shows_toast(client):
    feed = FeedClient(client)
    assert await feed.forget_from("missing") == []
    assert feed.state.toast == "Message not found"


@pytest.mark.asyncio
async def test_stop_shows_toast_even_when_agent_is_down(client, agent):
    agent.up = False
    feed = FeedClient(client)
    await feed.stop()
    assert feed.state.toast == "Stopped"


@pytest.mark.asyncio
async def test_reconnect_refetches_before_resubscribing():
    first = _m("a", "first", created="2024-01-01T00:00:00")
    second = _m("b", "second", created="2024-01-01T00:00:01")
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/api/events":
            body = (
                "retry: 3000\n\n"
                ": heartbeat\n\n"
                f"data: {json.dumps({'type': 'message', 'message': second})}\n\n"
            )
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})
        return httpx.Response(200, json={"messages": [first, second], "hasMore": False})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as c:
        feed = FeedClient(c, reconnect_delay=0)
        await feed.run(max_connections=2)

    assert calls == ["/api/events", "/api/messages", "/api/agent/state", "/api/events"]
    assert [m["id"] for m in feed.state.messages] == ["a", "b"]
    assert feed.connections == 2


@pytest.mark.asyncio
async def test_missed_idle_is_recovered_on_reconnect():
    streams = [
        f"data: {json.dumps({'type': 'agentState', 'state': 'inference'})}\n\n",
        ": heartbeat\n\n",
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/events":
            return httpx.Response(200, text=streams.pop(0), headers={"content-type": "text/event-stream"})
        if request.url.path == "/api/agent/state":
            return httpx.Response(200, json={"state": "idle"})
        return httpx.Response(200, json={"messages": [], "hasMore": False})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as c:
        feed = FeedClient(c, reconnect_delay=0)
        await feed.run(max_connections=1)
        assert feed.state.agent_busy

        await feed.run(max_connections=2)

    assert feed.state.agent_state == "idle"
    assert not feed.state.agent_busy


@pytest.mark.asyncio
async def test_load_reads_agent_state(client, agent):
    feed = FeedClient(client)
    feed.state.agent_state = "inference"
    await feed.load()
    assert feed.state.agent_state == "idle"

    agent.up = False
    feed.state.agent_state = "inference"
    await feed.poll_agent_state()
    assert feed.state.agent_state == "inference"
