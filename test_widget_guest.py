"""
Widget runtime against a real host and the in-process services: state sync,
invalidation re-pulls, request/response correlation and timeouts, and the
fullscreen runtime over HTTP.
"""
import asyncio

import pytest

from clawchat.db import crud
from clawchat.widget.backend import HttpWidgetBackend, ServicesBackend
from clawchat.widget.guest import StandaloneWidgetRuntime, WidgetRequestError, WidgetRuntime, _BaseRuntime
from clawchat.widget.host import HostWindow, WidgetFrame, WidgetHost


def _wire(services, request_timeout=1.0):
    """An embedded widget: runtime <-> window <-> host <-> services."""
    window = HostWindow()
    holder = {}
    frame = WidgetFrame(lambda message: holder["runtime"].receive(message))
    host = WidgetHost(frame, ServicesBackend(services), "default")
    window.add_listener(host.handle_message)
    runtime = WidgetRuntime(lambda message: window.post(frame.content_window, message), request_timeout)
    holder["runtime"] = runtime
    return runtime, host


@pytest.mark.asyncio
async def test_state_sync_and_external_update(services, db):
    runtime, host = _wire(services)
    states = []
    runtime.on_state(states.append)

    runtime.get_state("counter")
    await runtime.settle()
    assert states == [None]

    runtime.set_state("counter", {"n": 1})
    await runtime.settle()
    runtime.get_state("counter")
    await runtime.settle()
    assert states[-1] == {"n": 1}

    # Another writer (the agent, another tab) changes the state.
    await services.set_app_state(db, "default", "counter", {"n": 5})
    host.notify_app_state_updated("default", "counter")
    await runtime.settle()
    assert states[-1] == {"n": 5}


@pytest.mark.asyncio
async def test_invalidation_for_untracked_app_is_ignored(services):
    runtime, host = _wire(services)
    states = []
    runtime.on_state(states.append)
    runtime.receive({"type": "state-updated", "appId": "counter"})
    await runtime.settle()
    assert states == []


@pytest.mark.asyncio
async def test_request_resolves_with_handler_result(services):
    async def handle(action, payload, conversation_id):
        if action == "fail":
            raise ValueError("bad move")
        return {"doubled": payload * 2}

    services.actions.register("calc", handle)
    runtime, _ = _wire(services)

    assert await runtime.request("calc", "double", 21) == {"doubled": 42}
    with pytest.raises(WidgetRequestError, match="bad move"):
        await runtime.request("calc", "fail", 0)
    assert runtime.pending_requests == 0


@pytest.mark.asyncio
async def test_concurrent_requests_are_correlated(services):
    async def handle(action, payload, conversation_id):
        await asyncio.sleep(0.05 if payload == "slow" else 0)
        return payload

    services.actions.register("echo", handle)
    runtime, _ = _wire(services)

    results = await asyncio.gather(
        runtime.request("echo", "say", "slow"),
        runtime.request("echo", "say", "fast"),
    )
    assert results == ["slow", "fast"]


@pytest.mark.asyncio
async def test_request_times_out_and_late_response_is_ignored():
    sent = []
    runtime = WidgetRuntime(sent.append, request_timeout=0.05)

    with pytest.raises(WidgetRequestError, match="Request timeout after 0.05s"):
        await runtime.request("counter", "inc")
    assert runtime.pending_requests == 0

    request_id = sent[0]["id"]
    runtime.receive({"type": "response", "id": request_id, "data": {"ok": True, "result": 1}})
    assert runtime.pending_requests == 0


@pytest.mark.asyncio
async def test_request_argument_checks():
    runtime = WidgetRuntime(lambda message: None)
    with pytest.raises(WidgetRequestError, match="appId"):
        await runtime.request("", "inc")
    with pytest.raises(WidgetRequestError, match="action"):
        await runtime.request("counter", "")


@pytest.mark.asyncio
async def test_bad_app_id_is_reported_through_the_host(services, events_of):
    sub = services.bus.subscribe()
    runtime, _ = _wire(services)

    runtime.get_state("")
    await runtime.settle()

    [event] = [e for e in events_of(sub) if e["type"] == "widgetError"]
    assert "appId must be a non-empty string" in event["error"]


@pytest.mark.asyncio
async def test_state_callback_errors_are_reported():
    sent = []
    runtime = WidgetRuntime(sent.append)

    def broken(state):
        raise KeyError("n")

    runtime.on_state(broken)
    runtime.receive({"type": "state", "state": {}})
    assert sent[-1]["type"] == "error"
    assert "Message handler error" in sent[-1]["error"]

    runtime.on_state("not callable")
    assert sent[-1]["error"] == "onState requires a function callback"


def test_height_reports_only_on_change():
    sent = []
    runtime = WidgetRuntime(sent.append)
    runtime.report_height(240)
    runtime.report_height(240)
    runtime.report_height(250)
    assert sent == [{"type": "resize", "height": 240}, {"type": "resize", "height": 250}]


def test_unknown_host_messages_are_ignored():
    sent = []
    runtime = WidgetRuntime(sent.append)
    runtime.receive({"type": "ping"})
    runtime.receive(None)
    assert sent == []


# ─────────────────────────────────────────────
# Fullscreen runtime over HTTP
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_standalone_runtime_over_http(client, services, db):
    async def handle(action, payload, conversation_id):
        return {"action": action, "conversation": conversation_id}

    services.actions.register("board", handle)
    runtime = StandaloneWidgetRuntime(HttpWidgetBackend(client), "default")
    states = []
    runtime.on_state(states.append)

    runtime.get_state("board")
    await runtime.settle()
    assert states == [None]

    runtime.set_state("board", {"cells": [1, 2]})
    await runtime.settle()
    assert (await crud.app_state_get(db, "default", "board")).state == {"cells": [1, 2]}

    assert await runtime.request("board", "move") == {"action": "move", "conversation": "default"}

    await services.set_app_state(db, "default", "board", {"cells": [3]})
    assert runtime.handle_event({"type": "appStateUpdated", "conversationId": "default", "appId": "board"})
    assert not runtime.handle_event({"type": "appStateUpdated", "conversationId": "other", "appId": "board"})
    await runtime.settle()
    assert states[-1] == {"cells": [3]}


@pytest.mark.asyncio
async def test_standalone_request_failure(client):
    runtime = StandaloneWidgetRuntime(HttpWidgetBackend(client), "default")
    with pytest.raises(WidgetRequestError):
        await runtime.request("bad.id", "move")


@pytest.mark.asyncio
async def test_standalone_rejected_write_is_reported(client, services, db, events_of):
    runtime = StandaloneWidgetRuntime(HttpWidgetBackend(client), "default")
    sub = services.bus.subscribe()

    runtime.set_state("board", "x" * (1024 * 1024))
    await runtime.settle()

    errors = [e for e in events_of(sub) if e["type"] == "widgetError"]
    assert len(errors) == 1
    assert errors[0]["error"].startswith("setState failed")
    assert await crud.app_state_get(db, "default", "board") is None


@pytest.mark.asyncio
async def test_standalone_listen_consumes_event_stream(client, db, services):
    runtime = StandaloneWidgetRuntime(HttpWidgetBackend(client), "default")
    states = []
    runtime.on_state(states.append)
    runtime.tracked_app_ids.add("board")
    await services.set_app_state(db, "default", "board", "ready")

    async def events():
        yield {"type": "message", "message": {}}
        yield {"type": "appStateUpdated", "conversationId": "default", "appId": "board"}

    await runtime.listen(events())
    await runtime.settle()
    assert states == ["ready"]


def test_runtime_base_requires_error_reporting():
    with pytest.raises(TypeError):
        _BaseRuntime()
