"""
Widget app state over HTTP: last-writer-wins storage, size limit, and the
appStateUpdated invalidation broadcast.
"""
import pytest

from clawchat.db import crud
from clawchat.services import valid_app_id


@pytest.mark.asyncio
async def test_state_roundtrip_and_broadcast(client, services, events_of):
    r = await client.get("/api/app-state/default/counter")
    assert r.status_code == 404

    sub = services.bus.subscribe()
    r = await client.post("/api/app-state/default/counter", json={"state": {"n": 1}})
    assert r.status_code == 200
    body = r.json()
    assert body["state"] == {"n": 1}
    assert body["version"] == 1
    assert body["updatedAt"]

    assert events_of(sub) == [{"type": "appStateUpdated", "conversationId": "default", "appId": "counter"}]

    r = await client.get("/api/app-state/default/counter")
    assert r.json()["state"] == {"n": 1}


@pytest.mark.asyncio
async def test_last_writer_wins_and_version_is_advisory(client):
    await client.post("/api/app-state/default/notes", json={"state": ["a"], "version": 7})
    r = await client.post("/api/app-state/default/notes", json={"state": ["b"], "version": 2})
    assert r.json()["version"] == 2

    r = await client.get("/api/app-state/default/notes")
    assert r.json()["state"] == ["b"]
    assert r.json()["version"] == 2


@pytest.mark.asyncio
async def test_state_is_scoped_per_conversation(client):
    await client.post("/api/app-state/one/counter", json={"state": 1})
    await client.post("/api/app-state/two/counter", json={"state": 2})
    assert (await client.get("/api/app-state/one/counter")).json()["state"] == 1
    assert (await client.get("/api/app-state/two/counter")).json()["state"] == 2


@pytest.mark.asyncio
async def test_null_state_is_stored(client):
    r = await client.post("/api/app-state/default/empty", json={"state": None})
    assert r.status_code == 200
    r = await client.get("/api/app-state/default/empty")
    assert r.status_code == 200
    assert r.json()["state"] is None


@pytest.mark.asyncio
async def test_missing_state_rejected(client):
    r = await client.post("/api/app-state/default/counter", json={"version": 1})
    assert r.status_code == 400
    assert r.json() == {"error": "State required"}


@pytest.mark.asyncio
async def test_oversized_state_rejected(client, db, services, events_of):
    sub = services.bus.subscribe()
    r = await client.post("/api/app-state/default/big", json={"state": "x" * (1024 * 1024)})
    assert r.status_code == 400
    assert r.json() == {"error": "State too large (max 1MB)"}
    assert events_of(sub) == []
    assert await crud.app_state_get(db, "default", "big") is None


@pytest.mark.asyncio
async def test_invalid_app_id_rejected(client):
    r = await client.get("/api/app-state/default/bad%20app")
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid appId"}

    r = await client.post("/api/app-state/default/bad.app", json={"state": 1})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_size_limit_counts_utf8_bytes(db):
    # 2 bytes per character in UTF-8: fits as characters, not as bytes.
    with pytest.raises(crud.StateTooLarge) as exc:
        await crud.app_state_set(db, "default", "wide", "é" * 600, max_bytes=1000)
    assert exc.value.size > 1000


@pytest.mark.asyncio
async def test_size_limit_boundary_is_inclusive(db):
    limit = 1024 * 1024
    # A JSON string encodes as its characters plus two quotes.
    at_limit = "x" * (limit - 2)
    record = await crud.app_state_set(db, "default", "edge", at_limit)
    assert len(crud.encode_state(record.state).encode("utf-8")) == limit
    assert (await crud.app_state_get(db, "default", "edge")).state == at_limit

    with pytest.raises(crud.StateTooLarge) as exc:
        await crud.app_state_set(db, "default", "over", at_limit + "x")
    assert exc.value.size == limit + 1
    assert await crud.app_state_get(db, "default", "over") is None


@pytest.mark.asyncio
async def test_one_byte_over_limit_is_not_broadcast(client, db, services, events_of):
    sub = services.bus.subscribe()
    r = await client.post("/api/app-state/default/over", json={"state": "x" * (1024 * 1024 - 1)})
    assert r.status_code == 400
    assert events_of(sub) == []
    assert await crud.app_state_get(db, "default", "over") is None


@pytest.mark.asyncio
async def test_repeated_write_is_idempotent(db):
    first = await crud.app_state_set(db, "default", "board", {"cells": [1, 2]}, version=3)
    second = await crud.app_state_set(db, "default", "board", {"cells": [1, 2]}, version=3)
    assert second.updated_at >= first.updated_at

    record = await crud.app_state_get(db, "default", "board")
    assert record.state == {"cells": [1, 2]}
    assert record.version == 3
    assert record.updated_at == second.updated_at


@pytest.mark.asyncio
async def test_non_finite_numbers_rejected_without_writing(client, db, services, events_of):
    sub = services.bus.subscribe()
    r = await client.post(
        "/api/app-state/default/meter",
        content='{"state": {"v": NaN}, "version": 1}',
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid state"}
    assert events_of(sub) == []
    assert await crud.app_state_get(db, "default", "meter") is None

    with pytest.raises(crud.InvalidState):
        await crud.app_state_set(db, "default", "meter", float("inf"))


def test_app_id_must_not_end_in_newline():
    assert valid_app_id("counter")
    assert not valid_app_id("counter\n")
    assert not valid_app_id("")
