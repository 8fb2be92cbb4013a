"""
Invite / session-cookie authentication on the public app.
"""
import pytest

from clawchat.db import crud


async def _redeem(auth_client, db) -> str:
    invite = await crud.invite_create(db)
    r = await auth_client.get("/api/auth/invite", params={"token": invite.token})
    assert r.status_code == 302
    assert r.headers["location"] == "/"
    token = r.cookies.get("session")
    assert token
    auth_client.cookies.clear()
    auth_client.headers["Cookie"] = f"session={token}"
    return token


@pytest.mark.asyncio
async def test_api_requires_session(auth_client):
    r = await auth_client.get("/api/messages")
    assert r.status_code == 401
    assert r.json() == {"error": "Unauthorized"}

    r = await auth_client.get("/api/auth/me")
    assert r.status_code == 401

    # Health stays public.
    assert (await auth_client.get("/api/health")).status_code == 200


@pytest.mark.asyncio
async def test_invite_grants_a_session(auth_client, db):
    token = await _redeem(auth_client, db)

    r = await auth_client.get("/api/messages")
    assert r.status_code == 200
    assert (await auth_client.get("/api/auth/me")).json() == {"authenticated": True}

    session = await crud.session_get(db, token)
    assert session is not None
    assert not session.visible


@pytest.mark.asyncio
async def test_invite_is_single_use(auth_client, db):
    invite = await crud.invite_create(db)
    assert (await auth_client.get("/api/auth/invite", params={"token": invite.token})).status_code == 302

    r = await auth_client.get("/api/auth/invite", params={"token": invite.token})
    assert r.status_code == 410
    assert r.json() == {"error": "Invite already used"}


@pytest.mark.asyncio
async def test_invalid_and_expired_invites(auth_client, db):
    r = await auth_client.get("/api/auth/invite", params={"token": "nope"})
    assert r.status_code == 404

    expired = await crud.invite_create(db, ttl_minutes=-1)
    r = await auth_client.get("/api/auth/invite", params={"token": expired.token})
    assert r.status_code == 410
    assert r.json() == {"error": "Invite expired"}

    r = await auth_client.get("/api/auth/invite")
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_invite_page_forwards_token(auth_client):
    r = await auth_client.get("/invite", params={"token": "abc def"})
    assert r.status_code == 302
    assert r.headers["location"] == "/api/auth/invite?token=abc%20def"

    r = await auth_client.get("/invite")
    assert r.status_code == 200
    assert "invite-only" in r.text


@pytest.mark.asyncio
async def test_logout_ends_session(auth_client, db):
    token = await _redeem(auth_client, db)

    r = await auth_client.post("/api/auth/logout")
    assert r.json() == {"ok": True}
    assert await crud.session_get(db, token) is None
    assert (await auth_client.get("/api/messages")).status_code == 401


@pytest.mark.asyncio
async def test_visibility_feeds_presence(auth_client, agent_client, db):
    await _redeem(auth_client, db)
    assert (await agent_client.get("/presence")).json() == {"visible": False}

    r = await auth_client.post("/api/visibility", json={"visible": True})
    assert r.json() == {"ok": True}
    assert (await agent_client.get("/presence")).json() == {"visible": True}

    r = await auth_client.post("/api/visibility", json={"visible": "yes"})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_auth_disabled_lets_everyone_in(client):
    assert (await client.get("/api/messages")).status_code == 200
    assert (await client.get("/api/auth/me")).json() == {"authenticated": True}
    assert (await client.post("/api/visibility", json={"visible": True})).json() == {"ok": True}
