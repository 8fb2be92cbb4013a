"""
CRUD operations for ClawChat.
All functions are async and receive the aiosqlite connection from the caller.
"""
import json
import uuid
import secrets
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Optional

import aiosqlite

from clawchat.db.models import (
    Message, Attachment, AppState, Session, Invite,
    MESSAGE_ROLES, MESSAGE_TYPES, DEFAULT_CONVERSATION,
)
from clawchat.config import APP_STATE_MAX_BYTES, SESSION_TTL_DAYS, INVITE_TTL_MINUTES

logger = logging.getLogger(__name__)


class MessageNotFound(Exception):
    """Raised when a message id does not exist (or was already deleted)."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"Message not found: {message_id}")


class MessageNotEditable(Exception):
    """Raised when editing a message whose type is not 'message'."""

    def __init__(self, message_id: str, message_type: str) -> None:
        self.message_id = message_id
        self.message_type = message_type
        super().__init__(f"Cannot edit internal messages (type={message_type})")


class StateTooLarge(Exception):
    """Raised when an app state blob exceeds the configured size limit."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"State too large ({size} bytes, max {limit})")


class InvalidState(ValueError):
    """Raised when an app state value has no JSON encoding (NaN, Infinity, ...)."""


class InviteError(Exception):
    """Raised when an invite token cannot be redeemed. `status` is the HTTP code to answer with."""

    def __init__(self, reason: str, status: int) -> None:
        self.reason = reason
        self.status = status
        super().__init__(reason)


_last_ts: Optional[datetime] = None


def _now() -> str:
    """Strictly increasing UTC timestamp, so created_at/updated_at never tie within a process."""
    global _last_ts
    now = datetime.now(timezone.utc)
    if _last_ts is not None and now <= _last_ts:
        now = _last_ts + timedelta(microseconds=1)
    _last_ts = now
    return now.isoformat(timespec="microseconds")


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


# ─────────────────────────────────────────────
# Message CRUD
# ─────────────────────────────────────────────

async def msg_append(
    db: aiosqlite.Connection,
    role: str,
    content: str,
    conversation_id: Optional[str] = None,
    msg_type: str = "message",
    name: Optional[str] = None,
    attachment: Optional[Attachment] = None,
) -> Message:
    """Persist a new message. The id and created_at are assigned here."""
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Invalid role '{role}'. Must be one of {MESSAGE_ROLES}")
    if msg_type not in MESSAGE_TYPES:
        raise ValueError(f"Invalid type '{msg_type}'. Must be one of {MESSAGE_TYPES}")

    mid = str(uuid.uuid4())
    now = _now()
    conversation_id = conversation_id or DEFAULT_CONVERSATION
    content = content.strip()
    att_json = json.dumps({
        "filename": attachment.filename,
        "mimetype": attachment.mimetype,
        "size": attachment.size,
    }) if attachment else None
    await db.execute(
        "INSERT INTO messages (id, conversation_id, role, type, content, name, attachment, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (mid, conversation_id, role, msg_type, content, name, att_json, now),
    )
    await db.commit()
    logger.debug(f"Message appended: id={mid} role={role} type={msg_type} conversation={conversation_id}")
    return Message(
        id=mid, conversation_id=conversation_id, role=role, type=msg_type,
        content=content, created_at=now, name=name, attachment=attachment,
    )


async def msg_get(db: aiosqlite.Connection, message_id: str) -> Optional[Message]:
    async with db.execute("SELECT * FROM messages WHERE id = ?", (message_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_message(row)


async def msg_list(
    db: aiosqlite.Connection,
    conversation_id: Optional[str] = None,
    search: Optional[str] = None,
) -> list[Message]:
    """All messages ordered by created_at ascending, optionally filtered."""
    clauses, params = [], []
    if conversation_id:
        clauses.append("conversation_id = ?")
        params.append(conversation_id)
    if search:
        clauses.append("LOWER(content) LIKE ?")
        params.append(f"%{search.lower()}%")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    async with db.execute(
        f"SELECT * FROM messages {where} ORDER BY created_at ASC, rowid ASC", params
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in rows]


async def msg_page(
    db: aiosqlite.Connection,
    before: Optional[str] = None,
    around: Optional[str] = None,
    limit: int = 100,
) -> tuple[list[Message], bool]:
    """
    One page of history in ascending order plus whether older messages exist.

    - default: the newest `limit` messages
    - before:  the newest `limit` messages strictly older than that timestamp
    - around:  a window centred on that message id (falls back to default if unknown)
    """
    limit = max(1, limit)

    if around:
        target = await msg_get(db, around)
        if target is not None:
            half = limit // 2
            async with db.execute(
                "SELECT * FROM messages WHERE created_at < ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (target.created_at, half),
            ) as cur:
                older = list(reversed(await cur.fetchall()))
            async with db.execute(
                "SELECT * FROM messages WHERE created_at >= ? ORDER BY created_at ASC, rowid ASC LIMIT ?",
                (target.created_at, limit - len(older)),
            ) as cur:
                newer = await cur.fetchall()
            msgs = [_row_to_message(r) for r in older + list(newer)]
            return msgs, await _has_older(db, msgs)

    if before:
        async with db.execute(
            "SELECT * FROM messages WHERE created_at < ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (before, limit),
        ) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute(
            "SELECT * FROM messages ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
        ) as cur:
            rows = await cur.fetchall()
    msgs = [_row_to_message(r) for r in reversed(rows)]
    return msgs, await _has_older(db, msgs)


async def _has_older(db: aiosqlite.Connection, msgs: list[Message]) -> bool:
    if not msgs:
        return False
    async with db.execute(
        "SELECT 1 FROM messages WHERE created_at < ? LIMIT 1", (msgs[0].created_at,)
    ) as cur:
        return await cur.fetchone() is not None


async def msg_update(db: aiosqlite.Connection, message_id: str, content: str) -> Message:
    """Replace the content of a chat message. Internal work messages are immutable."""
    existing = await msg_get(db, message_id)
    if existing is None:
        raise MessageNotFound(message_id)
    if existing.is_internal:
        raise MessageNotEditable(message_id, existing.type)
    content = content.strip()
    async with db.execute("UPDATE messages SET content = ? WHERE id = ?", (content, message_id)) as cur:
        updated = cur.rowcount
    await db.commit()
    if updated == 0:
        # Deleted between the read and the write; deletion wins.
        raise MessageNotFound(message_id)
    existing.content = content
    return existing


async def msg_delete(db: aiosqlite.Connection, message_id: str) -> bool:
    async with db.execute("DELETE FROM messages WHERE id = ?", (message_id,)) as cur:
        deleted = cur.rowcount
    await db.commit()
    return deleted > 0


async def msg_delete_from(db: aiosqlite.Connection, message_id: str) -> list[str]:
    """Forget a message and everything after it in the same conversation. Returns deleted ids."""
    target = await msg_get(db, message_id)
    if target is None:
        raise MessageNotFound(message_id)
    async with db.execute(
        "SELECT id FROM messages WHERE conversation_id = ? AND created_at >= ? ORDER BY created_at ASC",
        (target.conversation_id, target.created_at),
    ) as cur:
        ids = [r["id"] for r in await cur.fetchall()]
    await db.executemany("DELETE FROM messages WHERE id = ?", [(i,) for i in ids])
    await db.commit()
    logger.info(f"Forgot {len(ids)} message(s) from {message_id} in conversation={target.conversation_id}")
    return ids


def _row_to_message(row: aiosqlite.Row) -> Message:
    att = json.loads(row["attachment"]) if row["attachment"] else None
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        type=row["type"] or "message",
        content=row["content"],
        created_at=row["created_at"],
        name=row["name"],
        attachment=Attachment(att["filename"], att["mimetype"], int(att["size"])) if att else None,
    )


# ─────────────────────────────────────────────
# Widget app state
# ─────────────────────────────────────────────

def encode_state(state: Any) -> str:
    """Compact JSON encoding used both for storage and for the size limit."""
    try:
        return json.dumps(state, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise InvalidState(f"State is not valid JSON: {e}") from e


async def app_state_get(db: aiosqlite.Connection, conversation_id: str, app_id: str) -> Optional[AppState]:
    async with db.execute(
        "SELECT * FROM app_state WHERE conversation_id = ? AND app_id = ?",
        (conversation_id, app_id),
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return AppState(
        conversation_id=row["conversation_id"],
        app_id=row["app_id"],
        state=json.loads(row["state"]),
        version=row["version"],
        updated_at=row["updated_at"],
    )


async def app_state_set(
    db: aiosqlite.Connection,
    conversation_id: str,
    app_id: str,
    state: Any,
    version: int = 1,
    max_bytes: int = APP_STATE_MAX_BYTES,
) -> AppState:
    """
    Upsert the state for (conversation_id, app_id).

    Last writer wins: `version` is stored as advisory metadata and is never
    compared against the existing row.
    """
    encoded = encode_state(state)
    size = len(encoded.encode("utf-8"))
    if size > max_bytes:
        raise StateTooLarge(size, max_bytes)

    now = _now()
    await db.execute(
        """
        INSERT INTO app_state (conversation_id, app_id, state, version, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(conversation_id, app_id) DO UPDATE SET
            state = excluded.state,
            version = excluded.version,
            updated_at = excluded.updated_at
        """,
        (conversation_id, app_id, encoded, version, now),
    )
    await db.commit()
    return AppState(conversation_id=conversation_id, app_id=app_id, state=state,
                    version=version, updated_at=now)


# ─────────────────────────────────────────────
# Invites and sessions
# ─────────────────────────────────────────────

async def invite_create(db: aiosqlite.Connection, ttl_minutes: int = INVITE_TTL_MINUTES) -> Invite:
    token = str(uuid.uuid4())
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)
    await db.execute(
        "INSERT INTO invites (token, expires_at, used) VALUES (?, ?, 0)",
        (token, expires_at.isoformat()),
    )
    await db.commit()
    return Invite(token=token, expires_at=expires_at, used=False)


async def invite_redeem(db: aiosqlite.Connection, token: str) -> Session:
    """Exchange a single-use invite for a new device session."""
    async with db.execute("SELECT * FROM invites WHERE token = ?", (token,)) as cur:
        row = await cur.fetchone()
    if row is None:
        raise InviteError("Invalid invite", 404)
    if row["used"]:
        raise InviteError("Invite already used", 410)
    if _parse_dt(row["expires_at"]) < datetime.now(timezone.utc):
        raise InviteError("Invite expired", 410)

    async with db.execute("UPDATE invites SET used = 1 WHERE token = ? AND used = 0", (token,)) as cur:
        claimed = cur.rowcount
    await db.commit()
    if claimed == 0:
        raise InviteError("Invite already used", 410)
    return await session_create(db)


async def session_create(db: aiosqlite.Connection, ttl_days: int = SESSION_TTL_DAYS) -> Session:
    sid = str(uuid.uuid4())
    token = secrets.token_hex(32)
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(days=ttl_days)
    await db.execute(
        "INSERT INTO sessions (id, token, created_at, expires_at, visible) VALUES (?, ?, ?, ?, 0)",
        (sid, token, now.isoformat(), expires_at.isoformat()),
    )
    await db.commit()
    logger.info(f"Session created: {sid}")
    return Session(id=sid, token=token, created_at=now, expires_at=expires_at,
                   visible=False, last_active_at=None)


async def session_get(db: aiosqlite.Connection, token: str) -> Optional[Session]:
    """Look up a live session by cookie token; expired sessions are removed on sight."""
    async with db.execute("SELECT * FROM sessions WHERE token = ?", (token,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    expires_at = _parse_dt(row["expires_at"])
    if expires_at < datetime.now(timezone.utc):
        await db.execute("DELETE FROM sessions WHERE id = ?", (row["id"],))
        await db.commit()
        return None
    return Session(
        id=row["id"],
        token=row["token"],
        created_at=_parse_dt(row["created_at"]),
        expires_at=expires_at,
        visible=bool(row["visible"]),
        last_active_at=_parse_dt(row["last_active_at"]) if row["last_active_at"] else None,
    )


async def session_delete(db: aiosqlite.Connection, token: str) -> bool:
    async with db.execute("DELETE FROM sessions WHERE token = ?", (token,)) as cur:
        deleted = cur.rowcount
    await db.commit()
    return deleted > 0


async def session_set_visibility(db: aiosqlite.Connection, session_id: str, visible: bool) -> None:
    await db.execute(
        "UPDATE sessions SET visible = ?, last_active_at = ? WHERE id = ?",
        (1 if visible else 0, datetime.now(timezone.utc).isoformat(), session_id),
    )
    await db.commit()


async def sessions_any_visible(db: aiosqlite.Connection) -> bool:
    """True when at least one live session reports the chat as visible."""
    async with db.execute(
        "SELECT 1 FROM sessions WHERE visible = 1 AND expires_at > ? LIMIT 1",
        (datetime.now(timezone.utc).isoformat(),),
    ) as cur:
        return await cur.fetchone() is not None
