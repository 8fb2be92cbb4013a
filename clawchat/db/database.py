"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from clawchat.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def connect(path: str) -> aiosqlite.Connection:
    """Open a connection at `path` with row access by name and the schema applied."""
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    # WAL mode: allows concurrent reads while writing
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await init_schema(db)
    return db


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                _db = await connect(DB_PATH)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Message: one entry of conversation history.
        -- created_at is the only ordering key.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS messages (
            id              TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL DEFAULT 'default',
            role            TEXT NOT NULL,
            type            TEXT NOT NULL DEFAULT 'message',
            content         TEXT NOT NULL,
            name            TEXT,
            attachment      TEXT,
            created_at      TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_messages_created
            ON messages(created_at);

        -- ----------------------------------------------------------------
        -- App state: last-writer-wins JSON blob per (conversation, app)
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS app_state (
            conversation_id TEXT NOT NULL,
            app_id          TEXT NOT NULL,
            state           TEXT NOT NULL,
            version         INTEGER NOT NULL DEFAULT 1,
            updated_at      TEXT NOT NULL,
            PRIMARY KEY (conversation_id, app_id)
        );

        -- ----------------------------------------------------------------
        -- Auth: device sessions created by redeeming single-use invites
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS sessions (
            id          TEXT PRIMARY KEY,
            token       TEXT UNIQUE NOT NULL,
            created_at  TEXT NOT NULL,
            expires_at  TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS invites (
            token       TEXT PRIMARY KEY,
            expires_at  TEXT NOT NULL,
            used        INTEGER NOT NULL DEFAULT 0
        );
    """)
    await db.commit()

    # ── Safe migration: add new columns to existing DBs ──────────────────────
    for col, typedef in [
        ("type", "TEXT NOT NULL DEFAULT 'message'"),
        ("name", "TEXT"),
        ("attachment", "TEXT"),
    ]:
        try:
            await db.execute(f"ALTER TABLE messages ADD COLUMN {col} {typedef}")
            await db.commit()
            logger.info(f"Migration: added column 'messages.{col}'")
        except Exception:
            pass  # Column already exists, safe to ignore

    # Presence tracking for sessions
    for col, typedef in [
        ("visible", "INTEGER NOT NULL DEFAULT 0"),
        ("last_active_at", "TEXT"),
    ]:
        try:
            await db.execute(f"ALTER TABLE sessions ADD COLUMN {col} {typedef}")
            await db.commit()
            logger.info(f"Migration: added column 'sessions.{col}'")
        except Exception:
            pass

    logger.info("Schema initialized.")
