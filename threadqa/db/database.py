"""
SQLite connection management and schema initialization for the session store.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
import sqlite3
from pathlib import Path

from threadqa import config

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection with WAL mode).
# The store is single-writer: every exchange shares this one connection.
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


class StoreUnavailable(Exception):
    """Raised when the session store cannot be opened or initialized."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Session store unavailable at {path}: {reason}")


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                _db = await _open(config.DB_PATH)
    return _db


async def _open(path: str) -> aiosqlite.Connection:
    db = None
    try:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(path)
        db.row_factory = aiosqlite.Row
        # WAL mode: allows concurrent reads while writing
        await db.execute("PRAGMA journal_mode=WAL")
        await init_schema(db)
    except (OSError, sqlite3.Error) as e:
        logger.error(f"Failed to open session store at {path}: {type(e).__name__}: {e}")
        if db is not None:
            await db.close()
        raise StoreUnavailable(path, str(e)) from e
    logger.info(f"Session store initialized at {path}")
    return db


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
        -- Session: durable binding of a chat thread to an agent session.
        -- session_id is assigned once and never reassigned.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS sessions (
            thread_key  TEXT PRIMARY KEY,
            session_id  TEXT NOT NULL,
            compacted   INTEGER NOT NULL DEFAULT 0,
            created_at  INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
        );

        -- ----------------------------------------------------------------
        -- Channel config: per-channel custom instructions and agent override
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS channel_config (
            channel_id     TEXT PRIMARY KEY,
            channel_name   TEXT NOT NULL DEFAULT '',
            custom_prompt  TEXT,
            agent          TEXT,
            tools          TEXT,
            configured_by  TEXT NOT NULL,
            updated_at     INTEGER NOT NULL
        );
    """)
    await db.commit()

    # ── Safe migration: databases created before compaction tracking ─────────
    async with db.execute("PRAGMA table_info(sessions)") as cur:
        columns = {row["name"] for row in await cur.fetchall()}
    if "compacted" not in columns:
        await db.execute("ALTER TABLE sessions ADD COLUMN compacted INTEGER NOT NULL DEFAULT 0")
        await db.commit()
        logger.info("Migration: added column 'sessions.compacted'")

    # ── Safe migration: channel configs created before per-channel tools ─────
    async with db.execute("PRAGMA table_info(channel_config)") as cur:
        columns = {row["name"] for row in await cur.fetchall()}
    if "tools" not in columns:
        await db.execute("ALTER TABLE channel_config ADD COLUMN tools TEXT")
        await db.commit()
        logger.info("Migration: added column 'channel_config.tools'")

    logger.info("Schema initialized.")
