"""
CRUD operations for ThreadQA.
All functions are async and receive the aiosqlite connection from the caller.
"""
import asyncio
import json
import logging
import sqlite3
import time
from datetime import datetime, timezone
from typing import Awaitable, Optional, Protocol, Sequence

import aiosqlite

from threadqa.config import MAX_CUSTOM_PROMPT_LENGTH
from threadqa.db.models import ThreadSession, ChannelConfig

logger = logging.getLogger(__name__)


class SessionCreator(Protocol):
    def create_session(self, title: str) -> Awaitable[str]: ...


# Creation of a session for a given thread_key is serialized in-process.
# The backing store has no locking of its own beyond single-writer SQLite.
_creation_locks: dict[str, asyncio.Lock] = {}


def _now() -> int:
    return int(time.time())


def _from_epoch(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


# ─────────────────────────────────────────────
# Session directory
# ─────────────────────────────────────────────

async def session_get(db: aiosqlite.Connection, thread_key: str) -> Optional[ThreadSession]:
    async with db.execute("SELECT * FROM sessions WHERE thread_key = ?", (thread_key,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_session(row)


async def session_get_or_create(
    db: aiosqlite.Connection, thread_key: str, runtime: SessionCreator
) -> tuple[str, bool]:
    """Return ``(session_id, is_new)`` for a thread, minting a runtime session on first use.

    Concurrent calls for the same thread_key wait on a per-key lock and
    re-check the store, so only one runtime session is ever bound to a thread.
    If the runtime fails to create a session nothing is persisted.
    """
    existing = await session_get(db, thread_key)
    if existing:
        return existing.session_id, False

    lock = _creation_locks.setdefault(thread_key, asyncio.Lock())
    try:
        async with lock:
            existing = await session_get(db, thread_key)
            if existing:
                return existing.session_id, False

            session_id = await runtime.create_session(f"Chat thread: {thread_key}")
            try:
                await db.execute(
                    "INSERT INTO sessions (thread_key, session_id, compacted, created_at) VALUES (?, ?, 0, ?)",
                    (thread_key, session_id, _now()),
                )
                await db.commit()
            except sqlite3.IntegrityError as e:
                # Another process sharing the file won the insert; keep its binding.
                logger.info(f"Session for '{thread_key}' creation raced (UNIQUE constraint), fetching existing: {e}")
                row = await session_get(db, thread_key)
                if row:
                    logger.warning(f"Discarding runtime session {session_id} for '{thread_key}', keeping {row.session_id}")
                    return row.session_id, False
                raise
            logger.info(f"Session created: {session_id} for thread '{thread_key}'")
            return session_id, True
    finally:
        # Only drop our own lock; a newer caller may have registered its own.
        if _creation_locks.get(thread_key) is lock and not lock.locked():
            del _creation_locks[thread_key]


async def session_is_compacted(db: aiosqlite.Connection, thread_key: str) -> bool:
    async with db.execute("SELECT compacted FROM sessions WHERE thread_key = ?", (thread_key,)) as cur:
        row = await cur.fetchone()
    return bool(row and row["compacted"])


async def session_set_compacted(db: aiosqlite.Connection, thread_key: str, compacted: bool) -> bool:
    """Set the compaction flag. Returns False if the thread has no session."""
    async with db.execute(
        "UPDATE sessions SET compacted = ? WHERE thread_key = ?", (int(compacted), thread_key)
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    if updated == 0:
        return False
    logger.info(f"Session for thread '{thread_key}' compacted={compacted}")
    return True


async def session_list(db: aiosqlite.Connection, limit: int = 200) -> list[ThreadSession]:
    async with db.execute(
        "SELECT * FROM sessions ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_session(r) for r in rows]


def _row_to_session(row: aiosqlite.Row) -> ThreadSession:
    return ThreadSession(
        thread_key=row["thread_key"],
        session_id=row["session_id"],
        compacted=bool(row["compacted"]),
        created_at=_from_epoch(row["created_at"]),
    )


# ─────────────────────────────────────────────
# Channel configuration
# ─────────────────────────────────────────────

async def channel_config_get(db: aiosqlite.Connection, channel_id: str) -> Optional[ChannelConfig]:
    async with db.execute("SELECT * FROM channel_config WHERE channel_id = ?", (channel_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_channel_config(row)


async def channel_config_set(
    db: aiosqlite.Connection,
    channel_id: str,
    configured_by: str,
    custom_prompt: Optional[str] = None,
    agent: Optional[str] = None,
    channel_name: str = "",
    tools: Optional[Sequence[str]] = None,
) -> ChannelConfig:
    custom_prompt = (custom_prompt or "").strip() or None
    agent = (agent or "").strip() or None
    if custom_prompt and len(custom_prompt) > MAX_CUSTOM_PROMPT_LENGTH:
        raise ValueError(
            f"Custom prompt is {len(custom_prompt)} characters; the maximum is {MAX_CUSTOM_PROMPT_LENGTH}"
        )
    # Normalize: trimmed, lower-case, de-duplicated, order kept
    enabled: list[str] = []
    for name in tools or ():
        name = name.strip().lower()
        if name and name not in enabled:
            enabled.append(name)
    now = _now()
    await db.execute(
        "INSERT OR REPLACE INTO channel_config "
        "(channel_id, channel_name, custom_prompt, agent, tools, configured_by, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        (channel_id, channel_name, custom_prompt, agent, json.dumps(enabled) if enabled else None,
         configured_by, now),
    )
    await db.commit()
    logger.info(f"Channel config set for {channel_id} by {configured_by} (agent={agent}, tools={enabled})")
    return ChannelConfig(
        channel_id=channel_id, channel_name=channel_name, custom_prompt=custom_prompt,
        agent=agent, configured_by=configured_by, updated_at=_from_epoch(now), tools=enabled,
    )


async def channel_config_clear(db: aiosqlite.Connection, channel_id: str) -> bool:
    async with db.execute("DELETE FROM channel_config WHERE channel_id = ?", (channel_id,)) as cur:
        removed = cur.rowcount
    await db.commit()
    return removed > 0


async def channel_config_list(db: aiosqlite.Connection) -> list[ChannelConfig]:
    async with db.execute("SELECT * FROM channel_config ORDER BY channel_name, channel_id") as cur:
        rows = await cur.fetchall()
    return [_row_to_channel_config(r) for r in rows]


def _row_to_channel_config(row: aiosqlite.Row) -> ChannelConfig:
    return ChannelConfig(
        channel_id=row["channel_id"],
        channel_name=row["channel_name"],
        custom_prompt=row["custom_prompt"],
        agent=row["agent"],
        configured_by=row["configured_by"],
        updated_at=_from_epoch(row["updated_at"]),
        tools=json.loads(row["tools"]) if row["tools"] else [],
    )
