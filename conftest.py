"""
Shared fixtures for ThreadQA unit tests.

Every test gets its own temporary SQLite database, and exchanges run against
FakeRuntime, a scripted stand-in for the agent runtime's HTTP + SSE API.
No live runtime or server process is needed.
"""
import asyncio
from collections import deque
from contextlib import asynccontextmanager

import pytest
import pytest_asyncio

from threadqa import config
import threadqa.db.database as dbmod
from threadqa.agent.events import parse_event


# ─────────────────────────────────────────────
# Raw runtime event builders (wire shape of the SSE feed)
# ─────────────────────────────────────────────

def text_part(session_id: str, text: str) -> dict:
    return {"type": "message.part.updated",
            "properties": {"part": {"sessionID": session_id, "type": "text", "text": text}}}


def tool_part(session_id: str, call_id: str, tool: str, status: str) -> dict:
    return {"type": "message.part.updated",
            "properties": {"part": {"sessionID": session_id, "type": "tool", "callID": call_id,
                                    "tool": tool, "state": {"status": status}}}}


def step_finish(session_id: str, reason: str = "stop") -> dict:
    return {"type": "message.part.updated",
            "properties": {"part": {"sessionID": session_id, "type": "step-finish", "reason": reason}}}


def compaction(session_id: str) -> dict:
    return {"type": "message.part.updated",
            "properties": {"part": {"sessionID": session_id, "type": "compaction"}}}


def idle(session_id: str) -> dict:
    return {"type": "session.idle", "properties": {"sessionID": session_id}}


class FakeRuntime:
    """Scripted agent runtime.

    ``scripts`` is a list of event lists, one per subscription, in order; the
    last script is reused once the others are consumed. After a script's events
    the stream either ends, raises ``error``, or hangs (``hang=True``).
    """

    def __init__(self, *scripts, hang: bool = False, error: Exception | None = None):
        self.scripts = deque(list(s) for s in scripts) or deque([[]])
        self.hang = hang
        self.error = error
        self.calls: list[str] = []
        self.submitted: list[dict] = []
        self.created = 0
        self.create_delay = 0.0
        self.create_error: Exception | None = None
        self.subscription_closed: bool | None = None

    async def create_session(self, title: str) -> str:
        self.calls.append("create")
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error:
            raise self.create_error
        self.created += 1
        return f"ses_{self.created}"

    @asynccontextmanager
    async def subscribe_events(self):
        self.calls.append("subscribe")
        self.subscription_closed = False
        script = self.scripts.popleft() if len(self.scripts) > 1 else self.scripts[0]
        try:
            yield self._stream(script)
        finally:
            self.subscription_closed = True

    async def _stream(self, script):
        for raw in script:
            await asyncio.sleep(0)
            yield parse_event(raw)
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()

    async def submit_question(self, session_id, parts, agent=None):
        self.calls.append("submit")
        self.submitted.append({"session_id": session_id, "parts": parts, "agent": agent})

    async def health(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


# ─────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────

@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "sessions.db")
    monkeypatch.setattr(config, "DB_PATH", path)
    return path


@pytest_asyncio.fixture
async def db(db_path):
    await dbmod.close_db()
    conn = await dbmod.get_db()
    try:
        yield conn
    finally:
        await dbmod.close_db()
