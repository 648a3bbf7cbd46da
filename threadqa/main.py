"""
ThreadQA main entry point.

Starts a FastAPI HTTP server that:
  1. Answers codebase questions per conversation thread (/api/threads/{key}/ask)
  2. Streams progress for a question as SSE (/api/threads/{key}/ask/stream)
  3. Exposes the session directory and per-channel configuration
"""
import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from threadqa import config
from threadqa.agent.client import AgentRuntimeClient, AgentRuntimeError, FilePart, RuntimeNotConfigured
from threadqa.agent.server import RuntimeServer
from threadqa.db import crud
from threadqa.db.database import StoreUnavailable, close_db, get_db
from threadqa.engine import QuestionOutcome, handle_question
from threadqa.prompt import ContextSnapshot, truncate_thread_context
from threadqa.rate_limit import RateLimiter, RateLimitExceeded, format_retry_after

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("threadqa")

APOLOGY = "Sorry, I ran into an issue processing your question. Please try again or rephrase."
RECONFIGURING = "The assistant is being reconfigured. Please try again in a moment."


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: open the session store, connect (and optionally spawn) the runtime
    await get_db()
    runtime_url = config.RUNTIME_URL
    if config.SPAWN_RUNTIME:
        supervisor = RuntimeServer(config.REPO_DIR)
        await supervisor.start()
        app.state.runtime_server = supervisor
        runtime_url = supervisor.url
    if app.state.runtime is None:
        app.state.runtime = AgentRuntimeClient(runtime_url)
    logger.info(f"ThreadQA running at http://{config.HOST}:{config.PORT} (runtime: {runtime_url})")
    yield
    # Shutdown
    await app.state.runtime.aclose()
    app.state.runtime = None
    if app.state.runtime_server is not None:
        await app.state.runtime_server.stop()
        app.state.runtime_server = None
    await close_db()


app = FastAPI(
    title="ThreadQA",
    description="Read-only codebase Q&A over per-thread agent sessions.",
    version=config.VERSION,
    lifespan=lifespan,
)
app.state.runtime = None
app.state.runtime_server = None
app.state.rate_limiter = RateLimiter()


async def _store(coro_fn, *args, **kwargs):
    """Run a store call with the DB timeout; map store failures to 503."""
    try:
        db = await asyncio.wait_for(get_db(), timeout=config.DB_TIMEOUT)
        return await asyncio.wait_for(coro_fn(db, *args, **kwargs), timeout=config.DB_TIMEOUT)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=503, detail="Database operation timeout")
    except (StoreUnavailable, sqlite3.Error) as e:
        logger.error(f"Session store error: {type(e).__name__}: {e}")
        raise HTTPException(status_code=503, detail="Session store unavailable")


# ─────────────────────────────────────────────
# Question answering
# ─────────────────────────────────────────────

class Attachment(BaseModel):
    mime: str
    url: str
    filename: str | None = None


class AskRequest(BaseModel):
    question: str
    user_id: str = "anonymous"
    user_name: str = "Unknown"
    user_title: str = ""
    user_status_text: str = ""
    channel_id: str = ""
    channel_name: str = "unknown-channel"
    channel_type: str = "channel"
    channel_topic: str = ""
    channel_purpose: str = ""
    thread_context: str | None = None
    linked_thread_context: str | None = None
    tools: list[str] = []
    tool_instructions: dict[str, str] = {}
    agent: str | None = None
    files: list[Attachment] = []


class AskResponse(BaseModel):
    text: str
    is_question: bool
    compacted: bool
    session_id: str
    is_new: bool


async def _prepare(body: AskRequest) -> dict[str, Any]:
    """Validate the request and resolve per-channel settings into engine arguments."""
    question = body.question.strip()
    if not question:
        raise HTTPException(
            status_code=400,
            detail="It looks like you didn't ask a question. How can I help?",
        )
    server = app.state.runtime_server
    if server is not None and server.restarting:
        raise HTTPException(status_code=503, detail=RECONFIGURING)
    try:
        app.state.rate_limiter.check(body.user_id)
    except RateLimitExceeded as e:
        raise HTTPException(
            status_code=429,
            detail=f"You've reached the question limit. Try again in {format_retry_after(e.retry_after)}.",
            headers={"Retry-After": str(e.retry_after)},
        )

    ctx = ContextSnapshot(
        user_name=body.user_name,
        user_title=body.user_title,
        user_status_text=body.user_status_text,
        channel_id=body.channel_id,
        channel_name=body.channel_name,
        channel_type=body.channel_type,
        channel_topic=body.channel_topic,
        channel_purpose=body.channel_purpose,
        thread_context=truncate_thread_context(body.thread_context) if body.thread_context else None,
        linked_thread_context=body.linked_thread_context,
        tools=tuple(body.tools),
        tool_instructions=dict(body.tool_instructions),
        repo_name=config.TARGET_REPO,
    )
    agent = body.agent
    if body.channel_id:
        channel = await _store(crud.channel_config_get, body.channel_id)
        if channel is not None:
            ctx = replace(ctx, custom_prompt=channel.custom_prompt)
            if not ctx.tools and channel.tools:
                ctx = replace(ctx, tools=tuple(channel.tools))
            agent = agent or channel.agent

    return {
        "question": question,
        "ctx": ctx,
        "agent": agent,
        "files": [FilePart(mime=f.mime, url=f.url, filename=f.filename) for f in body.files],
    }


async def _answer(thread_key: str, prepared: dict[str, Any], report=None) -> QuestionOutcome:
    try:
        db = await asyncio.wait_for(get_db(), timeout=config.DB_TIMEOUT)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=503, detail="Database operation timeout")
    return await handle_question(
        db,
        app.state.runtime,
        thread_key,
        prepared["question"],
        prepared["ctx"],
        report,
        agent=prepared["agent"],
        files=prepared["files"],
    )


def _outcome_payload(outcome: QuestionOutcome) -> dict[str, Any]:
    return {
        "text": outcome.result.text,
        "is_question": outcome.result.is_question,
        "compacted": outcome.result.compacted,
        "session_id": outcome.session_id,
        "is_new": outcome.is_new,
    }


@app.post("/api/threads/{thread_key}/ask", response_model=AskResponse)
async def api_ask(thread_key: str, body: AskRequest):
    prepared = await _prepare(body)
    try:
        outcome = await _answer(thread_key, prepared)
    except (StoreUnavailable, sqlite3.Error) as e:
        logger.error(f"Session store error for thread '{thread_key}': {type(e).__name__}: {e}")
        raise HTTPException(status_code=503, detail="Session store unavailable")
    except (AgentRuntimeError, RuntimeNotConfigured, httpx.HTTPError, asyncio.TimeoutError) as e:
        logger.error(f"Error answering question in thread '{thread_key}': {type(e).__name__}: {e}")
        raise HTTPException(status_code=502, detail=APOLOGY)
    return _outcome_payload(outcome)


def _sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@app.post("/api/threads/{thread_key}/ask/stream")
async def api_ask_stream(thread_key: str, body: AskRequest):
    """
    SSE stream of throttled `progress` events followed by one `answer` event
    (or one `error` event). The exchange keeps running if the client goes away.
    """
    prepared = await _prepare(body)
    queue: asyncio.Queue = asyncio.Queue()

    async def run():
        try:
            outcome = await _answer(thread_key, prepared, report=lambda text: queue.put_nowait(("progress", text)))
            queue.put_nowait(("answer", _outcome_payload(outcome)))
        except Exception as e:
            logger.error(f"Error answering question in thread '{thread_key}': {type(e).__name__}: {e}")
            queue.put_nowait(("error", APOLOGY))

    task = asyncio.create_task(run())

    async def event_generator():
        while True:
            kind, data = await queue.get()
            if kind == "progress":
                yield _sse("progress", {"text": data})
                continue
            if kind == "answer":
                yield _sse("answer", data)
            else:
                yield _sse("error", {"detail": data})
            break
        await task

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# ─────────────────────────────────────────────
# Session directory (read-only)
# ─────────────────────────────────────────────

def _session_payload(s) -> dict[str, Any]:
    return {"thread_key": s.thread_key, "session_id": s.session_id,
            "compacted": s.compacted, "created_at": s.created_at.isoformat()}


@app.get("/api/sessions")
async def api_sessions(limit: int = 200):
    sessions = await _store(crud.session_list, limit=limit)
    return [_session_payload(s) for s in sessions]


@app.get("/api/sessions/{thread_key}")
async def api_session(thread_key: str):
    s = await _store(crud.session_get, thread_key)
    if s is None:
        raise HTTPException(status_code=404, detail=f"No session for thread '{thread_key}'")
    return _session_payload(s)


# ─────────────────────────────────────────────
# Channel configuration
# ─────────────────────────────────────────────

class ChannelConfigBody(BaseModel):
    configured_by: str
    channel_name: str = ""
    custom_prompt: str | None = None
    agent: str | None = None
    tools: list[str] = []


def _channel_payload(c) -> dict[str, Any]:
    return {"channel_id": c.channel_id, "channel_name": c.channel_name,
            "custom_prompt": c.custom_prompt, "agent": c.agent, "tools": c.tools,
            "configured_by": c.configured_by, "updated_at": c.updated_at.isoformat()}


@app.get("/api/channels")
async def api_channels():
    channels = await _store(crud.channel_config_list)
    return [_channel_payload(c) for c in channels]


@app.get("/api/channels/{channel_id}/config")
async def api_channel_config(channel_id: str):
    c = await _store(crud.channel_config_get, channel_id)
    if c is None:
        raise HTTPException(status_code=404, detail=f"Channel '{channel_id}' has no configuration")
    return _channel_payload(c)


@app.put("/api/channels/{channel_id}/config")
async def api_set_channel_config(channel_id: str, body: ChannelConfigBody):
    try:
        c = await _store(
            crud.channel_config_set, channel_id, body.configured_by,
            custom_prompt=body.custom_prompt, agent=body.agent, channel_name=body.channel_name,
            tools=body.tools,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _channel_payload(c)


@app.delete("/api/channels/{channel_id}/config")
async def api_clear_channel_config(channel_id: str):
    removed = await _store(crud.channel_config_clear, channel_id)
    return {"ok": removed}


# ─────────────────────────────────────────────
# Runtime management & health
# ─────────────────────────────────────────────

@app.post("/api/runtime/restart")
async def api_runtime_restart():
    server = app.state.runtime_server
    if server is None:
        raise HTTPException(status_code=409, detail="Agent runtime is not managed by this process")
    elapsed = await server.restart()
    return {"ok": True, "elapsed": round(elapsed, 1)}


@app.get("/api/config")
async def api_config():
    return config.get_config_dict()


@app.get("/health")
async def health():
    runtime_ok = False
    if app.state.runtime is not None:
        try:
            runtime_ok = await app.state.runtime.health()
        except RuntimeNotConfigured:
            runtime_ok = False
    return {"status": "ok", "service": "ThreadQA", "runtime": runtime_ok}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("threadqa.main:app", host=config.HOST, port=config.PORT, reload=True)
