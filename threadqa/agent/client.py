"""
HTTP client for the agent runtime (OpenCode-compatible server).

The client is an explicitly constructed object handed to the engine. It must be
configured with a base URL before any call; calling an operation on an
unconfigured client raises ``RuntimeNotConfigured``.
"""
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

import httpx

from threadqa.agent.events import AgentEvent, parse_event
from threadqa.config import RUNTIME_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)


class RuntimeNotConfigured(Exception):
    """Raised when the runtime client is used before ``configure()``."""

    def __init__(self) -> None:
        super().__init__("Agent runtime client not initialized. Call configure() first.")


class AgentRuntimeError(Exception):
    """Raised when the agent runtime rejects a request or returns a malformed payload."""

    def __init__(self, operation: str, detail: str, status_code: Optional[int] = None) -> None:
        self.operation = operation
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"Agent runtime {operation} failed: {detail}")


@dataclass(frozen=True)
class FilePart:
    """An attachment already converted to a data URI."""
    mime: str
    url: str
    filename: Optional[str] = None


def build_parts(text: str, files: Sequence[FilePart] = ()) -> list[dict[str, Any]]:
    """Text first, then any file attachments."""
    parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
    for f in files:
        part: dict[str, Any] = {"type": "file", "mime": f.mime, "url": f.url}
        if f.filename:
            part["filename"] = f.filename
        parts.append(part)
    return parts


def _frame_data(lines: list[str]) -> Optional[str]:
    """Join the ``data:`` lines of one SSE frame; None if the frame has no data."""
    data = [line[5:].lstrip() for line in lines if line.startswith("data:")]
    if not data:
        return None
    return "\n".join(data)


class AgentRuntimeClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = RUNTIME_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport
        self._base_url: Optional[str] = None
        self._http: Optional[httpx.AsyncClient] = None
        if base_url:
            self.configure(base_url)

    def configure(self, base_url: str) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            transport=self._transport,
        )
        logger.info(f"Agent runtime client configured for {self._base_url}")

    @property
    def base_url(self) -> str:
        if self._base_url is None:
            raise RuntimeNotConfigured()
        return self._base_url

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeNotConfigured()
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def create_session(self, title: str) -> str:
        resp = await self._client().post("/session", json={"title": title})
        if resp.status_code >= 400:
            raise AgentRuntimeError("create_session", resp.text, resp.status_code)
        try:
            return resp.json()["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise AgentRuntimeError("create_session", f"unexpected response: {resp.text[:200]}") from e

    async def submit_question(
        self, session_id: str, parts: list[dict[str, Any]], agent: Optional[str] = None
    ) -> None:
        """Fire-and-forget prompt; the answer arrives on the event stream."""
        body: dict[str, Any] = {"parts": parts}
        if agent:
            body["agent"] = agent
        resp = await self._client().post(f"/session/{session_id}/prompt_async", json=body)
        if resp.status_code >= 400:
            raise AgentRuntimeError("submit_question", resp.text, resp.status_code)

    async def health(self) -> bool:
        try:
            resp = await self._client().get("/global/health", timeout=2.0)
        except httpx.HTTPError:
            return False
        return resp.status_code == 200

    @asynccontextmanager
    async def subscribe_events(self) -> AsyncIterator[AsyncIterator[AgentEvent]]:
        """Open the live event feed.

        The subscription is established (response headers received) before the
        context body runs, so a prompt submitted inside it cannot outrun it.
        Uses its own connection without a read timeout; the feed is long-lived.
        """
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=httpx.Timeout(None, connect=10.0), transport=self._transport
        ) as sse:
            async with sse.stream("GET", "/event", headers={"Accept": "text/event-stream"}) as resp:
                if resp.status_code >= 400:
                    raw = await resp.aread()
                    raise AgentRuntimeError("subscribe_events", raw.decode(errors="replace"), resp.status_code)
                events = self._iter_events(resp)
                try:
                    yield events
                finally:
                    await events.aclose()
                    logger.debug("Event subscription closed")

    async def _iter_events(self, response: httpx.Response) -> AsyncIterator[AgentEvent]:
        async for payload in _iter_frames(response):
            try:
                raw = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug(f"Skipping undecodable event payload: {payload[:120]}")
                continue
            yield parse_event(raw)


async def _iter_frames(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the data payload of each SSE frame; frames end at a blank line."""
    frame: list[str] = []
    async for line in response.aiter_lines():
        if line:
            frame.append(line)
            continue
        payload = _frame_data(frame)
        frame = []
        if payload is not None:
            yield payload
    payload = _frame_data(frame)
    if payload is not None:
        yield payload
