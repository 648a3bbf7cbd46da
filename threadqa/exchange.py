"""
Stream consumer for one question/answer exchange with the agent runtime.

Lifecycle of an exchange:

    AWAITING_FIRST_EVENT -> ACCUMULATING -> ANSWER_CAPTURED -> DONE

1. Subscribe to the runtime's shared event feed (before submitting, so no early
   event is missed).
2. Submit the question (context prefix + delimited question + attachments).
3. Consume events for our session only. Text updates replace the answer; tool
   updates maintain the set of running tools; both feed progress reporting.
4. A ``step-finish`` with reason ``stop`` freezes the answer. From then on only
   a compaction signal matters, awaited for a short grace window.
5. ``session.idle``, compaction after the answer, the grace window or the hard
   ceiling end the exchange. Timeouts are normal termination, not errors.

Stream and network errors are not retried; they propagate to the caller.
"""
import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional, Protocol, Sequence

from threadqa.agent.client import FilePart, build_parts
from threadqa.agent.events import (
    AgentEvent,
    Compaction,
    SessionIdle,
    StepFinish,
    TextUpdate,
    ToolUpdate,
)
from threadqa.config import COMPACTION_GRACE, EXCHANGE_TIMEOUT
from threadqa.prompt import ContextSnapshot, build_context_prefix, wrap_question

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "I wasn't able to generate a response. Please try again."

ProgressCallback = Callable[[str], None]


class AgentRuntime(Protocol):
    def subscribe_events(self) -> Any: ...

    async def submit_question(
        self, session_id: str, parts: list[dict[str, Any]], agent: Optional[str] = None
    ) -> None: ...


class Phase(enum.Enum):
    AWAITING_FIRST_EVENT = "awaiting_first_event"
    ACCUMULATING = "accumulating"
    ANSWER_CAPTURED = "answer_captured"
    DONE = "done"


@dataclass
class ExchangeState:
    latest_text: str = ""
    active_tools: dict[str, str] = field(default_factory=dict)  # call id -> tool name
    answer_captured: bool = False
    compacted: bool = False
    done: bool = False
    phase: Phase = Phase.AWAITING_FIRST_EVENT
    reason: str = ""

    def finish(self, reason: str) -> None:
        self.done = True
        self.phase = Phase.DONE
        self.reason = reason


@dataclass(frozen=True)
class ExchangeResult:
    text: str
    is_question: bool
    compacted: bool


def is_clarifying_question(text: str) -> bool:
    """Heuristic: an answer ending in '?' means the agent is waiting on the user."""
    return text.strip().endswith("?")


def tool_status_line(latest_text: str, tools: Sequence[str]) -> str:
    using = f"_Using: {', '.join(tools)}..._"
    return f"{latest_text}\n\n{using}" if latest_text else using


def apply_event(state: ExchangeState, event: AgentEvent, session_id: str) -> Optional[str]:
    """Fold one event into the exchange state.

    Returns a progress string to report, if the event produced one. Events for
    other sessions and unknown event kinds are ignored.
    """
    if getattr(event, "session_id", None) != session_id:
        return None

    if isinstance(event, SessionIdle):
        state.finish("idle")
        return None

    if state.answer_captured:
        # The answer is frozen; only a compaction signal still matters.
        if isinstance(event, Compaction):
            state.compacted = True
            state.finish("compacted")
        return None

    if state.phase is Phase.AWAITING_FIRST_EVENT:
        state.phase = Phase.ACCUMULATING

    if isinstance(event, TextUpdate):
        state.latest_text = event.text
        return event.text or None
    if isinstance(event, ToolUpdate):
        if event.status == "running":
            state.active_tools[event.call_id] = event.tool
            return tool_status_line(state.latest_text, list(state.active_tools.values()))
        if event.status in ("completed", "error"):
            state.active_tools.pop(event.call_id, None)
        return None
    if isinstance(event, StepFinish):
        if event.reason == "stop":
            state.answer_captured = True
            state.phase = Phase.ANSWER_CAPTURED
        return None
    return None


def build_question_text(
    question: str, ctx: Optional[ContextSnapshot], needs_full_context: bool
) -> str:
    prefix = build_context_prefix(ctx, needs_full_context) if ctx is not None else ""
    return prefix + wrap_question(question)


async def _next_event(events: AsyncIterator[AgentEvent]) -> AgentEvent:
    return await events.__anext__()


async def _consume(
    runtime: AgentRuntime,
    session_id: str,
    parts: list[dict[str, Any]],
    state: ExchangeState,
    on_progress: Optional[ProgressCallback],
    agent: Optional[str],
    grace: float,
) -> None:
    grace_deadline: Optional[float] = None

    async with runtime.subscribe_events() as events:
        await runtime.submit_question(session_id, parts, agent=agent)

        while not state.done:
            try:
                if grace_deadline is None:
                    event = await _next_event(events)
                else:
                    remaining = grace_deadline - time.monotonic()
                    if remaining <= 0:
                        state.finish("grace")
                        break
                    event = await asyncio.wait_for(_next_event(events), timeout=remaining)
            except asyncio.TimeoutError:
                if grace_deadline is None:
                    raise
                continue
            except StopAsyncIteration:
                state.finish("stream_closed")
                break

            was_captured = state.answer_captured
            status = apply_event(state, event, session_id)
            if status and on_progress is not None:
                on_progress(status)
            if state.answer_captured and not was_captured:
                grace_deadline = time.monotonic() + grace


async def run_exchange(
    runtime: AgentRuntime,
    session_id: str,
    question: str,
    ctx: Optional[ContextSnapshot] = None,
    on_progress: Optional[ProgressCallback] = None,
    *,
    needs_full_context: bool = False,
    agent: Optional[str] = None,
    files: Sequence[FilePart] = (),
    timeout: float = EXCHANGE_TIMEOUT,
    grace: float = COMPACTION_GRACE,
) -> ExchangeResult:
    """Ask one question in an existing session and wait for the answer.

    ``timeout`` bounds the whole exchange: opening the subscription, submitting
    the question and consuming events.
    """
    parts = build_parts(build_question_text(question, ctx, needs_full_context), files)
    state = ExchangeState()
    started = time.monotonic()

    task = asyncio.ensure_future(_consume(runtime, session_id, parts, state, on_progress, agent, grace))
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    finally:
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    if task in done:
        task.result()  # stream and network failures propagate
    else:
        state.finish("timeout")

    elapsed = time.monotonic() - started
    logger.info(f"Exchange for session {session_id} ended ({state.reason}) after {elapsed:.1f}s")

    if not state.latest_text:
        logger.warning(f"Agent returned empty answer for session {session_id}")
        return ExchangeResult(text=FALLBACK_ANSWER, is_question=False, compacted=state.compacted)

    return ExchangeResult(
        text=state.latest_text,
        is_question=is_clarifying_question(state.latest_text),
        compacted=state.compacted,
    )
