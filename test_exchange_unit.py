"""
Unit tests for the exchange stream consumer and answer classification.
Events are scripted through FakeRuntime; no live agent runtime is involved.
"""
import asyncio
import time
from contextlib import asynccontextmanager
import pytest
import httpx

from threadqa.exchange import (
    FALLBACK_ANSWER,
    ExchangeState,
    Phase,
    apply_event,
    is_clarifying_question,
    run_exchange,
    tool_status_line,
)
from threadqa.agent.client import FilePart
from threadqa.agent.events import TextUpdate, StepFinish, Compaction, OtherEvent
from threadqa.prompt import ContextSnapshot

from conftest import FakeRuntime, text_part, tool_part, step_finish, compaction, idle

SID = "ses_target"
OTHER = "ses_other"


# ─────────────────────────────────────────────
# Answer classification
# ─────────────────────────────────────────────

class TestIsClarifyingQuestion:
    def test_trailing_question_mark(self):
        assert is_clarifying_question("Which file do you mean?") is True

    def test_trailing_whitespace_ignored(self):
        assert is_clarifying_question("Which service?  \n") is True

    def test_statement(self):
        assert is_clarifying_question("It lives in app/models.py.") is False

    def test_question_mark_mid_text(self):
        assert is_clarifying_question("Why? Because of the cache layer.") is False


def test_tool_status_line_with_and_without_text():
    assert tool_status_line("", ["grep"]) == "_Using: grep..._"
    assert tool_status_line("Looking", ["grep", "read"]) == "Looking\n\n_Using: grep, read..._"


# ─────────────────────────────────────────────
# State machine (pure)
# ─────────────────────────────────────────────

class TestApplyEvent:
    def test_text_replaces_not_appends(self):
        state = ExchangeState()
        apply_event(state, TextUpdate(SID, "Partial"), SID)
        apply_event(state, TextUpdate(SID, "Partial answer."), SID)
        assert state.latest_text == "Partial answer."
        assert state.phase is Phase.ACCUMULATING

    def test_other_session_ignored(self):
        state = ExchangeState()
        assert apply_event(state, TextUpdate(OTHER, "not ours"), SID) is None
        assert state.latest_text == ""
        assert state.phase is Phase.AWAITING_FIRST_EVENT

    def test_answer_frozen_after_stop(self):
        state = ExchangeState()
        apply_event(state, TextUpdate(SID, "Final."), SID)
        apply_event(state, StepFinish(SID, "stop"), SID)
        assert apply_event(state, TextUpdate(SID, "Summary of compaction"), SID) is None
        assert state.latest_text == "Final."
        assert state.phase is Phase.ANSWER_CAPTURED

    def test_step_finish_other_reason_does_not_capture(self):
        state = ExchangeState()
        apply_event(state, StepFinish(SID, "tool-calls"), SID)
        assert state.answer_captured is False

    def test_compaction_before_answer_ignored(self):
        state = ExchangeState()
        apply_event(state, Compaction(SID), SID)
        assert state.compacted is False
        assert state.done is False

    def test_unknown_event_ignored(self):
        state = ExchangeState()
        assert apply_event(state, OtherEvent(type="file.edited", session_id=SID), SID) is None
        assert state.done is False


# ─────────────────────────────────────────────
# Full exchanges
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_plain_answer():
    runtime = FakeRuntime([text_part(SID, "Answer."), step_finish(SID), idle(SID)])
    result = await run_exchange(runtime, SID, "Where is auth?")
    assert result.text == "Answer."
    assert result.is_question is False
    assert result.compacted is False


@pytest.mark.asyncio
async def test_clarifying_question_answer():
    runtime = FakeRuntime([text_part(SID, "Which file?"), step_finish(SID), idle(SID)])
    result = await run_exchange(runtime, SID, "Explain the thing")
    assert result.text == "Which file?"
    assert result.is_question is True


@pytest.mark.asyncio
async def test_compaction_after_answer_is_flagged():
    runtime = FakeRuntime([text_part(SID, "Done."), step_finish(SID), compaction(SID)], hang=True)
    result = await run_exchange(runtime, SID, "q", grace=5)
    assert result.compacted is True
    assert result.text == "Done."


@pytest.mark.asyncio
async def test_compaction_for_other_session_is_ignored():
    runtime = FakeRuntime([text_part(SID, "Done."), step_finish(SID), compaction(OTHER), idle(SID)])
    result = await run_exchange(runtime, SID, "q")
    assert result.compacted is False


@pytest.mark.asyncio
async def test_idle_for_other_session_does_not_end_exchange():
    runtime = FakeRuntime([idle(OTHER), text_part(SID, "Still ours."), idle(SID)])
    result = await run_exchange(runtime, SID, "q")
    assert result.text == "Still ours."


@pytest.mark.asyncio
async def test_no_text_returns_fallback():
    runtime = FakeRuntime([step_finish(SID), idle(SID)])
    result = await run_exchange(runtime, SID, "q")
    assert result.text == FALLBACK_ANSWER
    assert result.is_question is False


@pytest.mark.asyncio
async def test_grace_window_ends_exchange_without_compaction():
    runtime = FakeRuntime([text_part(SID, "Answer."), step_finish(SID)], hang=True)
    started = time.monotonic()
    result = await run_exchange(runtime, SID, "q", timeout=10, grace=0.1)
    assert time.monotonic() - started < 2
    assert result.text == "Answer."
    assert result.compacted is False
    assert runtime.subscription_closed is True


@pytest.mark.asyncio
async def test_hard_ceiling_returns_last_text():
    runtime = FakeRuntime([text_part(SID, "Halfway there")], hang=True)
    result = await run_exchange(runtime, SID, "q", timeout=0.2)
    assert result.text == "Halfway there"
    assert runtime.subscription_closed is True


@pytest.mark.asyncio
async def test_hard_ceiling_with_no_text_returns_fallback():
    runtime = FakeRuntime([], hang=True)
    result = await run_exchange(runtime, SID, "q", timeout=0.1)
    assert result.text == FALLBACK_ANSWER


@pytest.mark.asyncio
async def test_stream_closing_ends_exchange():
    runtime = FakeRuntime([text_part(SID, "Answer.")])
    result = await run_exchange(runtime, SID, "q")
    assert result.text == "Answer."


@pytest.mark.asyncio
async def test_stream_error_propagates_and_closes_subscription():
    runtime = FakeRuntime([text_part(SID, "partial")], error=httpx.ReadError("connection reset"))
    with pytest.raises(httpx.ReadError):
        await run_exchange(runtime, SID, "q")
    assert runtime.subscription_closed is True


@pytest.mark.asyncio
async def test_subscribes_before_submitting():
    runtime = FakeRuntime([text_part(SID, "A."), idle(SID)])
    await run_exchange(runtime, SID, "q")
    assert runtime.calls == ["subscribe", "submit"]


@pytest.mark.asyncio
async def test_submission_payload():
    runtime = FakeRuntime([idle(SID)])
    ctx = ContextSnapshot(user_name="Dana", channel_name="eng")
    files = [FilePart(mime="image/png", url="data:image/png;base64,AAAA", filename="shot.png")]
    await run_exchange(runtime, SID, "How does login work?", ctx, needs_full_context=True,
                       agent="planning", files=files)

    sent = runtime.submitted[0]
    assert sent["session_id"] == SID
    assert sent["agent"] == "planning"
    text = sent["parts"][0]["text"]
    assert text.endswith("<user_question>\nHow does login work?\n</user_question>")
    assert "User: Dana" in text
    assert sent["parts"][1] == {"type": "file", "mime": "image/png",
                                "url": "data:image/png;base64,AAAA", "filename": "shot.png"}


@pytest.mark.asyncio
async def test_progress_reports_text_and_tools():
    runtime = FakeRuntime([
        tool_part(SID, "c1", "grep", "running"),
        text_part(SID, "Looking at auth"),
        tool_part(SID, "c2", "read", "running"),
        tool_part(SID, "c1", "grep", "completed"),
        tool_part(SID, "c3", "glob", "running"),
        text_part(SID, ""),
        step_finish(SID),
        text_part(SID, "after stop"),
        tool_part(SID, "c4", "bash", "running"),
        idle(SID),
    ])
    updates = []
    result = await run_exchange(runtime, SID, "q", on_progress=updates.append)
    assert updates == [
        "_Using: grep..._",
        "Looking at auth",
        "Looking at auth\n\n_Using: grep, read..._",
        "Looking at auth\n\n_Using: read, glob..._",
    ]
    assert result.text == FALLBACK_ANSWER


@pytest.mark.asyncio
async def test_without_context_sends_only_wrapped_question():
    runtime = FakeRuntime([idle(SID)])
    await run_exchange(runtime, SID, "hi")
    assert runtime.submitted[0]["parts"] == [{"type": "text", "text": "<user_question>\nhi\n</user_question>"}]
    assert runtime.submitted[0]["agent"] is None


@pytest.mark.asyncio
async def test_concurrent_exchanges_are_independent():
    a = FakeRuntime([text_part("ses_a", "A."), text_part("ses_b", "B?"), idle("ses_a")])
    b = FakeRuntime([text_part("ses_a", "A."), text_part("ses_b", "B?"), idle("ses_b")])
    ra, rb = await asyncio.gather(run_exchange(a, "ses_a", "q1"), run_exchange(b, "ses_b", "q2"))
    assert (ra.text, ra.is_question) == ("A.", False)
    assert (rb.text, rb.is_question) == ("B?", True)


class StuckSubmitRuntime(FakeRuntime):
    """Accepts the subscription but never returns from submitting the prompt."""

    async def submit_question(self, session_id, parts, agent=None):
        self.calls.append("submit")
        await asyncio.Event().wait()


class StuckSubscribeRuntime(FakeRuntime):
    """Never finishes opening the event feed (headers never arrive)."""

    @asynccontextmanager
    async def subscribe_events(self):
        self.calls.append("subscribe")
        await asyncio.Event().wait()
        yield self._stream([])


@pytest.mark.asyncio
async def test_hard_ceiling_covers_stuck_submit():
    runtime = StuckSubmitRuntime()
    result = await asyncio.wait_for(run_exchange(runtime, SID, "q", timeout=0.2), timeout=2)
    assert result.text == FALLBACK_ANSWER
    assert runtime.subscription_closed is True


@pytest.mark.asyncio
async def test_hard_ceiling_covers_stuck_subscription():
    runtime = StuckSubscribeRuntime()
    result = await asyncio.wait_for(run_exchange(runtime, SID, "q", timeout=0.2), timeout=2)
    assert result.text == FALLBACK_ANSWER
    assert "submit" not in runtime.calls


@pytest.mark.asyncio
async def test_runtime_timeout_before_ceiling_propagates():
    runtime = FakeRuntime([text_part(SID, "partial")], error=asyncio.TimeoutError())
    with pytest.raises(asyncio.TimeoutError):
        await run_exchange(runtime, SID, "q", timeout=10)
    assert runtime.subscription_closed is True
