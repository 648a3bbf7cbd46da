"""
Agent-runtime event model.

The runtime publishes a single shared SSE feed of ``{"type": ..., "properties": ...}``
objects for every session it hosts. ``parse_event`` narrows each raw payload to
one of a closed set of dataclasses; anything unrecognised becomes ``OtherEvent``
and is ignored by consumers.
"""
from dataclasses import dataclass
from typing import Any, Optional, Union

PART_UPDATED = "message.part.updated"
SESSION_IDLE = "session.idle"


@dataclass(frozen=True)
class TextUpdate:
    session_id: str
    text: str           # full text of the part so far, not a delta


@dataclass(frozen=True)
class ToolUpdate:
    session_id: str
    call_id: str
    tool: str
    status: str         # pending | running | completed | error


@dataclass(frozen=True)
class StepFinish:
    session_id: str
    reason: Optional[str]


@dataclass(frozen=True)
class Compaction:
    session_id: str


@dataclass(frozen=True)
class SessionIdle:
    session_id: str


@dataclass(frozen=True)
class OtherEvent:
    type: str
    session_id: Optional[str] = None


AgentEvent = Union[TextUpdate, ToolUpdate, StepFinish, Compaction, SessionIdle, OtherEvent]


def _tool_status(part: dict[str, Any]) -> str:
    state = part.get("state")
    if not isinstance(state, dict):
        return ""
    return str(state.get("status") or state.get("type") or "")


def parse_event(raw: Any) -> AgentEvent:
    """Classify one decoded event payload."""
    if not isinstance(raw, dict):
        return OtherEvent(type="invalid")
    event_type = str(raw.get("type") or "")
    props = raw.get("properties")
    if not isinstance(props, dict):
        props = {}

    if event_type == SESSION_IDLE:
        session_id = props.get("sessionID")
        if session_id:
            return SessionIdle(session_id=session_id)
        return OtherEvent(type=event_type)

    if event_type != PART_UPDATED:
        return OtherEvent(type=event_type, session_id=props.get("sessionID"))

    part = props.get("part")
    if not isinstance(part, dict) or not part.get("sessionID"):
        return OtherEvent(type=event_type)

    session_id = part["sessionID"]
    part_type = part.get("type")
    if part_type == "text":
        return TextUpdate(session_id=session_id, text=part.get("text") or "")
    if part_type == "tool":
        return ToolUpdate(
            session_id=session_id,
            call_id=str(part.get("callID") or ""),
            tool=str(part.get("tool") or "tool"),
            status=_tool_status(part),
        )
    if part_type == "step-finish":
        return StepFinish(session_id=session_id, reason=part.get("reason"))
    if part_type == "compaction":
        return Compaction(session_id=session_id)
    return OtherEvent(type=f"{event_type}:{part_type}", session_id=session_id)
