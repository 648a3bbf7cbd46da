"""
Data models (dataclasses) for ThreadQA.
These are plain Python objects used across the DB, engine, and API layers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class ThreadSession:
    thread_key: str      # opaque chat-thread identifier (primary key)
    session_id: str      # agent-runtime session id, immutable once assigned
    compacted: bool      # replay full instructions on the next turn
    created_at: datetime


@dataclass
class ChannelConfig:
    channel_id: str
    channel_name: str
    custom_prompt: Optional[str]  # extra instructions appended to every prompt
    agent: Optional[str]          # agent/persona override for this channel
    configured_by: str
    updated_at: datetime
    tools: list[str] = field(default_factory=list)  # extra tools enabled in this channel
