"""Events surfaced to the caller while a message is being processed."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from tern.backends.base import FinishReason
from tern.classifier import StructuredError
from tern.content import FunctionCall, UsageMetadata
from tern.core.compression import CompressionResult

_SUBJECT = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)


class EventType(StrEnum):
    CONTENT = "content"
    THOUGHT = "thought"
    TOOL_CALL_REQUEST = "tool_call_request"
    USAGE = "usage"
    ERROR = "error"
    FINISHED = "finished"
    USER_CANCELLED = "user_cancelled"
    CHAT_COMPRESSED = "chat_compressed"
    MODEL_FALLBACK = "model_fallback"
    LOOP_DETECTED = "loop_detected"
    MAX_SESSION_TURNS = "max_session_turns"


@dataclass
class TurnEvent:
    """A single event in a send's event sequence.

    Only the fields relevant to ``type`` are set: ``text`` for content,
    thoughts and formatted errors; ``call`` for tool-call requests;
    ``error`` for the structured error behind an ``ERROR`` event.
    """

    type: EventType
    text: str = ""
    subject: str = ""
    call: FunctionCall | None = None
    usage: UsageMetadata | None = None
    error: StructuredError | None = None
    finish_reason: FinishReason | None = None
    compression: CompressionResult | None = None
    model: str = ""


def parse_thought(text: str) -> tuple[str, str]:
    """Split ``**Subject** description`` into (subject, description)."""
    match = _SUBJECT.search(text)
    subject = match.group(1).strip() if match else ""
    description = _SUBJECT.sub("", text, count=1).strip()
    return subject, description
