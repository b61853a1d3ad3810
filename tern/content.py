"""Conversation content model shared by every layer.

A history is an ordered list of ``Message`` objects. Each message carries
ordered ``Part`` objects and every part holds exactly one payload: text,
a function call, a function response or inline binary data.

Serialization goes through pydantic so the same JSON form is used for
size accounting, checkpoints and wire conversion.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Iterable, Sequence

from pydantic import BaseModel, Field, model_validator


class Role(StrEnum):
    USER = "user"
    MODEL = "model"
    TOOL = "tool"


class FunctionCall(BaseModel):
    id: str | None = None
    name: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)


class FunctionResponse(BaseModel):
    id: str | None = None
    name: str
    response: dict[str, Any] = Field(default_factory=dict)


class InlineData(BaseModel):
    mime_type: str
    data: str  # base64


class Part(BaseModel):
    """One element of a message. Exactly one payload field is set."""

    text: str | None = None
    thought: bool = False
    function_call: FunctionCall | None = None
    function_response: FunctionResponse | None = None
    inline_data: InlineData | None = None

    @model_validator(mode="after")
    def _exactly_one_payload(self) -> Part:
        payloads = [
            self.text,
            self.function_call,
            self.function_response,
            self.inline_data,
        ]
        if sum(p is not None for p in payloads) != 1:
            raise ValueError(
                "Part must carry exactly one of text, function_call, "
                "function_response or inline_data"
            )
        return self

    @classmethod
    def from_text(cls, text: str) -> Part:
        return cls(text=text)

    @classmethod
    def from_function_call(
        cls, name: str, args: dict[str, Any] | None = None, id: str | None = None
    ) -> Part:
        return cls(function_call=FunctionCall(id=id, name=name, args=args or {}))

    @classmethod
    def from_function_response(
        cls, name: str, response: dict[str, Any], id: str | None = None
    ) -> Part:
        return cls(function_response=FunctionResponse(id=id, name=name, response=response))


class Message(BaseModel):
    role: Role
    parts: list[Part] = Field(default_factory=list)

    @classmethod
    def user(cls, content: str | Part | Sequence[str | Part]) -> Message:
        return cls(role=Role.USER, parts=to_parts(content))

    @classmethod
    def model(cls, content: str | Part | Sequence[str | Part]) -> Message:
        return cls(role=Role.MODEL, parts=to_parts(content))

    @property
    def text(self) -> str:
        """Concatenated non-thought text of this message."""
        return "".join(p.text for p in self.parts if p.text is not None and not p.thought)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [p.function_call for p in self.parts if p.function_call is not None]

    @property
    def function_responses(self) -> list[FunctionResponse]:
        return [p.function_response for p in self.parts if p.function_response is not None]


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def to_parts(content: str | Part | Sequence[str | Part]) -> list[Part]:
    """Normalize a string, a part, or a mixed sequence into a part list."""
    if isinstance(content, str):
        return [Part.from_text(content)]
    if isinstance(content, Part):
        return [content]
    return [Part.from_text(c) if isinstance(c, str) else c for c in content]


def is_function_response(message: Message) -> bool:
    """True when every part of a user/tool message is a function response."""
    return (
        message.role in (Role.USER, Role.TOOL)
        and bool(message.parts)
        and all(p.function_response is not None for p in message.parts)
    )


def is_function_call(message: Message) -> bool:
    return message.role == Role.MODEL and any(
        p.function_call is not None for p in message.parts
    )


def serialized_length(message: Message) -> int:
    """Length of the compact JSON form, used for proportional history splits."""
    return len(message.model_dump_json(exclude_defaults=True))


def is_valid_content(message: Message) -> bool:
    """A message is valid when it has parts and no empty non-thought text."""
    if not message.parts:
        return False
    for part in message.parts:
        if part.text is not None and part.text == "" and not part.thought:
            return False
    return True


def extract_curated_history(history: Iterable[Message]) -> list[Message]:
    """Drop invalid model turns together with the user turn that produced them.

    Consecutive model messages are treated as one model turn; if any of
    them is invalid the whole turn and its preceding input are removed.
    Function responses in a removed input are kept, since they answer
    calls made earlier in the history.
    """
    items = list(history)
    curated: list[Message] = []
    i = 0
    while i < len(items):
        if items[i].role != Role.MODEL:
            curated.append(items[i])
            i += 1
            continue
        model_output: list[Message] = []
        valid = True
        while i < len(items) and items[i].role == Role.MODEL:
            model_output.append(items[i])
            if valid and not is_valid_content(items[i]):
                valid = False
            i += 1
        if valid:
            curated.extend(model_output)
        elif curated:
            dropped = curated.pop()
            responses = [p for p in dropped.parts if p.function_response is not None]
            if responses:
                curated.append(Message(role=dropped.role, parts=responses))
    return curated


def copy_history(history: Iterable[Message]) -> list[Message]:
    return [m.model_copy(deep=True) for m in history]


class UsageMetadata(BaseModel):
    """Token usage reported (or estimated) for one backend call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    thought_tokens: int = 0
    estimated: bool = False
