"""Decide whether the model should keep talking after a response.

Cheap structural rules settle the common cases; otherwise the backend is
asked to judge its own last turn and answer in JSON. Any failure means
"yield to the user".
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from tern.backends.base import ContentGenerator, GenerationRequest
from tern.cancellation import CancellationToken, run_cancellable
from tern.content import Message, Role, copy_history, is_function_response
from tern.core.prompts import NEXT_SPEAKER_PROMPT, NEXT_SPEAKER_SCHEMA

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_INLINE_JSON = re.compile(r"\{.*\}", re.DOTALL)


class NextSpeaker(StrEnum):
    USER = "user"
    MODEL = "model"


@dataclass(frozen=True)
class NextSpeakerResult:
    next_speaker: NextSpeaker
    reasoning: str = ""


def extract_json(text: str) -> dict[str, Any]:
    """Pull a JSON object out of fenced, inline or bare model output."""
    candidates = []
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    inline = _INLINE_JSON.search(text)
    if inline:
        candidates.append(inline.group(0))
    candidates.append(text.strip())
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    raise ValueError(f"No JSON object in model output: {text[:200]!r}")


async def check_next_speaker(
    history: list[Message],
    curated_history: list[Message],
    backend: ContentGenerator,
    model: str,
    token: CancellationToken | None = None,
) -> NextSpeakerResult | None:
    if not curated_history or not history:
        return None

    last = history[-1]
    if is_function_response(last):
        return NextSpeakerResult(
            NextSpeaker.MODEL,
            "The last message was a function response, so the model should speak next.",
        )
    if last.role == Role.MODEL and not last.parts:
        return NextSpeakerResult(
            NextSpeaker.MODEL,
            "The last message was a filler model message with no content.",
        )

    if curated_history[-1].role != Role.MODEL:
        return None

    request = GenerationRequest(
        model=model,
        history=copy_history(curated_history),
        new_message=Message.user(NEXT_SPEAKER_PROMPT),
        response_schema=NEXT_SPEAKER_SCHEMA,
        cancellation=token,
    )
    try:
        response = await run_cancellable(backend.generate(request), token)
        parsed = extract_json(response.text)
        speaker = NextSpeaker(parsed.get("next_speaker"))
    except Exception as exc:
        logger.warning("Next-speaker check failed, yielding to user: %s", exc)
        return None
    return NextSpeakerResult(speaker, str(parsed.get("reasoning", "")))
