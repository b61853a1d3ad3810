"""Detects a model stuck repeating itself within one send.

Two patterns count as a loop: the same tool call (name and arguments)
requested five times in a row, and the same sentence streamed ten times
in a row.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

TOOL_CALL_LOOP_THRESHOLD = 5
CONTENT_LOOP_THRESHOLD = 10

_SENTENCE_END = re.compile(r"[.!?]+(?=\s|$)")
_COMPLETE_SENTENCE = re.compile(r"[^.!?]+[.!?]+(?=\s|$)")


class LoopType(StrEnum):
    IDENTICAL_TOOL_CALLS = "consecutive_identical_tool_calls"
    REPEATED_SENTENCES = "chanting_identical_sentences"


class LoopDetector:
    def __init__(self) -> None:
        self._last_call_key: str | None = None
        self._call_repeats = 0
        self._last_sentence = ""
        self._sentence_repeats = 0
        self._partial = ""
        self.detected: LoopType | None = None

    def check_tool_call(self, name: str | None, args: dict[str, Any]) -> bool:
        self._reset_content()
        key = hashlib.sha256(
            f"{name}:{json.dumps(args, sort_keys=True)}".encode()
        ).hexdigest()
        if key == self._last_call_key:
            self._call_repeats += 1
        else:
            self._last_call_key = key
            self._call_repeats = 1
        if self._call_repeats >= TOOL_CALL_LOOP_THRESHOLD:
            return self._found(LoopType.IDENTICAL_TOOL_CALLS)
        return False

    def check_content(self, text: str) -> bool:
        self._partial += text
        if not _SENTENCE_END.search(self._partial):
            return False
        sentences = _COMPLETE_SENTENCE.findall(self._partial)
        if not sentences:
            return False
        last = sentences[-1]
        self._partial = self._partial[self._partial.rfind(last) + len(last) :]
        for sentence in sentences:
            sentence = sentence.strip()
            if not sentence:
                continue
            if sentence == self._last_sentence:
                self._sentence_repeats += 1
            else:
                self._last_sentence = sentence
                self._sentence_repeats = 1
            if self._sentence_repeats >= CONTENT_LOOP_THRESHOLD:
                return self._found(LoopType.REPEATED_SENTENCES)
        return False

    def reset(self) -> None:
        self._last_call_key = None
        self._call_repeats = 0
        self._reset_content()
        self.detected = None

    def _reset_content(self) -> None:
        self._last_sentence = ""
        self._sentence_repeats = 0
        self._partial = ""

    def _found(self, loop_type: LoopType) -> bool:
        self.detected = loop_type
        logger.info("Loop detected: %s", loop_type)
        return True
