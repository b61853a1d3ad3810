"""History compression: replace the oldest history with a generated summary.

Compression triggers once the history's token count reaches
``compression_threshold`` of the model's context window (or when forced).
The oldest ``1 - compression_preserve_fraction`` of the history, measured
by serialized size, is summarized into one message; the rest is kept
verbatim. A split never separates a function call from its response.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from tern.backends.base import ContentGenerator, GenerationRequest
from tern.cancellation import CancellationToken, run_cancellable
from tern.config import Settings
from tern.content import Message, copy_history, serialized_length
from tern.core.prompts import COMPRESSION_REQUEST, COMPRESSION_SYSTEM_PROMPT
from tern.errors import BackendError, CompressionFailedError, OperationCancelled
from tern.retry import RetryPolicy, retry_with_backoff
from tern.tokens import token_limit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompressionResult:
    original_token_count: int
    new_token_count: int


@dataclass
class CompressionOutcome:
    """A result plus the history that should seed the reset chat."""

    result: CompressionResult
    history: list[Message]


# ------------------------------------------------------------------
# Split selection
# ------------------------------------------------------------------


def find_index_after_fraction(history: list[Message], fraction: float) -> int:
    """First index whose running serialized length reaches ``fraction`` of the total."""
    if not 0 < fraction < 1:
        raise ValueError("fraction must be between 0 and 1")
    lengths = [serialized_length(m) for m in history]
    target = sum(lengths) * fraction
    running = 0
    for index, length in enumerate(lengths):
        running += length
        if running >= target:
            return index
    return len(history)


def _pair_key(call_id: str | None, name: str | None) -> str:
    return call_id or f"name:{name}"


def adjust_split_for_pairs(history: list[Message], index: int) -> int:
    """Move ``index`` backward until every call before it is answered before it.

    Calls still waiting for a response (answered later or not yet at all)
    stay in the kept suffix together with their response.
    """
    while index > 0:
        open_calls: dict[str, int] = {}
        for position in range(index):
            message = history[position]
            for call in message.function_calls:
                open_calls[_pair_key(call.id, call.name)] = position
            for response in message.function_responses:
                open_calls.pop(_pair_key(response.id, response.name), None)
        if not open_calls:
            return index
        index = min(open_calls.values())
    return index


def choose_split_index(history: list[Message], preserve_fraction: float) -> int:
    index = find_index_after_fraction(history, 1 - preserve_fraction)
    return adjust_split_for_pairs(history, index)


# ------------------------------------------------------------------
# Compressor
# ------------------------------------------------------------------


class Compressor:
    """Summarizes old history through the active backend.

    Best-effort: any failure to summarize leaves the history untouched and
    returns ``None``.
    """

    def __init__(
        self,
        backend: ContentGenerator,
        settings: Settings,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._backend = backend
        self._settings = settings
        self._retry_policy = retry_policy or RetryPolicy.from_settings(settings)

    def context_limit(self, model: str) -> int:
        return token_limit(
            model, self._settings.context_limits, self._settings.default_context_limit
        )

    def should_compress(self, token_count: int, model: str) -> bool:
        return token_count >= self._settings.compression_threshold * self.context_limit(model)

    async def try_compress(
        self,
        history: list[Message],
        model: str,
        force: bool = False,
        current_model: Callable[[], str] | None = None,
        token: CancellationToken | None = None,
    ) -> CompressionOutcome | None:
        if not history:
            return None
        try:
            return await self._compress(history, model, force, current_model, token)
        except OperationCancelled:
            logger.info("Compression cancelled")
            return None

    async def _compress(
        self,
        history: list[Message],
        model: str,
        force: bool,
        current_model: Callable[[], str] | None,
        token: CancellationToken | None,
    ) -> CompressionOutcome | None:
        original_count = await run_cancellable(self._backend.count_tokens(history, model), token)
        if not force and not self.should_compress(original_count, model):
            return None

        index = choose_split_index(history, self._settings.compression_preserve_fraction)
        if index <= 0 and force:
            # One oversized opening message; summarize everything but the latest input.
            index = adjust_split_for_pairs(history, len(history) - 1)
        if index <= 0:
            logger.info(
                "No compressible prefix in %d messages (force=%s), skipping", len(history), force
            )
            return None

        try:
            summary = await self._summarize(history[:index], model, token)
        except (CompressionFailedError, BackendError) as exc:
            logger.warning("Compression failed, continuing uncompressed: %s", exc)
            return None

        new_history = [Message.user(summary), *copy_history(history[index:])]
        count_model = current_model() if current_model else model
        new_count = await run_cancellable(
            self._backend.count_tokens(new_history, count_model), token
        )
        logger.info(
            "Compressed %d messages: %d -> %d tokens",
            index,
            original_count,
            new_count,
        )
        return CompressionOutcome(
            result=CompressionResult(original_count, new_count),
            history=new_history,
        )

    async def _summarize(
        self, prefix: list[Message], model: str, token: CancellationToken | None
    ) -> str:
        request = GenerationRequest(
            model=model,
            history=copy_history(prefix),
            new_message=Message.user(COMPRESSION_REQUEST),
            system_instruction=COMPRESSION_SYSTEM_PROMPT,
            cancellation=token,
        )
        response = await run_cancellable(
            retry_with_backoff(lambda: self._backend.generate(request), self._retry_policy),
            token,
        )
        summary = response.text.strip()
        if not summary:
            raise CompressionFailedError("Summarization returned no text")
        return summary
