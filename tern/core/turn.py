"""One model invocation.

A ``Turn`` streams one response from the backend and turns its chunks into
``TurnEvent`` objects. The network stream is consumed by a producer task
that feeds an unbounded queue, so a slow consumer never stalls the
backend connection; cancelling the token stops the producer immediately.

A turn never touches history. It exposes what it produced
(``output_parts``, ``pending_tool_calls``) and how it ended (``completed``,
``cancelled``, ``error``) and leaves committing to the engine.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import time
from typing import AsyncIterator

from tern.backends.base import ContentGenerator, FinishReason, GenerationRequest, GenerationResponse
from tern.cancellation import CancellationToken
from tern.content import FunctionCall, Part, UsageMetadata
from tern.core.events import EventType, TurnEvent, parse_thought
from tern.retry import Backoff, RetryPolicy

logger = logging.getLogger(__name__)

UNDEFINED_TOOL_NAME = "undefined_tool_name"

_END = object()


def _normalize_call(call: FunctionCall) -> FunctionCall:
    name = call.name or UNDEFINED_TOOL_NAME
    call_id = call.id or f"{name}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"
    return FunctionCall(id=call_id, name=name, args=dict(call.args))


class Turn:
    def __init__(
        self,
        backend: ContentGenerator,
        request: GenerationRequest,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._backend = backend
        self.request = request
        self._retry_policy = retry_policy or RetryPolicy()
        self.output_parts: list[Part] = []
        self.pending_tool_calls: list[FunctionCall] = []
        self.finish_reason: FinishReason | None = None
        self.usage: UsageMetadata | None = None
        self.error: Exception | None = None
        self.completed = False
        self.cancelled = False
        self.emitted_output = False

    async def run(self, token: CancellationToken | None = None) -> AsyncIterator[TurnEvent]:
        token = token or self.request.cancellation or CancellationToken()
        if token.cancelled:
            self.cancelled = True
            yield TurnEvent(EventType.USER_CANCELLED)
            return

        # Unbounded: the producer keeps reading the stream however slowly events are consumed.
        queue: asyncio.Queue = asyncio.Queue()
        producer = asyncio.create_task(self._produce(queue), name="turn-producer")
        cancel_wait = asyncio.create_task(token.wait())
        getter: asyncio.Task | None = None
        try:
            while True:
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait(
                    {getter, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if cancel_wait in done:
                    getter.cancel()
                    await self._stop(producer)
                    self.cancelled = True
                    yield TurnEvent(EventType.USER_CANCELLED)
                    return
                item = getter.result()
                if item is _END:
                    break
                if isinstance(item, Exception):
                    self.error = item
                    return
                for event in self._events_for(item):
                    yield event
        finally:
            cancel_wait.cancel()
            if getter is not None:
                getter.cancel()
            await self._stop(producer)

        self.completed = True
        yield TurnEvent(EventType.FINISHED, finish_reason=self.finish_reason, usage=self.usage)

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------

    async def _produce(self, queue: asyncio.Queue) -> None:
        backoff = Backoff(self._retry_policy)
        while True:
            delivered = False
            try:
                async for chunk in self._backend.generate_stream(self.request):
                    delivered = True
                    queue.put_nowait(chunk)
                break
            except Exception as exc:
                # Chunks already delivered cannot be taken back; only retry clean failures.
                delay = None if delivered else backoff.next_delay(exc)
                if delay is None:
                    queue.put_nowait(exc)
                    return
                logger.warning("Stream attempt %d failed (%s), retrying in %.1fs", backoff.attempt, exc, delay)
                await asyncio.sleep(delay)
        queue.put_nowait(_END)

    @staticmethod
    async def _stop(producer: asyncio.Task) -> None:
        if producer.done():
            return
        producer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await producer

    # ------------------------------------------------------------------
    # Chunk -> events
    # ------------------------------------------------------------------

    def _events_for(self, chunk: GenerationResponse) -> list[TurnEvent]:
        events: list[TurnEvent] = []
        for part in chunk.parts:
            if part.thought:
                if part.text:
                    subject, description = parse_thought(part.text)
                    events.append(TurnEvent(EventType.THOUGHT, text=description, subject=subject))
                continue
            if part.text is not None:
                if part.text:
                    self._append_text(part.text)
                    events.append(TurnEvent(EventType.CONTENT, text=part.text))
            elif part.function_call is not None:
                call = _normalize_call(part.function_call)
                self.pending_tool_calls.append(call)
                self.output_parts.append(Part(function_call=call))
                events.append(TurnEvent(EventType.TOOL_CALL_REQUEST, call=call))
            else:
                self.output_parts.append(part)
        if events:
            self.emitted_output = True
        if chunk.usage is not None:
            self.usage = chunk.usage
            events.append(TurnEvent(EventType.USAGE, usage=chunk.usage))
        if chunk.finish_reason is not None:
            self.finish_reason = chunk.finish_reason
        return events

    def _append_text(self, text: str) -> None:
        last = self.output_parts[-1] if self.output_parts else None
        if last is not None and last.text is not None:
            self.output_parts[-1] = Part.from_text(last.text + text)
        else:
            self.output_parts.append(Part.from_text(text))
