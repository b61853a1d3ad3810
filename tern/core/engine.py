"""Conversation engine: owns history and runs the turn-continuation loop.

One ``send_message`` call moves through an explicit state machine::

    IDLE -> STREAMING -> TOOLS_PENDING -> STREAMING ...
                      -> CHECKING_NEXT_SPEAKER -> STREAMING ...
                      -> IDLE

and ends in IDLE, MAX_TURNS_REACHED or MAX_SESSION_TURNS_REACHED. Every
automatic Turn is admitted by one guard that enforces both the per-send
budget (hard-capped at ``MAX_TURNS``) and the per-session turn cap.

History is a single-writer resource: a second send while one is in
flight is rejected with ``ConversationBusyError``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

from tern.backends.base import (
    ContentGenerator,
    GenerationRequest,
    SamplingParams,
    ToolDeclaration,
)
from tern.backends.registry import create_backend
from tern.cancellation import CancellationToken, run_cancellable
from tern.classifier import Diagnosis, StructuredError, diagnose
from tern.config import Settings
from tern.content import (
    FunctionCall,
    FunctionResponse,
    Message,
    Part,
    Role,
    copy_history,
    extract_curated_history,
    is_function_response,
    to_parts,
)
from tern.core.compression import CompressionResult, Compressor
from tern.core.events import EventType, TurnEvent
from tern.core.loop_detection import LoopDetector
from tern.core.next_speaker import NextSpeaker, NextSpeakerResult, check_next_speaker
from tern.core.prompts import CONTINUE_PROMPT
from tern.core.turn import Turn
from tern.errors import ConfigurationError, ConversationBusyError, OperationCancelled
from tern.retry import RetryPolicy
from tern.telemetry import TelemetrySink

logger = logging.getLogger(__name__)

MAX_TURNS = 100

UNFINISHED_TOOL_RESPONSE = {"error": "Tool call was not completed."}


class EngineState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOLS_PENDING = "tools_pending"
    CHECKING_NEXT_SPEAKER = "checking_next_speaker"
    MAX_TURNS_REACHED = "max_turns_reached"
    MAX_SESSION_TURNS_REACHED = "max_session_turns_reached"


_TRANSITIONS: dict[EngineState, frozenset[EngineState]] = {
    EngineState.IDLE: frozenset(
        {EngineState.STREAMING, EngineState.MAX_TURNS_REACHED, EngineState.MAX_SESSION_TURNS_REACHED}
    ),
    EngineState.STREAMING: frozenset(
        {EngineState.TOOLS_PENDING, EngineState.CHECKING_NEXT_SPEAKER, EngineState.IDLE}
    ),
    EngineState.TOOLS_PENDING: frozenset(
        {
            EngineState.STREAMING,
            EngineState.IDLE,
            EngineState.MAX_TURNS_REACHED,
            EngineState.MAX_SESSION_TURNS_REACHED,
        }
    ),
    EngineState.CHECKING_NEXT_SPEAKER: frozenset(
        {
            EngineState.STREAMING,
            EngineState.IDLE,
            EngineState.MAX_TURNS_REACHED,
            EngineState.MAX_SESSION_TURNS_REACHED,
        }
    ),
    EngineState.MAX_TURNS_REACHED: frozenset({EngineState.IDLE}),
    EngineState.MAX_SESSION_TURNS_REACHED: frozenset({EngineState.IDLE}),
}


@dataclass(frozen=True)
class FallbackDecision:
    accepted: bool
    new_model: str | None = None


FallbackHandler = Callable[[str, str, Exception], Awaitable["FallbackDecision | bool"]]
NextSpeakerCheck = Callable[..., Awaitable[NextSpeakerResult | None]]


class TurnStatus(StrEnum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    LOOP = "loop"


@dataclass
class _TurnOutcome:
    status: TurnStatus = TurnStatus.FAILED
    pending: list[FunctionCall] = field(default_factory=list)
    retries: int = 0


class ConversationEngine:
    """Drives one conversation session against one backend."""

    def __init__(
        self,
        settings: Settings,
        backend: ContentGenerator | None = None,
        *,
        tools: Sequence[ToolDeclaration] = (),
        system_instruction: str | list[Part] | None = None,
        sampling: SamplingParams | None = None,
        fallback_handler: FallbackHandler | None = None,
        next_speaker_check: NextSpeakerCheck | None = None,
        telemetry: TelemetrySink | None = None,
        history: Sequence[Message] = (),
    ) -> None:
        if not settings.model:
            raise ConfigurationError("No model configured")
        if not settings.fallback_model:
            raise ConfigurationError("No fallback model configured")
        self._settings = settings
        self._backend = backend or create_backend(settings, telemetry)
        self._tools = list(tools)
        self._system_instruction = system_instruction
        self._sampling = sampling or SamplingParams.from_settings(settings)
        self._fallback_handler = fallback_handler
        self._next_speaker_check = next_speaker_check or check_next_speaker
        self._retry_policy = RetryPolicy.from_settings(settings)
        self._compressor = Compressor(self._backend, settings, self._retry_policy)
        self._loop_detector = LoopDetector()

        self._model = settings.model
        self._lock = asyncio.Lock()
        self._state = EngineState.IDLE
        self._session_turn_count = 0
        self._history: list[Message] = copy_history(history)
        self._session_id = uuid.uuid4().hex
        self._prompt_count = 0

        # Tool calls committed to history and still waiting for a response
        self._pending_calls: dict[str, FunctionCall] = {}
        # Calls announced by the in-flight turn, not yet committed
        self._requested: dict[str, FunctionCall] = {}
        self._tool_results: dict[str, FunctionResponse] = {}
        self._results_changed = asyncio.Event()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def model(self) -> str:
        return self._model

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def session_turn_count(self) -> int:
        return self._session_turn_count

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def pending_tool_calls(self) -> list[FunctionCall]:
        return list(self._pending_calls.values())

    @property
    def backend(self) -> ContentGenerator:
        return self._backend

    def set_model(self, model: str) -> None:
        if not model:
            raise ConfigurationError("Model id must not be empty")
        if model != self._model:
            logger.info("Switching model %s -> %s", self._model, model)
        self._model = model

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_history(self, curated: bool = False) -> list[Message]:
        history = extract_curated_history(self._history) if curated else self._history
        return copy_history(history)

    def add_history(self, message: Message) -> None:
        self._ensure_idle()
        self._history.append(message.model_copy(deep=True))

    def reset_chat(self, seed: Sequence[Message] | None = None) -> None:
        """Start a fresh session, optionally seeded (e.g. from a checkpoint)."""
        self._ensure_idle()
        self._reset(list(seed or []))

    def _reset(self, seed: list[Message], keep_pending: bool = False) -> None:
        self._history = copy_history(seed)
        self._session_id = uuid.uuid4().hex
        if not keep_pending:
            self._pending_calls.clear()
            self._tool_results.clear()
        logger.info("Chat reset with %d seeded messages", len(seed))

    async def try_compress_chat(
        self, force: bool = False, token: CancellationToken | None = None
    ) -> CompressionResult | None:
        if self._lock.locked():
            raise ConversationBusyError("Cannot compress while a message is in flight")
        async with self._lock:
            return await self._compress(force, token)

    async def _compress(
        self, force: bool, token: CancellationToken | None
    ) -> CompressionResult | None:
        outcome = await self._compressor.try_compress(
            self._history,
            self._model,
            force=force,
            current_model=lambda: self._model,
            token=token,
        )
        if outcome is None:
            return None
        # Compression keeps unanswered calls in the preserved suffix.
        self._reset(outcome.history, keep_pending=True)
        return outcome.result

    def _ensure_idle(self) -> None:
        if self._lock.locked():
            raise ConversationBusyError("History is owned by an in-flight message")

    # ------------------------------------------------------------------
    # Tool results
    # ------------------------------------------------------------------

    def submit_tool_result(self, call_id: str, name: str, result: Any) -> None:
        """Accept the result of a requested tool call, in any order, at any time."""
        if call_id not in self._pending_calls and call_id not in self._requested:
            logger.warning("Ignoring result for unknown tool call %s (%s)", call_id, name)
            return
        response = result if isinstance(result, dict) else {"output": result}
        self._tool_results[call_id] = FunctionResponse(id=call_id, name=name, response=response)
        self._results_changed.set()

    async def _await_tool_results(
        self, calls: list[FunctionCall], token: CancellationToken
    ) -> list[Part]:
        ids = [c.id for c in calls if c.id]
        while not all(i in self._tool_results for i in ids):
            self._results_changed.clear()
            await run_cancellable(self._results_changed.wait(), token)
        return [Part(function_response=self._tool_results[i]) for i in ids]

    def _settle(self, message: Message) -> None:
        """Forget calls whose responses were just committed to history."""
        for response in message.function_responses:
            if response.id:
                self._pending_calls.pop(response.id, None)
                self._tool_results.pop(response.id, None)

    def _drain_pending_calls(self) -> list[Part]:
        """Responses for calls left pending by an earlier send.

        Calls whose results never arrived are answered with an error so the
        history keeps every call paired with a response.
        """
        parts: list[Part] = []
        for call_id, call in self._pending_calls.items():
            if call_id in self._tool_results:
                parts.append(Part(function_response=self._tool_results[call_id]))
            else:
                logger.warning("Tool call %s (%s) never completed", call_id, call.name)
                parts.append(
                    Part.from_function_response(
                        call.name or "", dict(UNFINISHED_TOOL_RESPONSE), id=call_id
                    )
                )
        return parts

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(
        self,
        content: str | Part | Sequence[str | Part],
        token: CancellationToken | None = None,
        turn_budget: int = MAX_TURNS,
    ) -> AsyncIterator[TurnEvent]:
        """Send user content and stream events until the loop stops.

        ``turn_budget`` limits the model responses this call may request
        (the first one and each next-speaker continuation); it is capped at
        ``MAX_TURNS`` whatever the caller passes. Turns that only deliver tool
        results ride on the slot of the response that requested the tools,
        but no send ever starts more than ``MAX_TURNS`` Turns in total.
        """
        if self._lock.locked():
            raise ConversationBusyError("Another message is already in flight")
        async with self._lock:
            token = token or CancellationToken()
            budget = max(0, min(turn_budget, MAX_TURNS))
            initial_model = self._model
            self._loop_detector.reset()
            message = Message(role=Role.USER, parts=self._drain_pending_calls() + to_parts(content))
            charged = 0
            started = 0
            tool_continuation = False
            try:
                while True:
                    stop = self._admit_turn(charged, started, budget, tool_continuation)
                    if stop is not None:
                        self._transition(stop)
                        if stop == EngineState.MAX_SESSION_TURNS_REACHED:
                            yield TurnEvent(EventType.MAX_SESSION_TURNS)
                        return
                    started += 1
                    if not tool_continuation:
                        charged += 1

                    compressed = await self._compress(False, token)
                    if compressed is not None:
                        yield TurnEvent(EventType.CHAT_COMPRESSED, compression=compressed)

                    self._transition(EngineState.STREAMING)
                    outcome = _TurnOutcome()
                    spare = MAX_TURNS - started
                    async with contextlib.aclosing(
                        self._run_turn(message, token, outcome, spare)
                    ) as events:
                        async for event in events:
                            yield event
                    started += outcome.retries
                    if outcome.status != TurnStatus.COMPLETED:
                        self._transition(EngineState.IDLE)
                        return

                    if outcome.pending:
                        self._transition(EngineState.TOOLS_PENDING)
                        try:
                            parts = await self._await_tool_results(outcome.pending, token)
                        except OperationCancelled:
                            self._transition(EngineState.IDLE)
                            yield TurnEvent(EventType.USER_CANCELLED)
                            return
                        message = Message(role=Role.USER, parts=parts)
                        tool_continuation = True
                        continue

                    self._transition(EngineState.CHECKING_NEXT_SPEAKER)
                    if not await self._model_continues(initial_model, token):
                        self._transition(EngineState.IDLE)
                        return
                    message = Message.user(CONTINUE_PROMPT)
                    tool_continuation = False
            finally:
                self._state = EngineState.IDLE

    def _admit_turn(
        self, charged: int, started: int, budget: int, tool_continuation: bool
    ) -> EngineState | None:
        over_budget = not tool_continuation and charged >= budget
        if over_budget or started >= MAX_TURNS:
            if budget:
                logger.info("Turn limit reached after %d turns, stopping", started)
            return EngineState.MAX_TURNS_REACHED
        self._session_turn_count += 1
        limit = self._settings.max_session_turns
        if limit > 0 and self._session_turn_count > limit:
            logger.info("Session turn limit of %d reached", limit)
            return EngineState.MAX_SESSION_TURNS_REACHED
        return None

    def _transition(self, new: EngineState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal engine transition {self._state} -> {new}")
        self._state = new

    async def _model_continues(self, initial_model: str, token: CancellationToken) -> bool:
        if not self._settings.next_speaker_check_enabled or token.cancelled:
            return False
        if self._model != initial_model:
            # Fallback happened during this send; let the user decide how to go on.
            return False
        result = await self._next_speaker_check(
            self._history,
            extract_curated_history(self._history),
            self._backend,
            self._model,
            token,
        )
        return result is not None and result.next_speaker == NextSpeaker.MODEL

    async def _run_turn(
        self, message: Message, token: CancellationToken, outcome: _TurnOutcome, spare: int
    ) -> AsyncIterator[TurnEvent]:
        try:
            async with contextlib.aclosing(
                self._attempt_turn(message, token, outcome, spare)
            ) as events:
                async for event in events:
                    yield event
        finally:
            # Results for calls that never reached history have nothing to answer.
            for call_id in self._requested:
                if call_id not in self._pending_calls:
                    self._tool_results.pop(call_id, None)
            self._requested.clear()

    async def _attempt_turn(
        self, message: Message, token: CancellationToken, outcome: _TurnOutcome, spare: int
    ) -> AsyncIterator[TurnEvent]:
        """Run one Turn, retrying it once on the fallback model after a quota error.

        The retry is a Turn of its own and needs one of the ``spare`` slots
        left under ``MAX_TURNS``.
        """
        fallback_tried = False
        while True:
            turn = Turn(self._backend, self._build_request(message, token), self._retry_policy)
            loop_found = False
            async with contextlib.aclosing(turn.run(token)) as events:
                async for event in events:
                    if self._is_loop(event):
                        loop_found = True
                        break
                    if event.type == EventType.TOOL_CALL_REQUEST and event.call is not None:
                        self._requested[event.call.id] = event.call
                    yield event
            if loop_found:
                outcome.status = TurnStatus.LOOP
                yield TurnEvent(EventType.LOOP_DETECTED, text=str(self._loop_detector.detected))
                return
            if turn.cancelled:
                outcome.status = TurnStatus.CANCELLED
                return
            if turn.error is not None:
                diagnosis = self._diagnose(turn.error)
                retryable = not fallback_tried and not turn.emitted_output
                if diagnosis.quota_exceeded and retryable and outcome.retries < spare:
                    fallback_tried = True
                    new_model = await self._handle_fallback(turn.error, token)
                    if new_model is not None:
                        outcome.retries += 1
                        yield TurnEvent(EventType.MODEL_FALLBACK, model=new_model)
                        continue
                outcome.status = TurnStatus.FAILED
                yield TurnEvent(
                    EventType.ERROR,
                    text=diagnosis.message,
                    error=StructuredError(diagnosis.error.message, diagnosis.status),
                )
                return

            self._record_history(message, turn.output_parts)
            self._settle(message)
            for call in turn.pending_tool_calls:
                self._pending_calls[call.id] = call
            outcome.pending = list(turn.pending_tool_calls)
            outcome.status = TurnStatus.COMPLETED
            return

    def _is_loop(self, event: TurnEvent) -> bool:
        if not self._settings.loop_detection_enabled:
            return False
        if event.type == EventType.CONTENT:
            return self._loop_detector.check_content(event.text)
        if event.type == EventType.TOOL_CALL_REQUEST and event.call is not None:
            return self._loop_detector.check_tool_call(event.call.name, event.call.args)
        return False

    def _build_request(self, message: Message, token: CancellationToken) -> GenerationRequest:
        self._prompt_count += 1
        return GenerationRequest(
            model=self._model,
            history=self.get_history(curated=True),
            new_message=message.model_copy(deep=True),
            system_instruction=self._system_instruction,
            tools=list(self._tools),
            sampling=self._sampling,
            cancellation=token,
            prompt_id=f"{self._session_id}#{self._prompt_count}",
        )

    def _record_history(self, user_message: Message, output: list[Part]) -> None:
        self._history.append(user_message)
        if output:
            self._history.append(Message(role=Role.MODEL, parts=output))
        elif not is_function_response(user_message):
            self._history.append(Message(role=Role.MODEL, parts=[]))

    # ------------------------------------------------------------------
    # Errors and fallback
    # ------------------------------------------------------------------

    def _diagnose(self, error: Exception) -> Diagnosis:
        return diagnose(
            error,
            self._settings.auth_type,
            self._settings.user_tier,
            self._model,
            self._settings.fallback_model,
        )

    async def _handle_fallback(self, error: Exception, token: CancellationToken) -> str | None:
        current = self._model
        fallback = self._settings.fallback_model
        if self._fallback_handler is None or current == fallback:
            return None
        try:
            decision = await run_cancellable(self._fallback_handler(current, fallback, error), token)
        except OperationCancelled:
            return None
        except Exception:
            logger.warning("Fallback handler failed", exc_info=True)
            return None
        if isinstance(decision, FallbackDecision):
            accepted, new_model = decision.accepted, decision.new_model or fallback
        else:
            accepted, new_model = bool(decision), fallback
        if not accepted:
            logger.info("Fallback from %s to %s declined", current, fallback)
            return None
        self.set_model(new_model)
        return new_model
