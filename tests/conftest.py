"""Shared fixtures: a scripted in-memory backend and settings helpers."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import pytest
import pytest_asyncio

from tern.backends.base import FinishReason, GenerationRequest, GenerationResponse
from tern.config import Settings
from tern.content import Message, Part, UsageMetadata
from tern.telemetry import TelemetryBus

# ---------------------------------------------------------------------------
# Scripted backend
# ---------------------------------------------------------------------------


def text_chunk(text: str, finish: bool = False) -> GenerationResponse:
    return GenerationResponse(
        parts=[Part.from_text(text)],
        finish_reason=FinishReason.STOP if finish else None,
    )


def call_chunk(name: str, args: dict | None = None, call_id: str | None = None) -> GenerationResponse:
    return GenerationResponse(
        parts=[Part.from_function_call(name, args or {}, id=call_id)],
        finish_reason=FinishReason.STOP,
    )


class FakeBackend:
    """ContentGenerator double driven by a script of streams.

    Each entry in ``streams`` is either a list of chunks to yield or an
    exception to raise before yielding anything. An ``asyncio.Event`` inside
    a chunk list pauses the stream until it is set, and ``count_gate``
    holds every token count the same way. When the script runs out, every
    stream answers with a single "ok".
    """

    backend_id = "fake"

    def __init__(
        self,
        streams: list[Any] | None = None,
        token_count: int = 10,
        responses: list[Any] | None = None,
        count_gate: asyncio.Event | None = None,
    ) -> None:
        self.streams = list(streams or [])
        self.responses = list(responses or [])
        self.token_count = token_count
        self.count_gate = count_gate
        self.requests: list[GenerationRequest] = []
        self.generate_requests: list[GenerationRequest] = []
        self.count_calls: list[tuple[int, str]] = []

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.generate_requests.append(request)
        item = self.responses.pop(0) if self.responses else GenerationResponse(
            parts=[Part.from_text("summary of earlier work")]
        )
        if isinstance(item, Exception):
            raise item
        return item

    async def generate_stream(self, request: GenerationRequest) -> AsyncIterator[GenerationResponse]:
        self.requests.append(request)
        item = self.streams.pop(0) if self.streams else [text_chunk("ok", finish=True)]
        if isinstance(item, Exception):
            raise item
        for chunk in item:
            if isinstance(chunk, asyncio.Event):
                await chunk.wait()
                continue
            await asyncio.sleep(0)
            yield chunk

    async def count_tokens(self, contents: list[Message], model: str) -> int:
        self.count_calls.append((len(contents), model))
        if self.count_gate is not None:
            await self.count_gate.wait()
        return self.token_count

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [[0.0, 1.0] for _ in texts]

    async def close(self) -> None:
        pass

    @property
    def models_used(self) -> list[str]:
        return [r.model for r in self.requests]


def make_settings(**overrides: Any) -> Settings:
    """Real Settings without .env, with fast retries and no continuation check."""
    defaults: dict[str, Any] = {
        "model": "gemini-2.5-pro",
        "fallback_model": "gemini-2.5-flash",
        "next_speaker_check_enabled": False,
        "retry_max_attempts": 3,
        "retry_initial_delay_ms": 0,
        "retry_max_delay_ms": 0,
    }
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


async def collect(events: AsyncIterator[Any]) -> list[Any]:
    return [event async for event in events]


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def usage() -> UsageMetadata:
    return UsageMetadata(prompt_tokens=12, completion_tokens=3, total_tokens=15)


@pytest_asyncio.fixture
async def telemetry_bus():
    bus = TelemetryBus()
    await bus.start()
    yield bus
    await bus.stop()
