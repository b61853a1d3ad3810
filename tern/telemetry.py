"""Per-call telemetry records and their in-process sinks.

Every backend call produces exactly one ``ApiCallRecord``. Records go to
any object implementing ``TelemetrySink``; ``TelemetryBus`` fans them out
to handlers on a background task with error isolation, and
``SessionMetrics`` aggregates them per model.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Protocol

from tern.content import UsageMetadata

logger = logging.getLogger(__name__)


@dataclass
class ApiCallRecord:
    """One backend call, successful or not."""

    model: str
    backend_id: str
    duration_ms: int
    usage: UsageMetadata = field(default_factory=UsageMetadata)
    error_message: str | None = None
    operation: str = "generate"
    prompt_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def failed(self) -> bool:
        return self.error_message is not None


class TelemetrySink(Protocol):
    async def record(self, record: ApiCallRecord) -> None: ...


RecordHandler = Callable[[ApiCallRecord], Awaitable[None]]


# ------------------------------------------------------------------
# Bus
# ------------------------------------------------------------------


class TelemetryBus:
    """Queues records and dispatches them to handlers in the background.

    ``record()`` never blocks the backend call: when the queue is full the
    record is dropped with a warning. Handler errors are logged and never
    propagate.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: list[RecordHandler] = []
        self._queue: asyncio.Queue[ApiCallRecord] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, handler: RecordHandler) -> None:
        self._handlers.append(handler)
        logger.debug("Registered telemetry handler %s", handler.__qualname__)

    async def record(self, record: ApiCallRecord) -> None:
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            logger.warning("Telemetry queue full, dropping record for %s", record.model)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="telemetry-bus")

    async def stop(self) -> None:
        """Stop the loop, then drain whatever is still queued."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        while not self._queue.empty():
            try:
                record = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._dispatch(record)

    async def _process_loop(self) -> None:
        while self._running:
            try:
                record = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(record)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in telemetry loop")

    async def _dispatch(self, record: ApiCallRecord) -> None:
        if not self._handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, record) for h in self._handlers))

    async def _safe_handle(self, handler: RecordHandler, record: ApiCallRecord) -> None:
        try:
            await handler(record)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Telemetry handler %s failed", handler.__qualname__)

    @property
    def pending(self) -> int:
        return self._queue.qsize()


# ------------------------------------------------------------------
# Aggregation
# ------------------------------------------------------------------


@dataclass
class ModelMetrics:
    """Aggregated calls and tokens for one model."""

    model: str
    total_requests: int = 0
    total_errors: int = 0
    total_latency_ms: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    thought_tokens: int = 0

    @property
    def average_latency_ms(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.total_latency_ms / self.total_requests


class SessionMetrics:
    """In-memory per-model totals for the lifetime of a session."""

    def __init__(self) -> None:
        self._models: dict[str, ModelMetrics] = {}
        self.last_prompt_tokens: int = 0

    async def record(self, record: ApiCallRecord) -> None:
        self.add(record)

    def add(self, record: ApiCallRecord) -> None:
        stats = self._models.get(record.model)
        if stats is None:
            stats = self._models[record.model] = ModelMetrics(model=record.model)
        stats.total_requests += 1
        stats.total_latency_ms += record.duration_ms
        if record.failed:
            stats.total_errors += 1
        usage = record.usage
        stats.prompt_tokens += usage.prompt_tokens
        stats.completion_tokens += usage.completion_tokens
        stats.total_tokens += usage.total_tokens
        stats.cached_tokens += usage.cached_tokens
        stats.thought_tokens += usage.thought_tokens
        if usage.prompt_tokens and not record.failed:
            self.last_prompt_tokens = usage.prompt_tokens

    def for_model(self, model: str) -> ModelMetrics | None:
        return self._models.get(model)

    def summary(self) -> dict[str, Any]:
        return {
            model: {
                "requests": m.total_requests,
                "errors": m.total_errors,
                "avg_latency_ms": round(m.average_latency_ms, 1),
                "prompt_tokens": m.prompt_tokens,
                "completion_tokens": m.completion_tokens,
                "total_tokens": m.total_tokens,
            }
            for model, m in self._models.items()
        }
