"""Tests for telemetry records, the dispatch bus and session metrics.

Covers:
- TestTelemetryBus: handler dispatch, error isolation, drain on stop, overflow
- TestSessionMetrics: per-model aggregation
"""

import asyncio

import pytest

from tern.content import UsageMetadata
from tern.telemetry import ApiCallRecord, SessionMetrics, TelemetryBus

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_record(model: str = "gemini-2.5-pro", **kwargs) -> ApiCallRecord:
    defaults = {"backend_id": "native", "duration_ms": 120}
    defaults.update(kwargs)
    return ApiCallRecord(model=model, **defaults)


# ---------------------------------------------------------------------------
# TestTelemetryBus
# ---------------------------------------------------------------------------


class TestTelemetryBus:
    @pytest.mark.asyncio
    async def test_handler_receives_record(self, telemetry_bus):
        """1. A started bus delivers records to registered handlers."""
        received = []

        async def handler(record):
            received.append(record)

        telemetry_bus.on(handler)
        await telemetry_bus.record(_make_record())
        await asyncio.sleep(0.1)

        assert len(received) == 1
        assert received[0].model == "gemini-2.5-pro"

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self):
        """2. One handler raising does not stop the next one."""
        bus = TelemetryBus()
        received = []

        async def bad(record):
            raise RuntimeError("sink down")

        async def good(record):
            received.append(record)

        bus.on(bad)
        bus.on(good)
        await bus.start()
        await bus.record(_make_record())
        await asyncio.sleep(0.1)
        await bus.stop()

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self):
        """3. Records queued before start are flushed by stop."""
        bus = TelemetryBus()
        received = []

        async def handler(record):
            received.append(record)

        bus.on(handler)
        await bus.record(_make_record())
        await bus.record(_make_record())
        assert bus.pending == 2
        await bus.stop()

        assert len(received) == 2
        assert bus.pending == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops(self):
        """4. Records beyond the queue size are dropped, not awaited."""
        bus = TelemetryBus(max_queue=1)
        await bus.record(_make_record())
        await bus.record(_make_record())
        assert bus.pending == 1


# ---------------------------------------------------------------------------
# TestSessionMetrics
# ---------------------------------------------------------------------------


class TestSessionMetrics:
    @pytest.mark.asyncio
    async def test_aggregates_per_model(self):
        metrics = SessionMetrics()
        usage = UsageMetadata(prompt_tokens=70, completion_tokens=30, total_tokens=100)
        await metrics.record(_make_record(usage=usage))
        await metrics.record(_make_record(usage=usage, duration_ms=80))
        await metrics.record(_make_record(model="gemini-2.5-flash", error_message="boom"))

        pro = metrics.for_model("gemini-2.5-pro")
        assert pro.total_requests == 2
        assert pro.total_tokens == 200
        assert pro.average_latency_ms == 100.0
        assert metrics.for_model("gemini-2.5-flash").total_errors == 1
        assert metrics.last_prompt_tokens == 70

    def test_summary_shape(self):
        metrics = SessionMetrics()
        metrics.add(_make_record())
        summary = metrics.summary()
        assert summary["gemini-2.5-pro"]["requests"] == 1
        assert summary["gemini-2.5-pro"]["errors"] == 0

    def test_failed_record(self):
        assert _make_record(error_message="x").failed
        assert not _make_record().failed
