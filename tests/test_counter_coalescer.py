"""Tests for counter_coalescer.py (throttling, monotonic counters, ramps)."""

from __future__ import annotations

import asyncio

import pytest

from conftest import RecordingSink
from reconciliation_stream.streaming.counter_coalescer import CounterCoalescer, CounterUpdate
from reconciliation_stream.streaming.event_emitter import PresentationEmitter
from reconciliation_stream.streaming.session import Session


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _make(
    *,
    throttle_ms: int = 100,
    animation_ms: int = 0,
    clock: _FakeClock | None = None,
) -> tuple[CounterCoalescer, Session, RecordingSink]:
    session = Session()
    sink = RecordingSink()
    coalescer = CounterCoalescer(
        session,
        PresentationEmitter(sink),
        throttle_ms=throttle_ms,
        animation_ms=animation_ms,
        animation_max_delta=10,
        clock=clock or _FakeClock(),
    )
    return coalescer, session, sink


# -----------------------------------------------------------------------------
# Monotonicity and coalescing
# -----------------------------------------------------------------------------

def test_lower_target_never_lowers_counter():
    coalescer, session, _ = _make(throttle_ms=0)

    coalescer.submit(CounterUpdate("processedCount", 5))
    coalescer.submit(CounterUpdate("processedCount", 3))

    assert session.counters["processedCount"] == 5


def test_repeated_value_within_window_flushes_once():
    coalescer, session, sink = _make()

    for _ in range(100):
        coalescer.submit(CounterUpdate("matchesCount", 7))

    assert coalescer.flush_count == 1
    assert not coalescer.timer_armed
    assert session.counters["matchesCount"] == 7
    assert sink.of("counter") == [("counter", "matchesCount", 7, True)]


def test_queued_values_keep_the_maximum():
    clock = _FakeClock()
    coalescer, session, _ = _make(clock=clock)
    coalescer.submit(CounterUpdate("processedCount", 1))

    coalescer.submit(CounterUpdate("processedCount", 9))
    coalescer.submit(CounterUpdate("processedCount", 4))

    assert coalescer.pending == {"processedCount": 9}
    coalescer.flush()
    assert session.counters["processedCount"] == 9


def test_flush_without_running_loop_applies_immediately():
    clock = _FakeClock()
    coalescer, session, _ = _make(clock=clock)
    coalescer.submit(CounterUpdate("processedCount", 1))

    coalescer.submit(CounterUpdate("processedCount", 2))

    assert session.counters["processedCount"] == 2
    assert not coalescer.timer_armed


def test_throttle_elapsed_flushes_immediately():
    clock = _FakeClock()
    coalescer, session, _ = _make(clock=clock)
    coalescer.submit(CounterUpdate("extractedCount", 10))

    clock.now += 0.2
    coalescer.submit(CounterUpdate("extractedCount", 50))

    assert session.counters["extractedCount"] == 50
    assert coalescer.flush_count == 2


def test_large_delta_snaps_with_highlight():
    coalescer, _, sink = _make(throttle_ms=0)

    coalescer.submit(CounterUpdate("extractedCount", 106))

    assert sink.of("counter") == [("counter", "extractedCount", 106, True)]
    assert coalescer.displayed_value("extractedCount") == 106


# -----------------------------------------------------------------------------
# Timer
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_single_timer_armed_within_window():
    clock = _FakeClock()
    coalescer, session, _ = _make(clock=clock)
    coalescer.submit(CounterUpdate("processedCount", 1))

    coalescer.submit(CounterUpdate("processedCount", 2))
    first_timer = coalescer._timer
    coalescer.submit(CounterUpdate("processedCount", 3))
    coalescer.submit(CounterUpdate("matchesCount", 1))

    assert coalescer.timer_armed
    assert coalescer._timer is first_timer
    assert session.counters["processedCount"] == 1

    await asyncio.sleep(0.2)

    assert not coalescer.timer_armed
    assert session.counters["processedCount"] == 3
    assert session.counters["matchesCount"] == 1
    assert coalescer.flush_count == 2


@pytest.mark.asyncio
async def test_cancel_drops_pending_and_timer():
    clock = _FakeClock()
    coalescer, session, _ = _make(clock=clock)
    coalescer.submit(CounterUpdate("processedCount", 1))
    coalescer.submit(CounterUpdate("processedCount", 2))

    coalescer.cancel()
    await asyncio.sleep(0.2)

    assert not coalescer.timer_armed
    assert coalescer.pending == {}
    assert session.counters["processedCount"] == 1


# -----------------------------------------------------------------------------
# Ramps
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_small_delta_ramps_to_target():
    coalescer, session, sink = _make(throttle_ms=0, animation_ms=48)

    coalescer.submit(CounterUpdate("matchesCount", 5))
    assert session.counters["matchesCount"] == 5

    await asyncio.sleep(0.2)

    values = [call[2] for call in sink.of("counter")]
    assert values == sorted(values)
    assert values[-1] == 5
    assert sink.of("counter")[-1][3] is True
    assert coalescer.displayed_value("matchesCount") == 5


@pytest.mark.asyncio
async def test_cancel_stops_running_ramp():
    coalescer, _, sink = _make(throttle_ms=0, animation_ms=500)
    coalescer.submit(CounterUpdate("matchesCount", 8))

    await asyncio.sleep(0)
    coalescer.cancel()
    await asyncio.sleep(0.05)

    assert all(call[2] < 8 for call in sink.of("counter"))
