"""Counter update coalescing and animation.

High-frequency live events (per-transaction progress, match found, batch
processed) can arrive dozens of times per second. The coalescer:
- Merges updates per counter into a pending map
- Applies the map at most once per throttle interval, using one timer
- Keeps counters monotonic (a lower target is logged and dropped)
- Ramps small increments over a short animation, snaps and pulses large ones
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from .event_emitter import PresentationEmitter
    from .session import Session

LOGGER = logging.getLogger(__name__)

# ~60 frames per second
FRAME_SECONDS = 0.016


@dataclass(frozen=True, slots=True)
class CounterUpdate:
    counter_id: str
    target_value: int


class CounterCoalescer:
    """Throttles counter renders for one session.

    Args:
        session: Session whose ``counters`` hold the applied values
        emitter: Presentation emitter receiving counter renders
        throttle_ms: Minimum interval between flushes
        animation_ms: Ramp duration for small increments (0 disables ramps)
        animation_max_delta: Largest increment that is ramped instead of snapped
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        session: "Session",
        emitter: "PresentationEmitter",
        *,
        throttle_ms: int = 100,
        animation_ms: int = 100,
        animation_max_delta: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self._emitter = emitter
        self._throttle = max(0, throttle_ms) / 1000
        self._animation = max(0, animation_ms) / 1000
        self._animation_max_delta = max(0, animation_max_delta)
        self._clock = clock

        self._pending: dict[str, int] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._ramps: dict[str, asyncio.Task[None]] = {}
        self._displayed: dict[str, int] = {}
        self._last_flush: Optional[float] = None
        self.flush_count = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    @property
    def pending(self) -> dict[str, int]:
        return dict(self._pending)

    def displayed_value(self, counter_id: str) -> int:
        """Value last rendered for ``counter_id`` (may trail the session during a ramp)."""
        return self._displayed.get(counter_id, 0)

    # ------------------------------------------------------------------
    # Submission and flushing
    # ------------------------------------------------------------------

    def submit(self, update: CounterUpdate) -> None:
        counter_id = update.counter_id
        value = int(update.target_value)

        queued = self._pending.get(counter_id)
        if queued is None and self._session.counters.get(counter_id) == value:
            return
        if queued is not None and value < queued:
            LOGGER.debug("Counter %s=%d behind queued %d; keeping %d", counter_id, value, queued, queued)
            value = queued
        self._pending[counter_id] = value

        now = self._clock()
        if self._last_flush is None or now - self._last_flush >= self._throttle:
            self.flush()
            return
        if self._timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        delay = max(0.0, self._throttle - (now - self._last_flush))
        self._timer = loop.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        try:
            self.flush()
        except Exception:
            LOGGER.error("Scheduled counter flush failed", exc_info=True)

    def flush(self) -> bool:
        """Apply every pending update now. Returns True when any counter changed."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        pending, self._pending = self._pending, {}
        self._last_flush = self._clock()

        changed = False
        for counter_id, target in pending.items():
            previous = self._session.apply_counter(counter_id, target)
            if previous is None or previous == target:
                continue
            changed = True
            self._render(counter_id, previous, target)
        if changed:
            self.flush_count += 1
        return changed

    def cancel(self) -> None:
        """Drop pending updates and stop the timer and any running ramps."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()
        for task in self._ramps.values():
            task.cancel()
        self._ramps.clear()

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _render(self, counter_id: str, previous: int, target: int) -> None:
        start = self._displayed.get(counter_id, previous)
        running = self._ramps.pop(counter_id, None)
        if running is not None and not running.done():
            running.cancel()

        delta = target - start
        if 0 < delta <= self._animation_max_delta and self._animation > 0:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is not None:
                self._ramps[counter_id] = loop.create_task(
                    self._ramp(counter_id, start, target),
                    name=f"counter-ramp-{counter_id}",
                )
                return

        self._displayed[counter_id] = target
        self._emitter.emit_counter(counter_id, target, highlight=True)

    async def _ramp(self, counter_id: str, start: int, end: int) -> None:
        frames = max(1, round(self._animation / FRAME_SECONDS))
        step = (end - start) / frames
        for frame in range(1, frames):
            await asyncio.sleep(FRAME_SECONDS)
            value = int(start + step * frame)
            if value > self._displayed.get(counter_id, start):
                self._displayed[counter_id] = value
                self._emitter.emit_counter(counter_id, value)
        await asyncio.sleep(FRAME_SECONDS)
        self._displayed[counter_id] = end
        self._emitter.emit_counter(counter_id, end, highlight=True)
        if self._ramps.get(counter_id) is asyncio.current_task():
            del self._ramps[counter_id]
