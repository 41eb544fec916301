# agent-mesh - Filesystem-based multi-agent coordination
# Copyright (c) 2025 xnoto

"""Single-threaded timer and event dispatch for one agent.

All mesh state for an agent is mutated from the thread that drives the
scheduler. Other threads (the watchdog observer) only ``post`` callbacks
into a thread-safe queue; they are run on the next ``run_pending``.
Timers are one-shot and cancellable; a cancelled timer never fires.
"""

import heapq
import itertools
import logging
import queue
import threading
import time
from collections.abc import Callable

log = logging.getLogger(__name__)


class TimerHandle:
    """A scheduled callback. ``cancel`` is idempotent."""

    __slots__ = ("when", "callback", "cancelled", "fired")

    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> None:
        self.cancelled = True


class Scheduler:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._timers: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._events: queue.SimpleQueue[Callable[[], None]] = queue.SimpleQueue()

    def now(self) -> float:
        return self._clock()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once, ``delay`` seconds from now."""
        handle = TimerHandle(self._clock() + max(delay, 0.0), callback)
        heapq.heappush(self._timers, (handle.when, next(self._seq), handle))
        return handle

    def post(self, callback: Callable[[], None]) -> None:
        """Queue ``callback`` for the scheduler thread. Safe from any thread."""
        self._events.put(callback)

    def pending_timers(self) -> int:
        return sum(1 for _, _, handle in self._timers if handle.active)

    def next_deadline(self) -> float | None:
        while self._timers and not self._timers[0][2].active:
            heapq.heappop(self._timers)
        return self._timers[0][0] if self._timers else None

    def cancel_all(self) -> None:
        for _, _, handle in self._timers:
            handle.cancel()
        self._timers.clear()

    def run_pending(self) -> int:
        """Run queued events, then every timer that is due. Returns callbacks run."""
        ran = 0
        while True:
            try:
                callback = self._events.get_nowait()
            except queue.Empty:
                break
            self._run(callback)
            ran += 1

        now = self._clock()
        while self._timers and self._timers[0][0] <= now:
            _, _, handle = heapq.heappop(self._timers)
            if not handle.active:
                continue
            handle.fired = True
            self._run(handle.callback)
            ran += 1
        return ran

    def run_until(self, stop: threading.Event, max_wait: float = 1.0) -> None:
        """Dispatch events and timers until ``stop`` is set."""
        while not stop.is_set():
            self.run_pending()
            deadline = self.next_deadline()
            wait = max_wait if deadline is None else min(max(deadline - self._clock(), 0.0), max_wait)
            try:
                callback = self._events.get(timeout=wait)
            except queue.Empty:
                continue
            self._run(callback)

    def _run(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            log.exception("Scheduled callback failed")
