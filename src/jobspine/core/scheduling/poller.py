"""Thread-based ticking loop for the dispatch core.

┌──────────────────────────────────────────────────────────────────────────────┐
│  DISPATCH LOOP                                                                │
│                                                                               │
│   start()                                                                     │
│      │                                                                        │
│      ▼                                                                        │
│   ┌─────────────────────────────────────────────────────────────────┐        │
│   │              Daemon Thread (loop)                               │        │
│   │                                                                 │        │
│   │   while not stop_event.wait(interval):                          │        │
│   │       tick()                                                    │        │
│   │         ├── dispatcher.run_once(now, scheduled_sets)            │        │
│   │         └── scheduler.run_once(now)                             │        │
│   │                                                                 │        │
│   │   StoreUnavailable ─► warning, retried next tick                │        │
│   │   anything else    ─► logged with traceback, loop survives      │        │
│   └─────────────────────────────────────────────────────────────────┘        │
│                                                                               │
│   stop()                                                                      │
│      └── stop_event.set(); thread.join(timeout=5.0)                           │
│                                                                               │
│  A tick that has started always runs to completion; stop() only takes        │
│  effect at tick boundaries. Entries left undispatched by a killed process    │
│  stay in their sets and are claimed by another process.                      │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from jobspine.core.errors import StoreUnavailable
from jobspine.core.logging import LogContext, get_logger
from jobspine.core.settings import DispatchSettings
from jobspine.core.timestamps import utc_now

from .dispatcher import DEFAULT_SETS, ScheduledDispatcher
from .periodic import PeriodicScheduler

logger = get_logger(__name__)


@dataclass
class TickResult:
    """Outcome of one loop tick."""

    scheduled: int = 0
    periodic: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class DispatchLoop:
    """Runs the scheduled dispatcher and the periodic scheduler on a timer.

    Example:
        >>> loop = DispatchLoop(dispatcher, scheduler, interval_seconds=5.0)
        >>> loop.start()
        >>> # ... later ...
        >>> loop.stop()
    """

    name = "thread"

    def __init__(
        self,
        dispatcher: ScheduledDispatcher,
        scheduler: PeriodicScheduler,
        *,
        scheduled_sets: Sequence[str] = DEFAULT_SETS,
        interval_seconds: float = 5.0,
    ) -> None:
        self.dispatcher = dispatcher
        self.scheduler = scheduler
        self.scheduled_sets = list(scheduled_sets)
        self.interval = interval_seconds

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._last_result: TickResult | None = None
        self._started = False
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        dispatcher: ScheduledDispatcher,
        scheduler: PeriodicScheduler,
        settings: DispatchSettings,
    ) -> DispatchLoop:
        return cls(
            dispatcher,
            scheduler,
            scheduled_sets=settings.scheduled_sets,
            interval_seconds=settings.poll_interval_seconds,
        )

    # === Ticks ===

    def tick(self, now: datetime | None = None) -> TickResult:
        """Run one dispatcher pass and one periodic pass.

        A store outage ends the whole tick: if the dispatcher pass fails the
        periodic pass is not attempted. The outage is reported in the returned
        :class:`TickResult` and the next tick tries again.
        """
        now = now or utc_now()
        with self._lock:
            self._tick_count += 1
            self._last_tick = now
            tick_number = self._tick_count

        result = TickResult()
        with LogContext(tick=tick_number):
            try:
                result.scheduled = self.dispatcher.run_once(now, self.scheduled_sets)
            except StoreUnavailable as e:
                logger.warning("dispatch_tick_aborted", **e.to_dict())
                result.errors.append(str(e))

            if result.ok:
                try:
                    result.periodic = self.scheduler.run_once(now)
                except StoreUnavailable as e:
                    logger.warning("periodic_tick_aborted", **e.to_dict())
                    result.errors.append(str(e))

        self._last_result = result
        return result

    # === Lifecycle ===

    def start(self) -> None:
        """Start ticking on a daemon thread."""
        if self._started:
            logger.warning("dispatch_loop_already_started")
            return

        self._stop_event.clear()

        def _loop() -> None:
            logger.info("dispatch_loop_started", interval_seconds=self.interval)
            while not self._stop_event.wait(self.interval):
                try:
                    self.tick()
                except Exception as e:
                    self._last_result = TickResult(errors=[str(e)])
                    logger.exception("dispatch_tick_failed", error=str(e))
            logger.info("dispatch_loop_stopped")

        self._thread = threading.Thread(target=_loop, daemon=True, name="jobspine-dispatch")
        self._thread.start()
        self._started = True

    def stop(self) -> None:
        """Stop the loop at the next tick boundary.

        Waits up to 5 seconds for the current tick to complete.
        """
        if not self._started:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.warning("dispatch_thread_did_not_stop")

        self._started = False

    # === Health ===

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def health(self) -> dict[str, Any]:
        """Return loop health status."""
        return {
            "healthy": self.is_running and (self._last_result is None or self._last_result.ok),
            "backend": self.name,
            "tick_count": self._tick_count,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "interval_seconds": self.interval,
            "dispatched": self.dispatcher.get_stats().dispatched,
            "periodic_dispatched": self.scheduler.get_stats().dispatched,
        }


__all__ = ["DispatchLoop", "TickResult"]
