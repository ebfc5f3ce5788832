from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

log = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class PeriodicTimer:
    """
    Runs ``callback`` every ``interval_s`` seconds on the event loop.

    The interval can be changed while the timer runs; the pending wait is
    restarted with the new value. A callback that raises is logged and the
    timer keeps going.
    """

    def __init__(
        self,
        name: str,
        interval_s: float,
        callback: TimerCallback,
        run_immediately: bool = False,
    ) -> None:
        self.name = name
        self.interval_s = interval_s
        self.callback = callback
        self.run_immediately = run_immediately
        self.fire_count = 0
        self._task: Optional[asyncio.Task[None]] = None
        self._wake = asyncio.Event()
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopping

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name=f"timer:{self.name}")

    def reschedule(self, interval_s: float) -> None:
        if interval_s == self.interval_s:
            return
        log.debug("timer %s rescheduled %.1fs -> %.1fs", self.name, self.interval_s, interval_s)
        self.interval_s = interval_s
        self._wake.set()

    def cancel(self) -> None:
        if self._task is None:
            return
        self._stopping = True
        # Cancelled from inside its own callback: let the callback finish.
        if asyncio.current_task() is not self._task:
            self._task.cancel()
        self._task = None

    async def _fire(self) -> None:
        self.fire_count += 1
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("timer %s callback failed", self.name)

    async def _run(self) -> None:
        if self.run_immediately:
            await self._fire()
        while not self._stopping:
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                if self._stopping:
                    break
                await self._fire()


class Scheduler:
    """Named periodic timers that can be started, rescheduled and cancelled as a unit."""

    def __init__(self) -> None:
        self.timers: Dict[str, PeriodicTimer] = {}

    def every(
        self,
        name: str,
        interval_s: float,
        callback: TimerCallback,
        run_immediately: bool = False,
    ) -> PeriodicTimer:
        self.cancel(name)
        timer = PeriodicTimer(name, interval_s, callback, run_immediately)
        self.timers[name] = timer
        timer.start()
        log.info("Started timer %s every %.1fs", name, interval_s)
        return timer

    def reschedule(self, name: str, interval_s: float) -> None:
        timer = self.timers.get(name)
        if timer is not None:
            timer.reschedule(interval_s)

    def is_running(self, name: str) -> bool:
        timer = self.timers.get(name)
        return timer is not None and timer.running

    def cancel(self, name: str) -> None:
        timer = self.timers.pop(name, None)
        if timer is not None:
            timer.cancel()
            log.info("Stopped timer %s", name)

    def cancel_all(self) -> None:
        for name in list(self.timers):
            self.cancel(name)
