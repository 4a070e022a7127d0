"""
Scheduler module for the link scanner.

Runs named interval tasks on a single asyncio loop and owns one-shot
delayed timers (used for re-queueing freshly submitted URLs). A task's
callback is awaited before the loop sleeps again, so runs of the same
task never overlap.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .event_logger import EventLogger, LogMixin


@dataclass
class IntervalTask:
    """Represents a task run every `interval_seconds`."""

    name: str
    interval_seconds: float
    callback: Callable[[], Awaitable[object]]
    next_run: Optional[float] = None
    run_count: int = 0
    enabled: bool = True


class Scheduler(LogMixin):
    """
    Fixed-cadence scheduler with cancellable one-shot timers.

    `stop()` halts the run loop and cancels every pending timer.
    """

    COMPONENT = "Scheduler"

    def __init__(self, logger: Optional[EventLogger] = None) -> None:
        """Initialize the scheduler."""
        self._tasks: dict[str, IntervalTask] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._running = False
        self._wakeup: Optional[asyncio.Event] = None
        self._logger = logger

    def every(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[object]],
    ) -> IntervalTask:
        """
        Schedule an async callback to run every `interval_seconds`.

        The first run happens one interval after the loop starts.

        Raises:
            ValueError: If the interval is not positive or the name is taken
        """
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be positive, got {interval_seconds}")
        if name in self._tasks:
            raise ValueError(f"Task '{name}' already exists")

        task = IntervalTask(name=name, interval_seconds=interval_seconds, callback=callback)
        self._tasks[name] = task
        return task

    def unschedule(self, name: str) -> bool:
        """Remove a scheduled task. Returns True if it existed."""
        return self._tasks.pop(name, None) is not None

    def get_task(self, name: str) -> Optional[IntervalTask]:
        return self._tasks.get(name)

    def list_tasks(self) -> list[IntervalTask]:
        return list(self._tasks.values())

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        """
        Run a plain callback once after a delay.

        Must be called from inside the running event loop. The timer is
        cancelled by `stop()` or `cancel_timers()`.
        """
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._timers.discard(handle)
            try:
                callback()
            except Exception as e:
                self._log_error("Delayed callback failed", error=e)

        handle = loop.call_later(max(0.0, delay_seconds), fire)
        self._timers.add(handle)
        return handle

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    def cancel_timers(self) -> int:
        """Cancel every pending one-shot timer. Returns how many were cancelled."""
        cancelled = len(self._timers)
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        return cancelled

    async def run_task(self, task: IntervalTask) -> None:
        """Run a single task once, logging (not raising) callback errors."""
        task.run_count += 1
        try:
            await task.callback()
        except Exception as e:
            self._log_error("Scheduled task failed", error=e, data={"task": task.name})

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Run the scheduler loop until `stop()` is called or `stop_event` is set.

        Args:
            stop_event: Optional event to signal the scheduler to stop
        """
        self._running = True
        self._wakeup = asyncio.Event()

        start = time.monotonic()
        for task in self._tasks.values():
            task.next_run = start + task.interval_seconds

        try:
            while self._running:
                if stop_event is not None and stop_event.is_set():
                    break

                now = time.monotonic()
                for task in list(self._tasks.values()):
                    if not task.enabled:
                        continue
                    if task.next_run is None:
                        task.next_run = now + task.interval_seconds
                        continue
                    if now >= task.next_run:
                        await self.run_task(task)
                        if not self._running:
                            break
                        task.next_run = time.monotonic() + task.interval_seconds

                await self._sleep(self._seconds_until_next_run(), stop_event)
        finally:
            self._running = False

    def _seconds_until_next_run(self) -> float:
        pending = [
            task.next_run for task in self._tasks.values()
            if task.enabled and task.next_run is not None
        ]
        if not pending:
            return 1.0
        return max(0.0, min(pending) - time.monotonic())

    async def _sleep(self, seconds: float, stop_event: Optional[asyncio.Event]) -> None:
        waiters = [asyncio.ensure_future(self._wakeup.wait())]
        if stop_event is not None:
            waiters.append(asyncio.ensure_future(stop_event.wait()))
        try:
            await asyncio.wait(waiters, timeout=seconds, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    def stop(self) -> None:
        """Signal the scheduler to stop and cancel pending timers."""
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        self.cancel_timers()

    def is_running(self) -> bool:
        """Check if the scheduler is running."""
        return self._running
