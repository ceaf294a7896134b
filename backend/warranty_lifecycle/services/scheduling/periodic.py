"""
Periodic Task

Runs one synchronous sweep on a fixed interval as an asyncio background task.

- The sweep runs in a worker thread (asyncio.to_thread) so blocking database
  and gateway calls never stall the event loop
- The first run is delayed by a random jitter so restarted processes don't all
  sweep at the same instant
- The next run is scheduled from the completion of the previous one
- A failing sweep is logged and recorded; the schedule keeps going
- stop() waits for in-flight runs (scheduled or manual) to finish instead of
  cancelling them

Usage in FastAPI:
    task = PeriodicTask("reminders", run_reminders, interval_seconds=3600)
    await task.start()
    ...
    await task.stop()
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .clock import SystemClock

logger = logging.getLogger(__name__)


class PeriodicTask:
    """A named sweep with start/stop, manual trigger and run status."""

    def __init__(
        self,
        name: str,
        func: Callable[[str], Dict[str, Any]],
        interval_seconds: float,
        jitter_seconds: float = 0.0,
        clock=None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            name: Job name used in logs and status
            func: Sweep callable; receives the trigger ("schedule" or "manual")
            interval_seconds: Pause between the end of one run and the start of the next
            jitter_seconds: Upper bound of the random delay before the first run
            clock: Source of timestamps for status
            sleep: Awaitable sleep, injectable for tests
            rng: Random source for the jitter
        """
        self.name = name
        self.func = func
        self.interval = interval_seconds
        self.jitter = jitter_seconds
        self.clock = clock or SystemClock()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Future] = set()

        # Stats
        self.run_count = 0
        self.error_count = 0
        self.last_started_at = None
        self.last_finished_at = None
        self.last_result: Optional[Dict[str, Any]] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_progress(self) -> bool:
        return any(not f.done() for f in self._in_flight)

    def first_run_delay(self) -> float:
        if self.jitter <= 0:
            return 0.0
        return self._rng.uniform(0, self.jitter)

    async def start(self) -> None:
        """Start the background loop. Must be called from a running event loop."""
        if self._running:
            logger.warning(f"Periodic task {self.name} already running")
            return

        self._running = True
        self._loop_task = asyncio.create_task(self._loop(), name=f"periodic-{self.name}")
        logger.info(f"Periodic task {self.name} started (interval={self.interval}s)")

    async def stop(self) -> None:
        """Stop scheduling new runs and wait for the current one to finish."""
        if not self._running:
            return
        self._running = False

        pending = {f for f in self._in_flight if not f.done()}
        if pending:
            logger.info(f"Periodic task {self.name} waiting for {len(pending)} in-flight run(s)")
            # Outcomes are recorded by run_once
            await asyncio.wait(pending)

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        logger.info(f"Periodic task {self.name} stopped")

    async def _loop(self) -> None:
        await self._sleep(self.first_run_delay())
        while self._running:
            await self.run_once(trigger="schedule")
            if not self._running:
                break
            await self._sleep(self.interval)

    async def run_once(self, trigger: str = "manual") -> Optional[Dict[str, Any]]:
        """
        Run the sweep now. Returns its summary, or None if it raised.
        Exceptions are logged and stored in last_error, never propagated.
        """
        self.last_started_at = self.clock.now()
        current = asyncio.ensure_future(asyncio.to_thread(self.func, trigger))
        self._in_flight.add(current)
        current.add_done_callback(self._in_flight.discard)

        try:
            result = await asyncio.shield(current)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)
            self.last_result = None
            logger.error(f"Periodic task {self.name} failed: {e}")
            return None
        finally:
            self.run_count += 1
            self.last_finished_at = self.clock.now()

        self.last_error = None
        self.last_result = result
        return result

    def get_status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "running": self._running,
            "in_progress": self.in_progress,
            "interval_seconds": self.interval,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_finished_at": self.last_finished_at.isoformat() if self.last_finished_at else None,
            "last_error": self.last_error,
            "last_result": self.last_result,
        }
