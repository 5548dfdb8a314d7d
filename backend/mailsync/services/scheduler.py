"""Wake-up scheduler — heartbeat, connectivity-restored and app-resume triggers for the queues."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from mailsync.services.connectivity import Connectivity
from mailsync.services.retry import now_ms

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable]


class WakeScheduler:
    """Runs the queue processors when there is a reason to believe they can make progress."""

    def __init__(
        self,
        connectivity: Connectivity,
        jobs: list[Job],
        heartbeat_seconds: float = 30,
        debounce_ms: int = 2_000,
        clock: Callable[[], int] = now_ms,
    ):
        self.connectivity = connectivity
        self._jobs = list(jobs)
        self._heartbeat_seconds = heartbeat_seconds
        self._debounce_ms = debounce_ms
        self._clock = clock
        self._last_wake: Optional[int] = None
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def add_job(self, job: Job) -> None:
        self._jobs.append(job)

    @property
    def running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self._task is not None:
            return
        self._unsubscribe = self.connectivity.on_restored(lambda: self.wake("online"))
        self._task = asyncio.create_task(self._heartbeat())
        logger.info(f"Wake scheduler started (heartbeat {self._heartbeat_seconds}s)")

    async def stop(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def notify_resume(self) -> bool:
        """App came back to the foreground."""
        return await self.wake("resume")

    async def wake(self, reason: str = "manual") -> bool:
        """Run every job once, unless offline or another wake-up happened within the debounce window."""
        if not self.connectivity.online:
            return False
        now = self._clock()
        if self._last_wake is not None and now - self._last_wake < self._debounce_ms:
            logger.debug(f"Wake-up ({reason}) debounced")
            return False
        self._last_wake = now

        logger.debug(f"Wake-up ({reason}): running {len(self._jobs)} job(s)")
        results = await asyncio.gather(*(job() for job in self._jobs), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Wake-up job failed ({reason}): {result}")
        return True

    async def _heartbeat(self):
        while True:
            try:
                await asyncio.sleep(self._heartbeat_seconds)
                await self.wake("heartbeat")
            except asyncio.CancelledError:
                logger.info("Heartbeat task cancelled")
                break
            except Exception as e:
                logger.error(f"Heartbeat error: {e}")
