"""
Escalation Scheduler

One timer per review-stage instance. A timer fires its callback at most
once, no earlier than the configured number of hours after its stage
started, and can be cancelled exactly. Timers live in process memory, so
after a restart the lifecycle re-arms them from the stored stage entry
times; a timer whose deadline has already passed fires immediately.
Hours are scaled by ``seconds_per_hour`` so tests and demos can run
escalation in seconds.
"""

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

EscalationCallback = Callable[[], Union[Awaitable[Any], Any]]


class EscalationScheduler:
    """Keyed asyncio timers."""

    def __init__(self, seconds_per_hour: float = 3600.0):
        if seconds_per_hour < 0:
            raise ValueError("seconds_per_hour must not be negative")
        self.seconds_per_hour = seconds_per_hour
        self._tasks: Dict[str, asyncio.Task] = {}

    def delay_for(self, hours: float) -> float:
        return hours * self.seconds_per_hour

    def remaining(self, hours: float, started_at: Optional[datetime] = None) -> float:
        """Seconds left until ``hours`` have passed since ``started_at`` (never negative)."""
        delay = self.delay_for(hours)
        if started_at is not None:
            if started_at.tzinfo is None:
                started_at = started_at.replace(tzinfo=timezone.utc)
            elapsed = (datetime.now(timezone.utc) - started_at).total_seconds()
            delay -= elapsed
        return max(delay, 0.0)

    def schedule(
        self,
        key: str,
        hours: float,
        callback: EscalationCallback,
        started_at: Optional[datetime] = None,
    ) -> asyncio.Task:
        """
        Fire ``callback`` once ``hours`` after ``started_at`` (default: now).

        Replaces any timer under the same key. An already overdue deadline
        fires on the next loop iteration. Must be called from a running
        event loop.
        """
        if hours <= 0:
            raise ValueError(f"Escalation hours must be positive, got {hours}")

        self.cancel(key)
        delay = self.remaining(hours, started_at)
        task = asyncio.get_running_loop().create_task(self._run(key, delay, callback))
        self._tasks[key] = task
        logger.debug(f"Escalation timer {key} scheduled in {delay:.1f}s ({hours}h)")
        return task

    async def _run(self, key: str, delay: float, callback: EscalationCallback):
        try:
            await asyncio.sleep(delay)
            # Unregister before firing so the callback may reschedule this key
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]
            logger.info(f"Escalation timer {key} fired")
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Escalation callback for {key} failed: {e}")

    def cancel(self, key: str) -> bool:
        """Cancel a pending timer; False when none was pending."""
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug(f"Escalation timer {key} cancelled")
        return True

    def cancel_prefix(self, prefix: str) -> int:
        """Cancel every pending timer whose key starts with ``prefix``."""
        keys = [k for k in self._tasks if k.startswith(prefix)]
        return sum(1 for k in keys if self.cancel(k))

    def pending(self) -> List[str]:
        return [k for k, t in self._tasks.items() if not t.done()]

    def is_pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    async def shutdown(self):
        """Cancel every timer and wait for them to unwind."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
