"""
Engine Scheduler

Drives due-time work (campaign starts, workflow resumes, segment refresh
cadence) from a single tick. Ticks come from an APScheduler interval job in
production and are called directly with a frozen clock in tests.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .models import ensure_utc
from .protocols import ClockProtocol

logger = logging.getLogger(__name__)

TickHandler = Callable[[datetime], Awaitable[Any]]


class SystemClock:
    """Wall clock in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Manually advanced clock"""

    def __init__(self, start: datetime):
        self._now = ensure_utc(start)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)

    def advance(self, delta) -> datetime:
        self._now = self._now + delta
        return self._now


class EngineScheduler:
    """Runs registered due-time handlers on every tick"""

    JOB_ID = "campaign_engine_tick"

    def __init__(self, clock: Optional[ClockProtocol] = None, interval_seconds: int = 5):
        self.clock = clock or SystemClock()
        self.interval_seconds = interval_seconds
        self._handlers: List[Tuple[str, TickHandler]] = []
        self._scheduler: Optional[AsyncIOScheduler] = None

    def register(self, name: str, handler: TickHandler) -> None:
        """Register a handler; handlers run in registration order"""
        self._handlers.append((name, handler))

    @property
    def handler_names(self) -> List[str]:
        return [name for name, _ in self._handlers]

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, Optional[str]]:
        """
        Run every handler once.

        A failing handler is logged and reported but does not stop the others.

        Returns:
            Map of handler name to error message (None on success)
        """
        now = ensure_utc(now) if now else self.clock.now()
        results: Dict[str, Optional[str]] = {}
        for name, handler in self._handlers:
            try:
                await handler(now)
                results[name] = None
            except Exception as e:
                logger.error(f"Scheduler handler {name} failed: {e}", exc_info=True)
                results[name] = str(e)
        return results

    def start(self) -> None:
        """Start interval ticks on the running event loop"""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=self.interval_seconds),
            id=self.JOB_ID,
            name="Campaign engine tick",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self.interval_seconds * 2,
        )
        self._scheduler.start()
        logger.info(f"Scheduler started with {self.interval_seconds}-second ticks: {self.handler_names}")

    def shutdown(self) -> None:
        """Stop interval ticks"""
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self._scheduler = None


__all__ = ["SystemClock", "FrozenClock", "EngineScheduler"]
