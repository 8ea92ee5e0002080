"""Clock/timer capability used by the delivery scheduler.

The scheduler never touches APScheduler directly; it arms and cancels
one-shot timers through the Timer protocol so tests can drive it with
virtual time.

Example:
    >>> timer = APSchedulerTimer()
    >>> timer.start()  # inside a running event loop
    >>> handle = timer.call_at("dispatch:1001:1", run_at, callback)
    >>> timer.cancel(handle)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Protocol

from apscheduler.jobstores.base import JobLookupError  # type: ignore[import-untyped]
from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class Timer(Protocol):
    """One-shot timers keyed by a caller-chosen id."""

    def now(self) -> datetime:
        """Current time (timezone-aware UTC)."""
        ...

    def call_at(self, key: str, run_at: datetime, callback: TimerCallback) -> str:
        """Arm a timer; returns the handle used to cancel it."""
        ...

    def cancel(self, handle: str) -> None:
        """Disarm a timer. Unknown or already-fired handles are ignored."""
        ...


class ManagedTimer(Timer, Protocol):
    """Timer with a lifecycle owned by the service."""

    def start(self) -> None: ...

    def shutdown(self, wait: bool = False) -> None: ...


class APSchedulerTimer:
    """
    Timer backed by an APScheduler AsyncIOScheduler with 'date' triggers.

    Jobs run on the event loop the scheduler was started in; callbacks are
    coroutine functions. Jobs that missed their run time (e.g. the loop was
    blocked) still run as soon as possible.
    """

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    def start(self) -> None:
        """Start the scheduler. Must be called from a running event loop."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Dispatch timer started")

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Dispatch timer shutdown complete")

    def now(self) -> datetime:
        return datetime.now(UTC)

    def call_at(self, key: str, run_at: datetime, callback: TimerCallback) -> str:
        job = self.scheduler.add_job(
            callback,
            trigger="date",
            run_date=run_at,
            id=key,
            replace_existing=True,
            misfire_grace_time=None,
        )
        return str(job.id)

    def cancel(self, handle: str) -> None:
        # Fired date jobs are removed by APScheduler before we get here
        try:
            self.scheduler.remove_job(handle)
        except JobLookupError:
            logger.debug(f"Timer {handle} already fired or removed")
