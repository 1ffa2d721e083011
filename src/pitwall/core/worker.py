"""Per-series reconciliation loop and the global expiry sweeper.

One ``SeriesWorker`` task runs per configured series. Within a worker every
iteration is strictly sequential, which is what keeps a session from being
notified twice. Workers share nothing but the repository pool and the channel
client. Every step guards itself: an error is logged, counted and the next
step (or iteration) proceeds.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from opentelemetry import trace

from pitwall.core.clock import monotonic as monotonic_clock
from pitwall.core.clock import utcnow
from pitwall.core.logging import bind_series
from pitwall.core.metrics import ReconcilerMetrics
from pitwall.core.reconciler import MessageReconciler, SeriesTarget
from pitwall.core.scheduler import evaluate, is_weekend_terminal
from pitwall.models import (
    Session,
    SessionStatus,
    Weekend,
    WeekendStatus,
    advance_session_status,
    advance_weekend_status,
)
from pitwall.repository import Repository

logger = logging.getLogger(__name__)

_FAILED = object()


async def _wait_or_stop(stop_event: asyncio.Event, interval: float) -> bool:
    """Sleep *interval* seconds; return True if shutdown was requested meanwhile."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=interval)
    except TimeoutError:
        return False
    return True


class SeriesWorker:
    """Reconciliation loop for one series.

    Args:
        target: Series, channel and role this worker posts to.
        repository: Calendar and tracked-message persistence.
        reconciler: Applies message diffs to the channel.
        poll_interval: Seconds slept at the top of every iteration.
        calendar_interval: Minimum seconds between calendar passes.
        clock: Returns the current UTC time.
        monotonic: Monotonic seconds used to schedule calendar passes.
        metrics: Optional counters sink for step failures.
    """

    def __init__(
        self,
        target: SeriesTarget,
        repository: Repository,
        reconciler: MessageReconciler,
        *,
        poll_interval: float = 5.0,
        calendar_interval: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = monotonic_clock,
        metrics: ReconcilerMetrics | None = None,
    ) -> None:
        self.target = target
        self._repository = repository
        self._reconciler = reconciler
        self.poll_interval = poll_interval
        self.calendar_interval = calendar_interval
        self._clock = clock
        self._monotonic = monotonic
        self._metrics = metrics
        self._last_calendar_pass: float | None = None

    async def _guarded(self, step: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run one loop step; on failure log it and return ``_FAILED``."""
        try:
            return await fn(*args)
        except Exception:
            logger.exception("Step %r failed for %s", step, self.target.series)
            if self._metrics is not None:
                self._metrics.record_step_error(self.target.series.value, step)
            return _FAILED

    async def _load(self) -> tuple[Weekend | None, list[Session]]:
        weekend = await self._repository.get_next_open_weekend(self.target.series)
        if weekend is None:
            return None, []
        return weekend, await self._repository.get_sessions(weekend.id)

    async def _finish_session(self, sessions: list[Session], session: Session) -> list[Session]:
        finished = advance_session_status(session, SessionStatus.FINISHED)
        await self._repository.set_session_status(session.id, SessionStatus.FINISHED)
        return [finished if s.id == session.id else s for s in sessions]

    async def _notify(
        self, weekend: Weekend, sessions: list[Session], now: datetime, span: trace.Span
    ) -> list[Session]:
        decision = evaluate(weekend, sessions, now)
        for session in decision.skipped:
            logger.info("Skipping %s %s (notifications off)", weekend.name, session.display_name)
            sessions = await self._finish_session(sessions, session)
        for session in decision.lapsed:
            logger.warning(
                "Session %s %s ended without a notification", weekend.name, session.display_name
            )
            sessions = await self._finish_session(sessions, session)

        session = decision.actionable
        if session is not None:
            span.set_attribute("actionable", session.id)
            await self._reconciler.send_notification(self.target, weekend, session, now)
            sessions = await self._finish_session(sessions, session)
        return sessions

    async def _complete_weekend(self, weekend: Weekend) -> None:
        done = advance_weekend_status(weekend, WeekendStatus.DONE)
        await self._repository.set_weekend_status(weekend.id, done.status)
        await self._reconciler.invalidate_weekend(weekend.id)
        # Run the calendar pass right away so the finished weekend drops off.
        self._last_calendar_pass = None
        logger.info("Weekend %s is done", weekend.name)

    def _calendar_due(self) -> bool:
        if self._last_calendar_pass is None:
            return True
        return self._monotonic() - self._last_calendar_pass >= self.calendar_interval

    async def run_once(self, now: datetime | None = None) -> None:
        """Run one full reconciliation iteration for this series."""
        now = now or self._clock()
        tracer = trace.get_tracer("pitwall")
        with tracer.start_as_current_span("pitwall.iteration") as span:
            span.set_attribute("series", self.target.series.value)

            loaded = await self._guarded("load", self._load)
            if loaded is not _FAILED:
                weekend, sessions = loaded
                await self._guarded(
                    "persistent",
                    self._reconciler.reconcile_persistent,
                    self.target,
                    weekend,
                    sessions,
                    now,
                )
                if weekend is not None:
                    updated = await self._guarded(
                        "notify", self._notify, weekend, sessions, now, span
                    )
                    if updated is not _FAILED and is_weekend_terminal(weekend, updated):
                        await self._guarded("complete", self._complete_weekend, weekend)

            if self._calendar_due():
                self._last_calendar_pass = self._monotonic()
                report = await self._guarded(
                    "calendar", self._reconciler.reconcile_calendar, self.target, now
                )
                if report is not _FAILED:
                    logger.debug("Calendar pass for %s: %s", self.target.series, report)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Loop until *stop_event* is set; never starts an iteration after that."""
        bind_series(self.target.series.value)
        logger.info(
            "Worker started for %s (channel=%s, poll=%ss)",
            self.target.series,
            self.target.channel_id,
            self.poll_interval,
        )
        try:
            while not await _wait_or_stop(stop_event, self.poll_interval):
                try:
                    await self.run_once()
                except Exception:
                    # Log but don't crash the loop
                    logger.exception("Iteration failed for %s", self.target.series)
        except asyncio.CancelledError:
            logger.debug("Worker cancelled for %s", self.target.series)
            raise
        logger.info("Worker stopped for %s", self.target.series)


class ExpirySweeper:
    """Deletes expired tracked messages once per round, for all series."""

    def __init__(
        self,
        reconciler: MessageReconciler,
        *,
        interval: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
        metrics: ReconcilerMetrics | None = None,
    ) -> None:
        self._reconciler = reconciler
        self.interval = interval
        self._clock = clock
        self._metrics = metrics

    async def run_once(self, now: datetime | None = None) -> None:
        now = now or self._clock()
        try:
            report = await self._reconciler.sweep_expired(now)
        except Exception:
            logger.exception("Expiry sweep failed")
            if self._metrics is not None:
                self._metrics.record_step_error("all", "sweep")
            return
        if report.deleted or report.already_gone or report.failed:
            logger.info(
                "Expiry sweep: deleted=%d already_gone=%d failed=%d",
                report.deleted,
                report.already_gone,
                report.failed,
            )

    async def run(self, stop_event: asyncio.Event) -> None:
        try:
            while not await _wait_or_stop(stop_event, self.interval):
                await self.run_once()
        except asyncio.CancelledError:
            logger.debug("Expiry sweeper cancelled")
            raise
