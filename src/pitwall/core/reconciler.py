"""Message reconciler: make the channel match the calendar.

Each public coroutine diffs the desired state (a weekend snapshot rendered to
text and fingerprinted) against the tracked-message ledger and issues the
minimum set of channel calls. Fingerprints are only stored after the channel
call succeeded, so a failed edit is retried on the next pass.

Deletes treat ``MessageNotFoundError`` as success. Any other channel failure,
lost access to the channel included, is logged and the affected row is kept
so a later pass or the expiry sweep retries it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from pitwall.channel import NotificationChannel
from pitwall.core.hashing import fingerprint
from pitwall.core.metrics import ReconcilerMetrics
from pitwall.core.render import (
    CALENDAR_PLACEHOLDER,
    render_calendar_entry,
    render_notification,
    render_weekend,
)
from pitwall.errors import MessageNotFoundError, PitwallError, RepositoryUnavailableError
from pitwall.models import Attachment, MessageKind, Series, Session, TrackedMessage, Weekend
from pitwall.repository import Repository

logger = logging.getLogger(__name__)

DEFAULT_NOTIFICATION_TTL = timedelta(minutes=30)


class ReconcileOutcome(enum.StrEnum):
    """What ``reconcile_persistent`` did to the channel."""

    CREATED = "created"
    EDITED = "edited"
    UNCHANGED = "unchanged"
    REMOVED = "removed"
    EMPTY = "empty"


@dataclass(frozen=True)
class SeriesTarget:
    """Where a series posts and whom it pings."""

    series: Series
    channel_id: str
    role_id: str | None = None


@dataclass
class CalendarReport:
    created: int = 0
    deleted: int = 0
    edited: int = 0
    unchanged: int = 0
    failed: int = 0


@dataclass
class SweepReport:
    deleted: int = 0
    already_gone: int = 0
    failed: int = 0


class MessageReconciler:
    """Diffs weekend state against tracked messages and applies the changes.

    Args:
        repository: Calendar and tracked-message persistence.
        channel: Chat channel the messages live in.
        metrics: Optional counters sink.
        calendar_post_delay: Seconds to wait between consecutive calendar
            placeholder posts, so they keep their posting order.
        attachment: Optional file attached to every notification.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        repository: Repository,
        channel: NotificationChannel,
        *,
        metrics: ReconcilerMetrics | None = None,
        calendar_post_delay: float = 0.25,
        attachment: Attachment | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._channel = channel
        self._metrics = metrics
        self._calendar_post_delay = calendar_post_delay
        self._attachment = attachment
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _delete_message(self, message: TrackedMessage) -> bool:
        """Delete the external message, then its row.

        Returns False (row kept) when the channel refused or failed the delete.
        """
        try:
            await self._channel.delete(message.channel_id, message.message_id)
        except MessageNotFoundError:
            logger.info(
                "%s message %s already gone from channel %s",
                message.kind,
                message.message_id,
                message.channel_id,
            )
        except PitwallError as exc:
            logger.warning(
                "Could not delete %s message %s: %s", message.kind, message.message_id, exc
            )
            return False
        await self._repository.delete_tracked_message(message.id)
        return True

    # ------------------------------------------------------------------
    # Persistent status message
    # ------------------------------------------------------------------

    async def _discard_persistent(self, message: TrackedMessage, now: datetime) -> bool:
        if await self._delete_message(message):
            return True
        # Hand the leftover to the expiry sweep.
        await self._repository.set_message_expiry(message.id, now)
        return False

    async def _post_persistent(
        self, target: SeriesTarget, weekend: Weekend, text: str, digest: str, now: datetime
    ) -> None:
        message_id = await self._channel.send(target.channel_id, text)
        await self._repository.insert_tracked_message(
            kind=MessageKind.PERSISTENT,
            series=target.series,
            channel_id=target.channel_id,
            message_id=message_id,
            posted_at=now,
            content_hash=digest,
            weekend_id=weekend.id,
        )
        logger.info("Posted status message for %s (%s)", weekend.name, message_id)

    async def reconcile_persistent(
        self,
        target: SeriesTarget,
        weekend: Weekend | None,
        sessions: Sequence[Session],
        now: datetime,
    ) -> ReconcileOutcome:
        """Bring the single "what's next" message of a series up to date.

        *weekend* is the next open weekend of the series, or None when the
        calendar has nothing left; the message is removed in that case.
        """
        tracked = await self._repository.get_tracked_messages(
            MessageKind.PERSISTENT, target.series
        )
        current = tracked[0] if tracked else None
        for extra in tracked[1:]:
            logger.warning(
                "Removing duplicate status message %s for %s", extra.message_id, target.series
            )
            await self._discard_persistent(extra, now)

        if current is not None and (
            weekend is None
            or current.weekend_id != weekend.id
            or current.channel_id != target.channel_id
        ):
            removed = await self._discard_persistent(current, now)
            current = None
            if not removed or weekend is None:
                return ReconcileOutcome.REMOVED

        if weekend is None:
            return ReconcileOutcome.EMPTY

        text = render_weekend(weekend, sessions)
        digest = fingerprint(weekend, sessions)

        if current is None:
            await self._post_persistent(target, weekend, text, digest, now)
            return ReconcileOutcome.CREATED

        if current.content_hash == digest:
            return ReconcileOutcome.UNCHANGED

        try:
            await self._channel.edit(current.channel_id, current.message_id, text)
        except MessageNotFoundError:
            logger.info("Status message %s vanished; reposting", current.message_id)
            await self._repository.delete_tracked_message(current.id)
            await self._post_persistent(target, weekend, text, digest, now)
            return ReconcileOutcome.CREATED
        await self._repository.update_tracked_message_hash(current.id, digest)
        return ReconcileOutcome.EDITED

    # ------------------------------------------------------------------
    # Calendar board
    # ------------------------------------------------------------------

    async def _sync_calendar_slot(
        self, weekend: Weekend, message: TrackedMessage
    ) -> ReconcileOutcome:
        sessions = await self._repository.get_sessions(weekend.id)
        digest = fingerprint(weekend, sessions)
        if message.content_hash == digest and message.weekend_id == weekend.id:
            return ReconcileOutcome.UNCHANGED
        try:
            await self._channel.edit(
                message.channel_id, message.message_id, render_calendar_entry(weekend, sessions)
            )
        except MessageNotFoundError:
            # Forget the slot; the next pass posts a fresh placeholder.
            await self._repository.delete_tracked_message(message.id)
            raise
        await self._repository.update_tracked_message_hash(
            message.id, digest, weekend_id=weekend.id
        )
        return ReconcileOutcome.EDITED

    async def reconcile_calendar(self, target: SeriesTarget, now: datetime) -> CalendarReport:
        """Keep exactly one calendar message per open weekend, in start order."""
        report = CalendarReport()
        weekends = await self._repository.get_open_weekends(target.series)
        messages = await self._repository.get_tracked_messages(MessageKind.CALENDAR, target.series)

        if len(messages) < len(weekends):
            for index in range(len(weekends) - len(messages)):
                if index:
                    await self._sleep(self._calendar_post_delay)
                try:
                    message_id = await self._channel.send(target.channel_id, CALENDAR_PLACEHOLDER)
                except PitwallError as exc:
                    logger.warning(
                        "Calendar placeholder post failed for %s: %s", target.series, exc
                    )
                    report.failed += 1
                    break
                row_id = await self._repository.insert_tracked_message(
                    kind=MessageKind.CALENDAR,
                    series=target.series,
                    channel_id=target.channel_id,
                    message_id=message_id,
                    posted_at=now,
                )
                messages.append(
                    TrackedMessage(
                        id=row_id,
                        kind=MessageKind.CALENDAR,
                        series=target.series,
                        channel_id=target.channel_id,
                        message_id=message_id,
                        posted_at=now,
                    )
                )
                report.created += 1
        elif len(messages) > len(weekends):
            for message in reversed(messages[len(weekends) :]):
                if await self._delete_message(message):
                    messages.remove(message)
                    report.deleted += 1
                else:
                    report.failed += 1

        if len(messages) != len(weekends):
            logger.warning(
                "Calendar for %s has %d messages for %d open weekends; retrying next pass",
                target.series,
                len(messages),
                len(weekends),
            )
            return report

        pairs = list(zip(weekends, messages, strict=True))
        results = await asyncio.gather(
            *(self._sync_calendar_slot(weekend, message) for weekend, message in pairs),
            return_exceptions=True,
        )
        for (weekend, message), result in zip(pairs, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    "Calendar entry for %s (message %s) failed: %s",
                    weekend.name,
                    message.message_id,
                    result,
                )
                report.failed += 1
            elif result is ReconcileOutcome.EDITED:
                report.edited += 1
            else:
                report.unchanged += 1
        return report

    # ------------------------------------------------------------------
    # Notifications and expiry
    # ------------------------------------------------------------------

    async def send_notification(
        self, target: SeriesTarget, weekend: Weekend, session: Session, now: datetime
    ) -> TrackedMessage:
        """Post the "session starting" ping and track it until it expires.

        Channel errors propagate so the caller leaves the session pending.
        """
        text = render_notification(weekend, session, target.role_id)
        message_id = await self._channel.send(target.channel_id, text, self._attachment)
        ttl = session.duration if session.duration > timedelta(0) else DEFAULT_NOTIFICATION_TTL
        expires_at = now + ttl
        row_id = await self._repository.insert_tracked_message(
            kind=MessageKind.NOTIFICATION,
            series=target.series,
            channel_id=target.channel_id,
            message_id=message_id,
            posted_at=now,
            expires_at=expires_at,
            weekend_id=weekend.id,
            session_id=session.id,
        )
        if self._metrics is not None:
            self._metrics.record_notification(target.series.value)
        logger.info(
            "Notified %s %s (message %s, expires %s)",
            weekend.name,
            session.display_name,
            message_id,
            expires_at.isoformat(),
        )
        return TrackedMessage(
            id=row_id,
            kind=MessageKind.NOTIFICATION,
            series=target.series,
            channel_id=target.channel_id,
            message_id=message_id,
            posted_at=now,
            expires_at=expires_at,
            weekend_id=weekend.id,
            session_id=session.id,
        )

    async def sweep_expired(self, now: datetime) -> SweepReport:
        """Delete every tracked message whose expiry has passed.

        A failure on one message, in the channel or in the ledger, is counted
        and the rest of the batch still runs.
        """
        report = SweepReport()
        for message in await self._repository.get_expired_tracked_messages(now):
            try:
                await self._channel.delete(message.channel_id, message.message_id)
                result = "deleted"
            except MessageNotFoundError:
                result = "already_gone"
            except PitwallError as exc:
                logger.warning(
                    "Expired %s message %s not deleted, will retry: %s",
                    message.kind,
                    message.message_id,
                    exc,
                )
                result = "retry"
            if result != "retry":
                try:
                    await self._repository.delete_tracked_message(message.id)
                except RepositoryUnavailableError as exc:
                    # Next sweep finds the message already gone and drops the row.
                    logger.warning("Row for expired message %s kept: %s", message.message_id, exc)
                    result = "retry"

            if result == "deleted":
                report.deleted += 1
            elif result == "already_gone":
                report.already_gone += 1
            else:
                report.failed += 1
            if self._metrics is not None:
                self._metrics.record_swept(result)
        return report

    async def invalidate_weekend(self, weekend_id: int) -> None:
        """Force the next pass to re-render every message showing *weekend_id*."""
        await self._repository.invalidate_tracked_messages(weekend_id)
