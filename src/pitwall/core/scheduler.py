"""Session scheduler: decides which session is actionable right now.

Pure functions of (weekend, sessions, now). Nothing here touches the database
or the channel; the worker persists whatever transitions a decision implies.

The notify window is ``0 <= start - now < NOTIFY_WINDOW``: a session becomes
actionable at most five minutes before it starts and stops being actionable
the instant it starts.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pitwall.models import (
    PENDING_SESSION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    NotificationSetting,
    Session,
    Weekend,
    WeekendStatus,
)

NOTIFY_WINDOW = timedelta(minutes=5)


@dataclass(frozen=True)
class SchedulerDecision:
    """What the worker should do with a weekend's sessions this iteration.

    Attributes:
        actionable: The single session to notify now, if any.
        skipped: Ignore-preference sessions that entered their window; they
            are advanced to ``Finished`` without a notification.
        lapsed: Pending sessions whose end has already passed without a
            notification; they are advanced to ``Finished`` so the weekend
            can complete.
    """

    actionable: Session | None = None
    skipped: list[Session] = field(default_factory=list)
    lapsed: list[Session] = field(default_factory=list)


def in_notify_window(session: Session, now: datetime) -> bool:
    """Return True when *session* starts within the next five minutes."""
    until_start = session.start_date - now
    return timedelta(0) <= until_start < NOTIFY_WINDOW


def evaluate(weekend: Weekend, sessions: Sequence[Session], now: datetime) -> SchedulerDecision:
    """Classify the pending sessions of *weekend* relative to *now*."""
    if weekend.status != WeekendStatus.OPEN:
        return SchedulerDecision()

    candidates: list[Session] = []
    skipped: list[Session] = []
    lapsed: list[Session] = []
    for session in sessions:
        if session.status not in PENDING_SESSION_STATUSES:
            continue
        if in_notify_window(session, now):
            if session.notify == NotificationSetting.IGNORE:
                skipped.append(session)
            else:
                candidates.append(session)
        elif now >= session.end_date:
            lapsed.append(session)

    actionable = min(candidates, key=lambda s: (s.start_date, s.id), default=None)
    return SchedulerDecision(actionable=actionable, skipped=skipped, lapsed=lapsed)


def next_actionable_session(
    weekend: Weekend, sessions: Sequence[Session], now: datetime
) -> Session | None:
    """Return the session to notify now, or None.

    Only Open/Delayed sessions with a ``Notify`` preference inside their
    window qualify. Ties on start time go to the lowest id.
    """
    return evaluate(weekend, sessions, now).actionable


def is_weekend_terminal(weekend: Weekend, sessions: Sequence[Session]) -> bool:
    """Return True when *weekend* is done or every one of its sessions is.

    A weekend without sessions is never terminal: it may simply not have been
    populated yet.
    """
    if weekend.status == WeekendStatus.DONE:
        return True
    if not sessions:
        return False
    return all(s.status in TERMINAL_SESSION_STATUSES for s in sessions)
