"""Data model for weekends, sessions and the chat messages tracked for them.

Enums are stored in the database as their string value. Decoding is lenient
for session-level enums (unknown values become ``Unsupported``/``Ignore``) so
that a row written by a newer ingestion process never crashes the loop.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from pitwall.errors import InvalidTransitionError


class Series(enum.StrEnum):
    """An independently scheduled championship calendar."""

    F1 = "F1"
    F2 = "F2"
    F3 = "F3"
    F1_ACADEMY = "F1Academy"


class WeekendStatus(enum.StrEnum):
    OPEN = "Open"
    CANCELLED = "Cancelled"
    DONE = "Done"


class SessionKind(enum.StrEnum):
    CUSTOM = "Custom"
    PRACTICE = "Practice"
    QUALIFYING = "Qualifying"
    RACE = "Race"
    SPRINT_RACE = "SprintRace"
    SPRINT_QUALI = "SprintQuali"
    PRE_SEASON_TEST = "PreSeasonTest"
    FEATURE_RACE = "FeatureRace"
    UNSUPPORTED = "Unsupported"

    @classmethod
    def parse(cls, value: str) -> SessionKind:
        try:
            return cls(value)
        except ValueError:
            return cls.UNSUPPORTED


class SessionStatus(enum.StrEnum):
    OPEN = "Open"
    DELAYED = "Delayed"
    CANCELLED = "Cancelled"
    FINISHED = "Finished"
    UNSUPPORTED = "Unsupported"

    @classmethod
    def parse(cls, value: str) -> SessionStatus:
        try:
            return cls(value)
        except ValueError:
            return cls.UNSUPPORTED


class NotificationSetting(enum.StrEnum):
    NOTIFY = "Notify"
    IGNORE = "Ignore"

    @classmethod
    def parse(cls, value: str) -> NotificationSetting:
        # Anything that is not an explicit opt-in is treated as opt-out.
        return cls.NOTIFY if value == cls.NOTIFY.value else cls.IGNORE


class MessageKind(enum.StrEnum):
    """The three kinds of externally posted artifacts."""

    PERSISTENT = "Persistent"
    CALENDAR = "Calendar"
    NOTIFICATION = "Notification"


# Statuses a session may still be notified (or skipped) from.
PENDING_SESSION_STATUSES = frozenset({SessionStatus.OPEN, SessionStatus.DELAYED})
# Statuses that count towards a weekend being complete.
TERMINAL_SESSION_STATUSES = frozenset({SessionStatus.FINISHED, SessionStatus.CANCELLED})

_SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.OPEN: frozenset(
        {SessionStatus.DELAYED, SessionStatus.FINISHED, SessionStatus.CANCELLED}
    ),
    SessionStatus.DELAYED: frozenset({SessionStatus.FINISHED, SessionStatus.CANCELLED}),
    SessionStatus.FINISHED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
    SessionStatus.UNSUPPORTED: frozenset(),
}

_WEEKEND_TRANSITIONS: dict[WeekendStatus, frozenset[WeekendStatus]] = {
    WeekendStatus.OPEN: frozenset({WeekendStatus.DONE, WeekendStatus.CANCELLED}),
    WeekendStatus.DONE: frozenset(),
    WeekendStatus.CANCELLED: frozenset(),
}

_KIND_NAMES: dict[SessionKind, str] = {
    SessionKind.QUALIFYING: "Qualifying",
    SessionKind.RACE: "Race",
    SessionKind.SPRINT_RACE: "Sprint Race",
    SessionKind.SPRINT_QUALI: "Sprint Shootout",
    SessionKind.PRE_SEASON_TEST: "Pre-Season Test",
    SessionKind.FEATURE_RACE: "Feature Race",
}


@dataclass(frozen=True)
class Weekend:
    """One calendar event (a race weekend)."""

    id: int
    series: Series
    name: str
    icon: str
    year: int
    start_date: datetime
    status: WeekendStatus = WeekendStatus.OPEN


@dataclass(frozen=True)
class Session:
    """One timed sub-event of a weekend."""

    id: int
    weekend_id: int
    kind: SessionKind
    status: SessionStatus
    notify: NotificationSetting
    start_date: datetime
    duration: timedelta
    number: int | None = None
    title: str | None = None

    @property
    def end_date(self) -> datetime:
        return self.start_date + self.duration

    @property
    def display_name(self) -> str:
        """Human-readable session name used in every rendered message."""
        if self.title:
            return self.title
        if self.kind == SessionKind.PRACTICE:
            return f"FP{self.number}" if self.number is not None else "Practice"
        if self.kind == SessionKind.CUSTOM:
            return "Unnamed Session"
        return _KIND_NAMES.get(self.kind, "Unknown Session")


@dataclass(frozen=True)
class TrackedMessage:
    """Durable record pairing a posted chat message with the state it reflects.

    ``weekend_id`` is the weekend a Persistent or Calendar message last
    rendered, ``session_id`` the session a Notification announced.
    """

    id: int
    kind: MessageKind
    series: Series
    channel_id: str
    message_id: str
    posted_at: datetime
    expires_at: datetime | None = None
    content_hash: str | None = None
    weekend_id: int | None = None
    session_id: int | None = None


@dataclass(frozen=True)
class Attachment:
    """Binary payload attached to a channel message."""

    filename: str
    data: bytes


def can_transition_session(current: SessionStatus, new: SessionStatus) -> bool:
    return new == current or new in _SESSION_TRANSITIONS[current]


def can_transition_weekend(current: WeekendStatus, new: WeekendStatus) -> bool:
    return new == current or new in _WEEKEND_TRANSITIONS[current]


def advance_session_status(session: Session, new: SessionStatus) -> Session:
    """Return *session* with status *new*.

    Raises:
        InvalidTransitionError: If the move would leave a terminal state or go
            backwards (e.g. ``Delayed -> Open``).
    """
    if not can_transition_session(session.status, new):
        raise InvalidTransitionError(
            f"Session {session.id}: cannot move from {session.status} to {new}"
        )
    return replace(session, status=new)


def advance_weekend_status(weekend: Weekend, new: WeekendStatus) -> Weekend:
    """Return *weekend* with status *new*; see ``advance_session_status``."""
    if not can_transition_weekend(weekend.status, new):
        raise InvalidTransitionError(
            f"Weekend {weekend.id}: cannot move from {weekend.status} to {new}"
        )
    return replace(weekend, status=new)
