"""Shared test fixtures for the pitwall test suite.

``FakeRepository`` and ``FakeChannel`` are in-memory stand-ins for the
PostgreSQL repository and the Discord client. Both record every call and can
be told to fail the next N calls of an operation with a given exception.
"""

from __future__ import annotations

import itertools
import shutil
import uuid
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from pitwall.core.reconciler import MessageReconciler, SeriesTarget
from pitwall.errors import MessageNotFoundError, RowNotFoundError
from pitwall.models import (
    Attachment,
    MessageKind,
    NotificationSetting,
    Series,
    Session,
    SessionKind,
    SessionStatus,
    TrackedMessage,
    Weekend,
    WeekendStatus,
)

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from pitwall.db import Database

docker_available = shutil.which("docker") is not None

NOW = datetime(2026, 3, 8, 12, 0, tzinfo=UTC)


class _FailureInjector:
    def __init__(self) -> None:
        self._failures: dict[str, list[Exception]] = defaultdict(list)

    def fail(self, operation: str, exc: Exception, times: int = 1) -> None:
        """Make the next *times* calls of *operation* raise *exc*."""
        self._failures[operation].extend([exc] * times)

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)


class FakeRepository(_FailureInjector):
    """In-memory ``Repository``."""

    def __init__(self) -> None:
        super().__init__()
        self.weekends: dict[int, Weekend] = {}
        self.sessions: dict[int, Session] = {}
        self.messages: dict[int, TrackedMessage] = {}
        self._ids = itertools.count(1)

    # -- builders --------------------------------------------------------

    def add_weekend(
        self,
        name: str = "Example GP",
        *,
        series: Series = Series.F1,
        start_date: datetime = NOW,
        icon: str = ":flag_au:",
        status: WeekendStatus = WeekendStatus.OPEN,
    ) -> Weekend:
        weekend = Weekend(
            id=next(self._ids),
            series=series,
            name=name,
            icon=icon,
            year=start_date.year,
            start_date=start_date,
            status=status,
        )
        self.weekends[weekend.id] = weekend
        return weekend

    def add_session(
        self,
        weekend: Weekend,
        start_date: datetime,
        *,
        kind: SessionKind = SessionKind.RACE,
        status: SessionStatus = SessionStatus.OPEN,
        notify: NotificationSetting = NotificationSetting.NOTIFY,
        duration: timedelta = timedelta(hours=2),
        number: int | None = None,
        title: str | None = None,
    ) -> Session:
        session = Session(
            id=next(self._ids),
            weekend_id=weekend.id,
            kind=kind,
            status=status,
            notify=notify,
            start_date=start_date,
            duration=duration,
            number=number,
            title=title,
        )
        self.sessions[session.id] = session
        return session

    def tracked(self, kind: MessageKind) -> list[TrackedMessage]:
        return sorted(
            (m for m in self.messages.values() if m.kind == kind),
            key=lambda m: (m.posted_at, m.id),
        )

    # -- Repository protocol ---------------------------------------------

    async def get_open_weekends(self, series: Series) -> list[Weekend]:
        self._maybe_fail("get_open_weekends")
        return sorted(
            (
                w
                for w in self.weekends.values()
                if w.series == series and w.status == WeekendStatus.OPEN
            ),
            key=lambda w: (w.start_date, w.id),
        )

    async def get_next_open_weekend(self, series: Series) -> Weekend | None:
        self._maybe_fail("get_next_open_weekend")
        weekends = await self.get_open_weekends(series)
        return weekends[0] if weekends else None

    async def get_sessions(self, weekend_id: int) -> list[Session]:
        self._maybe_fail("get_sessions")
        return sorted(
            (s for s in self.sessions.values() if s.weekend_id == weekend_id),
            key=lambda s: (s.start_date, s.id),
        )

    async def set_weekend_status(self, weekend_id: int, status: WeekendStatus) -> None:
        self._maybe_fail("set_weekend_status")
        if weekend_id not in self.weekends:
            raise RowNotFoundError(f"Weekend {weekend_id} not found")
        self.weekends[weekend_id] = replace(self.weekends[weekend_id], status=status)

    async def set_session_status(self, session_id: int, status: SessionStatus) -> None:
        self._maybe_fail("set_session_status")
        if session_id not in self.sessions:
            raise RowNotFoundError(f"Session {session_id} not found")
        self.sessions[session_id] = replace(self.sessions[session_id], status=status)

    async def get_tracked_messages(self, kind: MessageKind, series: Series) -> list[TrackedMessage]:
        self._maybe_fail("get_tracked_messages")
        return [m for m in self.tracked(kind) if m.series == series]

    async def insert_tracked_message(self, **fields) -> int:
        self._maybe_fail("insert_tracked_message")
        row_id = next(self._ids)
        self.messages[row_id] = TrackedMessage(id=row_id, **fields)
        return row_id

    async def update_tracked_message_hash(
        self, message_row_id: int, content_hash: str | None, *, weekend_id: int | None = None
    ) -> None:
        self._maybe_fail("update_tracked_message_hash")
        if message_row_id not in self.messages:
            raise RowNotFoundError(f"Tracked message {message_row_id} not found")
        current = self.messages[message_row_id]
        self.messages[message_row_id] = replace(
            current,
            content_hash=content_hash,
            weekend_id=weekend_id if weekend_id is not None else current.weekend_id,
        )

    async def set_message_expiry(self, message_row_id: int, when: datetime) -> None:
        self._maybe_fail("set_message_expiry")
        if message_row_id not in self.messages:
            raise RowNotFoundError(f"Tracked message {message_row_id} not found")
        self.messages[message_row_id] = replace(self.messages[message_row_id], expires_at=when)

    async def delete_tracked_message(self, message_row_id: int) -> None:
        self._maybe_fail("delete_tracked_message")
        self.messages.pop(message_row_id, None)

    async def get_expired_tracked_messages(self, now: datetime) -> list[TrackedMessage]:
        self._maybe_fail("get_expired_tracked_messages")
        return sorted(
            (m for m in self.messages.values() if m.expires_at is not None and m.expires_at <= now),
            key=lambda m: (m.expires_at, m.id),
        )

    async def invalidate_tracked_messages(self, weekend_id: int) -> None:
        self._maybe_fail("invalidate_tracked_messages")
        for row_id, message in list(self.messages.items()):
            if message.weekend_id == weekend_id and message.kind in (
                MessageKind.PERSISTENT,
                MessageKind.CALENDAR,
            ):
                self.messages[row_id] = replace(message, content_hash=None)


class FakeChannel(_FailureInjector):
    """In-memory ``NotificationChannel``.

    ``posted`` maps message id to its current text; ``calls`` records every
    successful operation as ``(operation, channel_id, message_id)``.
    """

    def __init__(self) -> None:
        super().__init__()
        self.posted: dict[str, str] = {}
        self.attachments: dict[str, Attachment] = {}
        self.calls: list[tuple[str, str, str]] = []
        self._ids = itertools.count(1000)

    def ops(self, operation: str) -> list[tuple[str, str, str]]:
        return [c for c in self.calls if c[0] == operation]

    def vanish(self, message_id: str) -> None:
        """Simulate a moderator deleting a message behind our back."""
        self.posted.pop(message_id, None)

    async def send(self, channel_id: str, text: str, attachment: Attachment | None = None) -> str:
        self._maybe_fail("send")
        message_id = str(next(self._ids))
        self.posted[message_id] = text
        if attachment is not None:
            self.attachments[message_id] = attachment
        self.calls.append(("send", channel_id, message_id))
        return message_id

    async def edit(self, channel_id: str, message_id: str, text: str) -> None:
        self._maybe_fail("edit")
        if message_id not in self.posted:
            raise MessageNotFoundError(f"Unknown message {message_id}")
        self.posted[message_id] = text
        self.calls.append(("edit", channel_id, message_id))

    async def delete(self, channel_id: str, message_id: str) -> None:
        self._maybe_fail("delete")
        if message_id not in self.posted:
            raise MessageNotFoundError(f"Unknown message {message_id}")
        del self.posted[message_id]
        self.calls.append(("delete", channel_id, message_id))


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def target() -> SeriesTarget:
    return SeriesTarget(series=Series.F1, channel_id="100", role_id="200")


@pytest.fixture
def reconciler(repository: FakeRepository, channel: FakeChannel) -> MessageReconciler:
    return MessageReconciler(repository, channel, sleep=_no_sleep)


# ---------------------------------------------------------------------------
# PostgreSQL (testcontainers)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each ``provisioned_database`` usage creates a fresh randomly named
    database, so rows never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_database(
    postgres_container: PostgresContainer,
) -> Callable[[], AbstractAsyncContextManager[Database]]:
    """Create a fresh, migrated database for a single test usage.

    In production the ingestion process owns the database; here the fixture
    plays that part and creates it on the container's maintenance database.

    Tests should use this as:
        async with provisioned_database() as db:
            ...
    """
    import asyncpg

    from pitwall.db import ConnectionSettings, Database
    from pitwall.migrations import run_migrations

    @asynccontextmanager
    async def _provision() -> AsyncIterator[Database]:
        settings = ConnectionSettings(
            database=f"test_{uuid.uuid4().hex[:12]}",
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
        )
        admin = await asyncpg.connect(**{**settings.pool_kwargs(), "database": "postgres"})
        try:
            await admin.execute(f'CREATE DATABASE "{settings.database}"')
        finally:
            await admin.close()

        await run_migrations(settings.url)
        db = Database(settings)
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _provision
