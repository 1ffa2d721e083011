"""Persistence contract for weekends, sessions and tracked messages.

``Repository`` is the protocol the core depends on; ``PostgresRepository``
implements it on the shared asyncpg pool. Every connection-level failure is
raised as ``RepositoryUnavailableError`` so callers can tell "retry later"
apart from "the row is gone" (``RowNotFoundError``).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Protocol

import asyncpg

from pitwall.errors import RepositoryUnavailableError, RowNotFoundError
from pitwall.models import (
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

logger = logging.getLogger(__name__)

_TRANSIENT_DB_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
)

_WEEKEND_COLUMNS = "id, series, name, icon, year, start_date, status"
_SESSION_COLUMNS = (
    "id, weekend_id, kind, number, title, status, notify, start_date, duration_seconds"
)
_MESSAGE_COLUMNS = (
    "id, kind, series, channel_id, message_id, posted_at, expires_at, "
    "content_hash, weekend_id, session_id"
)


class Repository(Protocol):
    """Read/write access to the calendar and the tracked-message ledger."""

    async def get_open_weekends(self, series: Series) -> list[Weekend]:
        """Return Open weekends of *series*, ordered by start date then id."""
        ...

    async def get_next_open_weekend(self, series: Series) -> Weekend | None:
        """Return the earliest Open weekend of *series*, if any."""
        ...

    async def get_sessions(self, weekend_id: int) -> list[Session]:
        """Return the sessions of a weekend, ordered by start date then id."""
        ...

    async def set_weekend_status(self, weekend_id: int, status: WeekendStatus) -> None:
        """Persist a weekend status.

        Raises:
            RowNotFoundError: If no weekend has that id.
        """
        ...

    async def set_session_status(self, session_id: int, status: SessionStatus) -> None:
        """Persist a session status.

        Raises:
            RowNotFoundError: If no session has that id.
        """
        ...

    async def get_tracked_messages(self, kind: MessageKind, series: Series) -> list[TrackedMessage]:
        """Return tracked messages of one kind for *series*, oldest first."""
        ...

    async def insert_tracked_message(
        self,
        *,
        kind: MessageKind,
        series: Series,
        channel_id: str,
        message_id: str,
        posted_at: datetime,
        expires_at: datetime | None = None,
        content_hash: str | None = None,
        weekend_id: int | None = None,
        session_id: int | None = None,
    ) -> int:
        """Record a freshly posted message and return its row id."""
        ...

    async def update_tracked_message_hash(
        self, message_row_id: int, content_hash: str | None, *, weekend_id: int | None = None
    ) -> None:
        """Store the fingerprint of what the message now shows.

        When *weekend_id* is given it replaces the weekend the row refers to.
        """
        ...

    async def set_message_expiry(self, message_row_id: int, when: datetime) -> None: ...

    async def delete_tracked_message(self, message_row_id: int) -> None:
        """Forget a tracked message. Deleting a missing row is a no-op."""
        ...

    async def get_expired_tracked_messages(self, now: datetime) -> list[TrackedMessage]:
        """Return every tracked message with ``expires_at <= now``."""
        ...

    async def invalidate_tracked_messages(self, weekend_id: int) -> None:
        """Clear the stored fingerprint of Persistent/Calendar rows for a weekend."""
        ...


# ---------------------------------------------------------------------------
# Row decoding
# ---------------------------------------------------------------------------


def weekend_from_row(row: Any) -> Weekend:
    return Weekend(
        id=row["id"],
        series=Series(row["series"]),
        name=row["name"],
        icon=row["icon"],
        year=row["year"],
        start_date=row["start_date"],
        status=WeekendStatus(row["status"]),
    )


def session_from_row(row: Any) -> Session:
    return Session(
        id=row["id"],
        weekend_id=row["weekend_id"],
        kind=SessionKind.parse(row["kind"]),
        status=SessionStatus.parse(row["status"]),
        notify=NotificationSetting.parse(row["notify"]),
        start_date=row["start_date"],
        duration=timedelta(seconds=row["duration_seconds"]),
        number=row["number"],
        title=row["title"],
    )


def tracked_message_from_row(row: Any) -> TrackedMessage:
    return TrackedMessage(
        id=row["id"],
        kind=MessageKind(row["kind"]),
        series=Series(row["series"]),
        channel_id=row["channel_id"],
        message_id=row["message_id"],
        posted_at=row["posted_at"],
        expires_at=row["expires_at"],
        content_hash=row["content_hash"],
        weekend_id=row["weekend_id"],
        session_id=row["session_id"],
    )


def _affected_rows(status: str) -> int:
    """Parse the row count out of an asyncpg command tag like ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------


class PostgresRepository:
    """``Repository`` backed by the ``weekends``/``sessions``/``messages`` tables.

    *pool* is anything exposing asyncpg's ``fetch``/``fetchrow``/``fetchval``/
    ``execute`` coroutines: an ``asyncpg.Pool`` or a ``pitwall.db.Database``.
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def _call(self, method: str, query: str, *args: Any) -> Any:
        try:
            return await getattr(self._pool, method)(query, *args)
        except _TRANSIENT_DB_ERRORS as exc:
            raise RepositoryUnavailableError(f"Database unavailable: {exc}") from exc

    # -- Calendar --------------------------------------------------------

    async def get_open_weekends(self, series: Series) -> list[Weekend]:
        rows = await self._call(
            "fetch",
            f"SELECT {_WEEKEND_COLUMNS} FROM weekends "
            "WHERE series = $1 AND status = $2 ORDER BY start_date, id",
            series.value,
            WeekendStatus.OPEN.value,
        )
        return [weekend_from_row(r) for r in rows]

    async def get_next_open_weekend(self, series: Series) -> Weekend | None:
        row = await self._call(
            "fetchrow",
            f"SELECT {_WEEKEND_COLUMNS} FROM weekends "
            "WHERE series = $1 AND status = $2 ORDER BY start_date, id LIMIT 1",
            series.value,
            WeekendStatus.OPEN.value,
        )
        return weekend_from_row(row) if row is not None else None

    async def get_sessions(self, weekend_id: int) -> list[Session]:
        rows = await self._call(
            "fetch",
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE weekend_id = $1 "
            "ORDER BY start_date, id",
            weekend_id,
        )
        return [session_from_row(r) for r in rows]

    async def set_weekend_status(self, weekend_id: int, status: WeekendStatus) -> None:
        result = await self._call(
            "execute",
            "UPDATE weekends SET status = $2 WHERE id = $1",
            weekend_id,
            status.value,
        )
        if _affected_rows(result) == 0:
            raise RowNotFoundError(f"Weekend {weekend_id} not found")

    async def set_session_status(self, session_id: int, status: SessionStatus) -> None:
        result = await self._call(
            "execute",
            "UPDATE sessions SET status = $2 WHERE id = $1",
            session_id,
            status.value,
        )
        if _affected_rows(result) == 0:
            raise RowNotFoundError(f"Session {session_id} not found")

    # -- Tracked messages ------------------------------------------------

    async def get_tracked_messages(self, kind: MessageKind, series: Series) -> list[TrackedMessage]:
        rows = await self._call(
            "fetch",
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE kind = $1 AND series = $2 ORDER BY posted_at, id",
            kind.value,
            series.value,
        )
        return [tracked_message_from_row(r) for r in rows]

    async def insert_tracked_message(
        self,
        *,
        kind: MessageKind,
        series: Series,
        channel_id: str,
        message_id: str,
        posted_at: datetime,
        expires_at: datetime | None = None,
        content_hash: str | None = None,
        weekend_id: int | None = None,
        session_id: int | None = None,
    ) -> int:
        return await self._call(
            "fetchval",
            """
            INSERT INTO messages (
                kind, series, channel_id, message_id, posted_at,
                expires_at, content_hash, weekend_id, session_id
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING id
            """,
            kind.value,
            series.value,
            channel_id,
            message_id,
            posted_at,
            expires_at,
            content_hash,
            weekend_id,
            session_id,
        )

    async def update_tracked_message_hash(
        self, message_row_id: int, content_hash: str | None, *, weekend_id: int | None = None
    ) -> None:
        result = await self._call(
            "execute",
            """
            UPDATE messages
            SET content_hash = $2, weekend_id = COALESCE($3, weekend_id)
            WHERE id = $1
            """,
            message_row_id,
            content_hash,
            weekend_id,
        )
        if _affected_rows(result) == 0:
            raise RowNotFoundError(f"Tracked message {message_row_id} not found")

    async def set_message_expiry(self, message_row_id: int, when: datetime) -> None:
        result = await self._call(
            "execute",
            "UPDATE messages SET expires_at = $2 WHERE id = $1",
            message_row_id,
            when,
        )
        if _affected_rows(result) == 0:
            raise RowNotFoundError(f"Tracked message {message_row_id} not found")

    async def delete_tracked_message(self, message_row_id: int) -> None:
        await self._call("execute", "DELETE FROM messages WHERE id = $1", message_row_id)

    async def get_expired_tracked_messages(self, now: datetime) -> list[TrackedMessage]:
        rows = await self._call(
            "fetch",
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE expires_at IS NOT NULL AND expires_at <= $1 ORDER BY expires_at, id",
            now,
        )
        return [tracked_message_from_row(r) for r in rows]

    async def invalidate_tracked_messages(self, weekend_id: int) -> None:
        await self._call(
            "execute",
            "UPDATE messages SET content_hash = NULL "
            "WHERE weekend_id = $1 AND kind = ANY($2::text[])",
            weekend_id,
            [MessageKind.PERSISTENT.value, MessageKind.CALENDAR.value],
        )
