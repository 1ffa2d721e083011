"""Plain-text message bodies.

Every function here renders only fields that ``pitwall.core.hashing`` covers,
so an unchanged fingerprint always means an unchanged message body. Discord
renders ``<t:EPOCH:F>`` / ``<t:EPOCH:R>`` tokens client-side in each reader's
timezone, which keeps the text itself static.
"""

from __future__ import annotations

from collections.abc import Iterable

from pitwall.models import TERMINAL_SESSION_STATUSES, Session, SessionStatus, Weekend

CALENDAR_PLACEHOLDER = "*Reserved for Calendar*"
_NAME_WIDTH = 15


def _timestamp(session: Session) -> int:
    return int(session.start_date.timestamp())


def _ordered(sessions: Iterable[Session]) -> list[Session]:
    return sorted(sessions, key=lambda s: (s.start_date, s.display_name))


def _session_line(session: Session) -> str:
    ts = _timestamp(session)
    strike = "~~" if session.status in TERMINAL_SESSION_STATUSES else ""
    line = f"> {strike}**`{session.display_name:>{_NAME_WIDTH}}`** <t:{ts}:F>{strike} (<t:{ts}:R>)"
    if session.status == SessionStatus.DELAYED:
        line += " *delayed*"
    elif session.status == SessionStatus.CANCELLED:
        line += " *cancelled*"
    return line


def render_weekend(weekend: Weekend, sessions: Iterable[Session]) -> str:
    """Render the full session schedule used by the persistent status message."""
    lines = [f"{weekend.icon} **{weekend.name}**"]
    lines.extend(_session_line(s) for s in _ordered(sessions))
    return "\n".join(lines)


def render_calendar_entry(weekend: Weekend, sessions: Iterable[Session]) -> str:
    """Render one compact line-per-session entry of the calendar board."""
    ordered = _ordered(sessions)
    lines = [f"{weekend.icon} **{weekend.name}**"]
    if not ordered:
        lines.append("> *Schedule to be announced*")
    for session in ordered:
        strike = "~~" if session.status in TERMINAL_SESSION_STATUSES else ""
        lines.append(f"> {strike}{session.display_name}: <t:{_timestamp(session)}:f>{strike}")
    return "\n".join(lines)


def render_notification(weekend: Weekend, session: Session, role_id: str | None = None) -> str:
    """Render the one-shot "session starting" ping."""
    text = (
        f"**{weekend.icon} {weekend.name} - {session.display_name} "
        f"starting <t:{_timestamp(session)}:R>**"
    )
    if role_id:
        text += f"\n<@&{role_id}>"
    return text
