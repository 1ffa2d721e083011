"""Error taxonomy shared by the repository, the channel client and the core.

Callers branch on the class, never on message text:

- ``NotFoundError``: the referenced row or external message is gone. Always
  recoverable by forgetting the stale reference.
- ``TransientError``: I/O hiccup or rate limit. Retried on the next loop
  iteration.
- everything else is either a programming error (``InvalidTransitionError``)
  or fatal at startup (``ChannelAuthError``, ``StartupError``).
"""

from __future__ import annotations


class PitwallError(Exception):
    """Base class for all pitwall errors."""


class NotFoundError(PitwallError):
    """A referenced row or external message no longer exists."""


class RowNotFoundError(NotFoundError):
    """A repository update matched no row."""


class MessageNotFoundError(NotFoundError):
    """The channel reports the message (or its channel) as unknown."""


class TransientError(PitwallError):
    """A recoverable I/O failure; retry on the next iteration."""


class RepositoryUnavailableError(TransientError):
    """The database could not be reached or the query failed mid-flight."""


class ChannelUnavailableError(TransientError):
    """The chat API returned a 5xx response or the request did not complete."""


class RateLimitedError(ChannelUnavailableError):
    """The chat API asked us to slow down.

    Attributes:
        retry_after: Seconds the API asked us to wait, when provided.
    """

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ChannelAuthError(PitwallError):
    """The chat API rejected our credentials or permissions (401/403)."""


class InvalidTransitionError(PitwallError):
    """A status change would move a record out of a terminal state."""


class StartupError(PitwallError):
    """Fatal failure while establishing connectivity before the loop starts."""
