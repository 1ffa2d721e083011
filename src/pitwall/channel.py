"""Chat channel client: post, edit and delete messages.

``NotificationChannel`` is the protocol the reconciler depends on;
``DiscordChannel`` implements it against the Discord REST API v10 with a
single shared ``httpx.AsyncClient``.

HTTP failures are translated into the pitwall error taxonomy:

- 404: ``MessageNotFoundError`` (message or channel already gone)
- 429: ``RateLimitedError`` with ``retry_after`` when Discord sends one
- 5xx and transport errors: ``ChannelUnavailableError``
- 401/403: ``ChannelAuthError``
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx

from pitwall.core.metrics import ReconcilerMetrics, get_error_type
from pitwall.errors import (
    ChannelAuthError,
    ChannelUnavailableError,
    MessageNotFoundError,
    PitwallError,
    RateLimitedError,
)
from pitwall.models import Attachment

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"
_USER_AGENT = "DiscordBot (https://github.com/pitwall, 1.0)"
_TRACKED_OPERATIONS = frozenset({"send", "edit", "delete"})


class NotificationChannel(Protocol):
    """Where rendered messages are posted."""

    async def send(self, channel_id: str, text: str, attachment: Attachment | None = None) -> str:
        """Post a message and return its external id."""
        ...

    async def edit(self, channel_id: str, message_id: str, text: str) -> None:
        """Replace the content of a previously posted message.

        Raises:
            MessageNotFoundError: If the message no longer exists.
        """
        ...

    async def delete(self, channel_id: str, message_id: str) -> None:
        """Delete a message.

        Raises:
            MessageNotFoundError: If the message no longer exists.
        """
        ...


def _retry_after(response: httpx.Response) -> float | None:
    """Extract the server-requested backoff from a 429 response."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("retry_after") is not None:
        try:
            return float(body["retry_after"])
        except (TypeError, ValueError):
            pass
    header = response.headers.get("Retry-After")
    if header is None:
        return None
    try:
        return float(header)
    except ValueError:
        return None


def raise_for_discord_status(response: httpx.Response) -> None:
    """Raise the pitwall error matching a non-2xx Discord response."""
    status = response.status_code
    if status < 400:
        return
    detail = f"Discord API {response.request.method} {response.request.url.path} -> {status}"
    if status == 404:
        raise MessageNotFoundError(detail)
    if status == 429:
        raise RateLimitedError(detail, retry_after=_retry_after(response))
    if status in (401, 403):
        raise ChannelAuthError(detail)
    if status >= 500:
        raise ChannelUnavailableError(detail)
    raise PitwallError(f"{detail}: {response.text[:200]}")


class DiscordChannel:
    """``NotificationChannel`` over the Discord REST API.

    Args:
        token: Bot token, sent as ``Authorization: Bot <token>``.
        base_url: API root, overridable for tests.
        client: Pre-built HTTP client. When omitted one is created and owned
            by this instance (closed by ``aclose``).
        metrics: Optional metrics sink for per-call outcome counters.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = DISCORD_API_BASE,
        client: httpx.AsyncClient | None = None,
        metrics: ReconcilerMetrics | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bot {token}", "User-Agent": _USER_AGENT}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._metrics = metrics

    async def _request(
        self, operation: str, method: str, path: str, **kwargs: Any
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            try:
                response = await self._client.request(
                    method, url, headers=self._headers, **kwargs
                )
            except httpx.TransportError as exc:
                raise ChannelUnavailableError(
                    f"Discord API {method} {path} failed: {exc}"
                ) from exc
            raise_for_discord_status(response)
        except PitwallError as exc:
            if self._metrics is not None and operation in _TRACKED_OPERATIONS:
                self._metrics.record_channel_call(operation, get_error_type(exc))
            raise
        if self._metrics is not None and operation in _TRACKED_OPERATIONS:
            self._metrics.record_channel_call(operation, "success")
        return response

    async def send(self, channel_id: str, text: str, attachment: Attachment | None = None) -> str:
        payload: dict[str, Any] = {
            "content": text,
            "allowed_mentions": {"parse": ["roles"]},
        }
        path = f"/channels/{channel_id}/messages"
        if attachment is None:
            response = await self._request("send", "POST", path, json=payload)
        else:
            payload["attachments"] = [{"id": 0, "filename": attachment.filename}]
            response = await self._request(
                "send",
                "POST",
                path,
                data={"payload_json": json.dumps(payload)},
                files={"files[0]": (attachment.filename, attachment.data)},
            )
        message_id = str(response.json()["id"])
        logger.debug("Posted message %s to channel %s", message_id, channel_id)
        return message_id

    async def edit(self, channel_id: str, message_id: str, text: str) -> None:
        await self._request(
            "edit",
            "PATCH",
            f"/channels/{channel_id}/messages/{message_id}",
            json={"content": text},
        )

    async def delete(self, channel_id: str, message_id: str) -> None:
        await self._request("delete", "DELETE", f"/channels/{channel_id}/messages/{message_id}")

    async def verify(self) -> dict[str, Any]:
        """Check the bot token by fetching the bot's own user object."""
        response = await self._request("verify", "GET", "/users/@me")
        data: dict[str, Any] = response.json()
        logger.info("Authenticated to Discord as %s", data.get("username", "<unknown>"))
        return data

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
