"""Discord transport via the REST API (httpx async).

Only the handful of endpoints the runtime needs: current user, channel
messages, post message, add own reaction. No gateway connection; unread
state is derived from the message page on every check.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from urllib.parse import quote

import httpx

from . import UNREAD_PAGE_SIZE, ChatMessage, NotificationDetails, Reaction, count_unread

log = logging.getLogger(__name__)

_API_BASE = "https://discord.com/api/v10"
MESSAGE_LIMIT = 2000


def truncate_message(content: str, limit: int = MESSAGE_LIMIT, marker: str = "...(truncated)") -> str:
    if len(content) <= limit:
        return content
    return content[:limit - len(marker)] + marker


class DiscordAPIError(RuntimeError):
    def __init__(self, method: str, path: str, status: int, detail: str):
        super().__init__(f"Discord API error ({method} {path}): {status} {detail}")
        self.status = status


def _parse_message(data: dict) -> ChatMessage:
    author = data.get("author") or {}
    reactions = []
    for r in data.get("reactions") or []:
        emoji = r.get("emoji") or {}
        reactions.append(Reaction(
            emoji=emoji.get("name") or "",
            me=bool(r.get("me")),
            count=int(r.get("count", 1)),
        ))
    return ChatMessage(
        id=str(data["id"]),
        author_id=str(author.get("id", "")),
        author_name=author.get("username", ""),
        content=data.get("content", ""),
        timestamp=datetime.fromisoformat(data["timestamp"]),
        reactions=reactions,
    )


class DiscordTransport:
    def __init__(self, token: str, base_url: str = _API_BASE,
                 timeout: float = 30.0, client: httpx.AsyncClient | None = None):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._user_id: str = ""

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0))
        return self._client

    async def _api(self, method: str, path: str, **kwargs) -> dict | list | None:
        """Call a Discord REST endpoint."""
        client = await self._get_client()
        headers = {"Authorization": f"Bot {self.token}"}
        resp = await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)

        if resp.status_code == 204:
            return None
        # Discord returns a JSON error body on 4xx; keep it in the message.
        try:
            data = resp.json()
        except ValueError as exc:
            resp.raise_for_status()
            raise DiscordAPIError(method, path, resp.status_code, "non-JSON response") from exc
        if resp.is_error:
            detail = data.get("message", "") if isinstance(data, dict) else ""
            raise DiscordAPIError(method, path, resp.status_code, detail)
        return data

    async def get_current_user_id(self) -> str:
        if not self._user_id:
            me = await self._api("GET", "/users/@me")
            self._user_id = str(me["id"])
            log.debug("Discord bot identity: %s (%s)", me.get("username"), self._user_id)
        return self._user_id

    async def fetch_messages(self, channel: str, limit: int = 50) -> list[ChatMessage]:
        """Newest-first page of channel messages."""
        data = await self._api("GET", f"/channels/{channel}/messages", params={"limit": limit})
        return [_parse_message(m) for m in data or []]

    async def read_messages(self, channel: str, limit: int) -> list[ChatMessage]:
        messages = await self.fetch_messages(channel, limit)
        messages.reverse()
        return messages

    async def get_notification_details(self, channel: str) -> NotificationDetails:
        user_id, messages = await asyncio.gather(
            self.get_current_user_id(),
            self.fetch_messages(channel, UNREAD_PAGE_SIZE),
        )
        return NotificationDetails(
            unread_count=count_unread(messages, user_id),
            latest=messages[0] if messages else None,
        )

    async def get_unread_count(self, channel: str) -> int:
        details = await self.get_notification_details(channel)
        return details.unread_count

    async def send(self, channel: str, content: str) -> None:
        await self._api("POST", f"/channels/{channel}/messages", json={"content": content})

    async def react(self, channel: str, message_id: str, emoji: str) -> None:
        path = f"/channels/{channel}/messages/{message_id}/reactions/{quote(emoji, safe='')}/@me"
        await self._api("PUT", path)

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# ─── Log notification sink ──────────────────────────────────────

_LEVEL_BADGES = {
    logging.DEBUG: "🔍",
    logging.INFO: "ℹ️",
    logging.WARNING: "⚠️",
    logging.ERROR: "🚨",
    logging.CRITICAL: "🚨",
}


class ChatLogHandler(logging.Handler):
    """Forward log records at or above a level to a chat channel.

    Posting is scheduled on the running event loop; records emitted with no
    loop running are dropped. Delivery failures go to stderr only, so the
    handler can never feed back into itself.
    """

    def __init__(self, transport: DiscordTransport, channel: str, level: int = logging.INFO):
        super().__init__(level)
        self.transport = transport
        self.channel = channel
        self._pending: set[asyncio.Task] = set()

    def format_for_chat(self, record: logging.LogRecord) -> str:
        badge = _LEVEL_BADGES.get(record.levelno, "")
        text = f"{badge} **[{record.levelname}]** {record.getMessage()}"
        if record.exc_info:
            text += f"\n```\n{logging.Formatter().formatException(record.exc_info)}\n```"
        return truncate_message(text, marker="...(truncated)")

    def emit(self, record: logging.LogRecord) -> None:
        # Transport's own logging would loop back here.
        if record.name.startswith(("httpx", "httpcore", __name__)):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._post(self.format_for_chat(record)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post(self, content: str) -> None:
        try:
            await self.transport.send(self.channel, content)
        except Exception as e:
            print(f"Failed to send log to chat: {e}", file=sys.stderr)

    async def drain(self) -> None:
        """Wait for in-flight posts (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
