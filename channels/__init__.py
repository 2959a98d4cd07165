"""Chat transport interface and shared types.

Defines the contract between the runtime and the chat service an
identity talks through. Unread counting lives here because every
transport derives it the same way from a newest-first page.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

UNREAD_PAGE_SIZE = 100


@dataclass
class Reaction:
    emoji: str
    me: bool = False      # applied by this identity
    count: int = 1


@dataclass
class ChatMessage:
    id: str
    author_id: str
    author_name: str
    content: str
    timestamp: datetime
    reactions: list[Reaction] = field(default_factory=list)


@dataclass
class NotificationDetails:
    unread_count: int
    latest: ChatMessage | None


def count_unread(messages: list[ChatMessage], self_id: str) -> int:
    """Unread messages in a newest-first page.

    A message authored by self, or carrying a reaction applied by self, is
    the read boundary: everything newer is unread. Without a boundary the
    whole page counts, so the result saturates at the page size.
    """
    for i, msg in enumerate(messages):
        if msg.author_id == self_id:
            return i
        if any(r.me for r in msg.reactions):
            return i
    return len(messages)


class ChatTransport(Protocol):
    async def get_unread_count(self, channel: str) -> int: ...
    async def get_notification_details(self, channel: str) -> NotificationDetails: ...
    async def read_messages(self, channel: str, limit: int) -> list[ChatMessage]: ...
    async def send(self, channel: str, content: str) -> None: ...
    async def react(self, channel: str, message_id: str, emoji: str) -> None: ...
    async def close(self) -> None: ...


def create_transport(kind: str, token: str) -> ChatTransport:
    """Factory: create a chat transport for one bot token."""
    if kind == "discord":
        if not token:
            raise ValueError("Discord bot token is empty")
        from .discord import DiscordTransport
        return DiscordTransport(token=token)
    raise ValueError(f"Unknown transport type: {kind!r}")
