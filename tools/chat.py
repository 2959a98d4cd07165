"""Chat tools — notifications, reading, sending and reacting on the chat channel.

Transport failures are reported back to the model as failure payloads
and logged; they never abort the loop.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from . import failure
from .clock import format_datetime

MAX_MESSAGE_LENGTH = 2000
UNREAD_DISPLAY_CAP = 99


def _message_view(message, tz: str) -> dict:
    view = {
        "message_id": message.id,
        "user": message.author_name,
        "message": message.content,
        "created_at": format_datetime(message.timestamp, tz),
    }
    if message.reactions:
        view["reactions"] = [{"emoji": r.emoji, "me": r.me} for r in message.reactions]
    return view


def display_unread(count: int) -> int | str:
    return f"{UNREAD_DISPLAY_CAP}+" if count > UNREAD_DISPLAY_CAP else count


async def tool_check_notifications(ctx) -> dict:
    try:
        details = await ctx.transport.get_notification_details(ctx.instance.chat_channel_id)
    except Exception as e:
        ctx.logger.error("Error checking notifications: %s", e)
        return failure("Failed to fetch notifications")

    latest = details.latest
    return {
        "success": True,
        "notifications": {
            "channel": "chat",
            "unread_count": display_unread(details.unread_count),
            "latest_message_preview": _message_view(latest, ctx.timezone) if latest else None,
        },
    }


class ReadChatMessagesArgs(BaseModel):
    limit: int = Field(ge=1, le=100, description="Number of messages to fetch")


async def tool_read_chat_messages(ctx, limit: int) -> dict:
    try:
        messages = await ctx.transport.read_messages(ctx.instance.chat_channel_id, limit)
    except Exception as e:
        ctx.logger.error("Error reading chat messages: %s", e)
        return failure("Failed to read messages")
    return {
        "success": True,
        "messages": [_message_view(m, ctx.timezone) for m in messages],
    }


class SendChatMessageArgs(BaseModel):
    message: str = Field(
        min_length=1, max_length=MAX_MESSAGE_LENGTH,
        description="Message content to send. Maximum 2000 characters.",
    )


async def tool_send_chat_message(ctx, message: str) -> dict:
    try:
        await ctx.transport.send(ctx.instance.chat_channel_id, message)
    except Exception as e:
        ctx.logger.error("Error sending chat message: %s", e)
        return failure("Failed to send message")
    return {"success": True}


class AddReactionArgs(BaseModel):
    message_id: str = Field(description="ID of the message to react to")
    reaction: str = Field(min_length=1, description="Reaction to add (an emoji string)")


async def tool_add_reaction(ctx, message_id: str, reaction: str) -> dict:
    try:
        await ctx.transport.react(ctx.instance.chat_channel_id, message_id, reaction)
    except Exception as e:
        ctx.logger.error("Error adding reaction to chat message: %s", e)
        return failure("Failed to add reaction")
    return {"success": True}


TOOLS = [
    {
        "name": "check_notifications",
        "description": (
            "Check the chat channel for new notifications. Returns the unread message "
            "count and a preview of the latest message. If there are notifications, "
            "read them and respond as needed."
        ),
        "input_model": None,
        "function": tool_check_notifications,
    },
    {
        "name": "read_chat_messages",
        "description": (
            "Read recent messages from the chat channel, oldest first. Fetch enough "
            "messages to understand the conversation; call again with a larger limit "
            "if the context is still unclear."
        ),
        "input_model": ReadChatMessagesArgs,
        "function": tool_read_chat_messages,
    },
    {
        "name": "send_chat_message",
        "description": (
            "Send a message to the chat channel. Your thoughts reach nobody unless you "
            "act on them; sending a chat message is one way to do that."
        ),
        "input_model": SendChatMessageArgs,
        "function": tool_send_chat_message,
    },
    {
        "name": "add_reaction_to_chat_message",
        "description": (
            "Add a reaction to a chat message. Reacting marks every message up to that "
            "one as read. Use it to acknowledge a message you don't need to answer."
        ),
        "input_model": AddReactionArgs,
        "function": tool_add_reaction,
    },
]
