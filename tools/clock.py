"""Clock tool — current time in a requested time zone."""

from __future__ import annotations

from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from . import failure


def format_datetime(dt: datetime, tz: str = "Asia/Tokyo") -> str:
    """'YYYY/MM/DD HH:MM:SS' in the given zone."""
    return dt.astimezone(ZoneInfo(tz)).strftime("%Y/%m/%d %H:%M:%S")


class GetCurrentTimeArgs(BaseModel):
    timezone: str = Field("UTC", description='Timezone identifier (e.g., "Asia/Tokyo", "UTC")')


def tool_get_current_time(ctx, timezone: str = "UTC") -> str | dict:
    now = datetime.now(UTC)
    if timezone == "UTC":
        return f"Current time (UTC): {now.isoformat().replace('+00:00', 'Z')}"
    try:
        local = now.astimezone(ZoneInfo(timezone))
    except (ZoneInfoNotFoundError, ValueError):
        return failure(f"Unknown timezone: {timezone}")
    return f"Current time ({timezone}): {local.strftime('%Y-%m-%d %H:%M:%S %Z')}"


TOOLS = [
    {
        "name": "get_current_time",
        "description": "Get the current date and time in ISO format",
        "input_model": GetCurrentTimeArgs,
        "function": tool_get_current_time,
    },
]
