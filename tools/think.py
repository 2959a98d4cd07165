"""Reflection tool — records a thought, touches nothing."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ThinkDeeplyArgs(BaseModel):
    thought: str = Field(description="A thought to think deeply about")


def tool_think_deeply(ctx, thought: str) -> dict:
    # The thought lives in the transcript; nothing to do here.
    return {"success": True}


TOOLS = [
    {
        "name": "think_deeply",
        "description": (
            "Think deeply about a topic and provide insights. It will not obtain new "
            "information or change the database, but just append the thought to the "
            "log. Use it when complex reasoning or some cache memory is needed."
        ),
        "input_model": ThinkDeeplyArgs,
        "function": tool_think_deeply,
    },
]
