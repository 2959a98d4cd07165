"""Situation note — one short free-text context string per identity."""

from __future__ import annotations

from pydantic import BaseModel, Field

from . import failure

STORAGE_KEY = "context"
MAX_CONTEXT_LENGTH = 500
NO_CONTEXT = "no context."


class StoreContextArgs(BaseModel):
    context: str = Field(description="The context to be stored. Keep it to about 200 characters.")


async def tool_store_context(ctx, context: str) -> dict:
    # Advertised as 200 chars; anything up to 500 is accepted.
    if len(context) > MAX_CONTEXT_LENGTH:
        return failure(f"Context exceeds maximum length of {MAX_CONTEXT_LENGTH} characters")
    try:
        await ctx.storage.put(STORAGE_KEY, context)
    except Exception as e:
        ctx.logger.error("Error storing context: %s", e)
        return failure("Failed to store context")
    return {"success": True}


async def tool_recall_context(ctx) -> dict:
    try:
        context = await ctx.storage.get(STORAGE_KEY, "")
    except Exception as e:
        ctx.logger.error("Error recalling context: %s", e)
        return failure("Failed to recall context")
    return {"success": True, "context": context or NO_CONTEXT}


TOOLS = [
    {
        "name": "store_context",
        "description": "Store the current situation or important information in context.",
        "input_model": StoreContextArgs,
        "function": tool_store_context,
    },
    {
        "name": "recall_context",
        "description": "Recall a previously recorded context.",
        "input_model": None,
        "function": tool_recall_context,
    },
]
