"""Memory tools — episodic memories with emotional context, searched by meaning."""

from __future__ import annotations

from pydantic import BaseModel, Field

from memory import MAX_CONTENT_LENGTH, Emotion

from . import failure

MAX_QUERY_LENGTH = 500


class EmotionArgs(BaseModel):
    valence: float = Field(ge=-1.0, le=1.0, description="From -1.0 (negative) to 1.0 (positive)")
    arousal: float = Field(ge=0.0, le=1.0, description="From 0.0 (calm) to 1.0 (excited)")
    labels: list[str] = Field(
        default_factory=list,
        description='Emotion labels (e.g., "joy", "sadness", "intellectual-engagement")',
    )


class StoreMemoryArgs(BaseModel):
    content: str = Field(
        min_length=1, max_length=MAX_CONTENT_LENGTH,
        description=f"The full memory with relevant details. Maximum {MAX_CONTENT_LENGTH} characters.",
    )
    emotion: EmotionArgs = Field(description="Emotional context of this memory")


class SearchMemoryArgs(BaseModel):
    query: str = Field(
        min_length=1, max_length=MAX_QUERY_LENGTH,
        description="Search query, compared against stored memories by meaning",
    )


def _entry_view(entry) -> dict:
    return entry.summary()


async def tool_store_memory(ctx, content: str, emotion: EmotionArgs) -> dict:
    if ctx.memory is None:
        return failure("Memory is not enabled")
    try:
        await ctx.memory.store(
            content.strip(),
            Emotion(valence=emotion.valence, arousal=emotion.arousal, labels=list(emotion.labels)),
        )
    except Exception as e:
        ctx.logger.error("Error storing memory: %s", e)
        return failure("Failed to store memory")
    return {"success": True}


async def tool_search_memory(ctx, query: str) -> dict:
    if ctx.memory is None:
        return failure("Memory is not enabled")
    try:
        results = await ctx.memory.search(query.strip())
    except Exception as e:
        ctx.logger.error("Error searching memory: %s", e)
        return failure("Failed to search memory")
    return {
        "success": True,
        "results": [
            {**_entry_view(entry), "similarity": round(score, 4)}
            for entry, score in results
        ],
    }


async def tool_recall_latest_memory(ctx) -> dict:
    if ctx.memory is None:
        return failure("Memory is not enabled")
    try:
        latest = await ctx.memory.get_latest()
    except Exception as e:
        ctx.logger.error("Error recalling latest memory: %s", e)
        return failure("Failed to recall memory")
    return {"success": True, "memory": _entry_view(latest) if latest else None}


TOOLS = [
    {
        "name": "store_memory",
        "description": (
            "Store an episodic memory with emotional context for later retrieval by "
            "meaning. Use it for experiences, conversations or moments that matter."
        ),
        "input_model": StoreMemoryArgs,
        "function": tool_store_memory,
    },
    {
        "name": "search_memory",
        "description": (
            "Search memories by semantic similarity to recall related past "
            "experiences. Returns up to 5 memories with similarity scores."
        ),
        "input_model": SearchMemoryArgs,
        "function": tool_search_memory,
    },
    {
        "name": "recall_latest_memory",
        "description": "Recall the most recently stored memory: what you were last reflecting on.",
        "input_model": None,
        "function": tool_recall_latest_memory,
    },
]
