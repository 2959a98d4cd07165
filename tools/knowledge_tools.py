"""Knowledge tools — store and keyword-search the identity's knowledge base."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from knowledge import MAX_CONTENT_LENGTH

from . import failure

Category = Literal["fact", "experience", "insight", "pattern", "rule", "preference", "other"]

_CATEGORY_HELP = (
    '"fact" (objective information, specifications, data), '
    '"experience" (specific events, lessons from situations), '
    '"insight" (analysis, conclusions, understanding gained), '
    '"pattern" (recurring themes, observed trends), '
    '"rule" (guidelines, constraints, policies to follow), '
    '"preference" (user preferences, likes and dislikes), '
    '"other" (general knowledge)'
)


class StoreKnowledgeArgs(BaseModel):
    knowledge: str = Field(
        min_length=1, max_length=MAX_CONTENT_LENGTH,
        description=(
            "The information to preserve. Write clear, self-contained content that "
            f"will be useful later. Maximum {MAX_CONTENT_LENGTH} characters. "
            "Duplicate content is rejected."
        ),
    )
    category: Category | None = Field(
        None, description=f"Knowledge type, defaults to \"other\": {_CATEGORY_HELP}.",
    )
    tags: list[str] = Field(default_factory=list, description="Optional free-form tags")

    @field_validator("knowledge")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("knowledge must not be blank")
        return v


async def tool_store_knowledge(ctx, knowledge: str, category: str | None = None,
                               tags: list[str] | None = None) -> dict:
    try:
        knowledge = knowledge.strip()
        if not knowledge:
            return failure("Knowledge must not be blank")
        return await ctx.knowledge.store(knowledge, category or "other", tags)
    except Exception as e:
        ctx.logger.error("Error storing knowledge: %s", e)
        return failure("Failed to store knowledge")


class SearchKnowledgeArgs(BaseModel):
    query: str = Field(
        min_length=1, max_length=MAX_CONTENT_LENGTH,
        description=(
            "Keywords to search for. Case-insensitive; each whitespace-separated "
            "word is matched as a substring."
        ),
    )
    category: Category | None = Field(None, description=f"Optional filter: {_CATEGORY_HELP}.")


async def tool_search_knowledge(ctx, query: str, category: str | None = None) -> dict:
    try:
        results = await ctx.knowledge.search(query, category)
    except Exception as e:
        ctx.logger.error("Error searching knowledge: %s", e)
        return failure("Failed to search knowledge")
    return {
        "success": True,
        "results": [
            {"content": r.content, "category": r.category, "tags": r.tags}
            for r in results
        ],
    }


TOOLS = [
    {
        "name": "store_knowledge",
        "description": (
            "Preserve valuable information for future reference: key facts, solutions, "
            "user preferences, lessons learned or insights worth remembering across "
            "conversations."
        ),
        "input_model": StoreKnowledgeArgs,
        "function": tool_store_knowledge,
    },
    {
        "name": "search_knowledge",
        "description": (
            "Retrieve previously stored knowledge. Partial, case-insensitive text "
            "matching; returns up to 5 results ranked by match count, access "
            "frequency and recency."
        ),
        "input_model": SearchKnowledgeArgs,
        "function": tool_search_knowledge,
    },
]
