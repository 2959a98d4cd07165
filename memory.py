"""Episodic memory — embedding-indexed records with emotional context.

Brute-force cosine similarity over a small, capacity-bounded list kept in
instance storage. Reads never mutate. When full, the least recently
updated memory is evicted.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import openai

log = logging.getLogger(__name__)

STORAGE_KEY = "memories"
MAX_MEMORY_COUNT = 100
MAX_CONTENT_LENGTH = 500
SEARCH_RESULT_LIMIT = 5
SIMILARITY_THRESHOLD = 0.001
EMBEDDING_DIMENSIONS = 1536


def cosine_sim(a: list[float], b: list[float]) -> float:
    """Pure-Python cosine similarity; 0.0 for empty or zero-norm vectors."""
    if not a or not b:
        return 0.0
    dot = 0.0
    na = 0.0
    nb = 0.0
    for x, y in itertools.zip_longest(a, b, fillvalue=0.0):
        dot += x * y
        na += x * x
        nb += y * y
    if na == 0 or nb == 0:
        return 0.0
    return dot / (math.sqrt(na) * math.sqrt(nb))


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class OpenAIEmbedder:
    """Embedding service backed by the OpenAI embeddings endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = EMBEDDING_DIMENSIONS,
        base_url: str = "",
        timeout: float = 15.0,
    ):
        kwargs: dict = {"api_key": api_key or "not-needed", "timeout": timeout}
        if base_url:
            kwargs["base_url"] = base_url
        self.client = openai.OpenAI(**kwargs)
        self.model = model
        self.dimensions = dimensions

    async def embed(self, text: str) -> list[float]:
        response = await asyncio.to_thread(
            self.client.embeddings.create,
            model=self.model,
            input=text,
            dimensions=self.dimensions,
        )
        if response.usage is not None:
            log.info("Embedding usage: %d tokens", response.usage.total_tokens)
        if not response.data:
            raise RuntimeError("Failed to generate embedding")
        return list(response.data[0].embedding)


@dataclass
class Emotion:
    valence: float = 0.0
    arousal: float = 0.0
    labels: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valence": self.valence, "arousal": self.arousal, "labels": list(self.labels)}


@dataclass
class MemoryEntry:
    content: str
    embedding: list[float]
    emotion: Emotion
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "embedding": self.embedding,
            "emotion": self.emotion.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    def summary(self) -> dict:
        """Public view without the embedding."""
        return {
            "content": self.content,
            "emotion": self.emotion.to_dict(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> MemoryEntry:
        emo = data.get("emotion") or {}
        return cls(
            content=data["content"],
            embedding=list(data.get("embedding") or []),
            emotion=Emotion(
                valence=emo.get("valence", 0.0),
                arousal=emo.get("arousal", 0.0),
                labels=list(emo.get("labels") or []),
            ),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


class MemoryStore:
    """Memories persisted as one JSON list in instance storage."""

    def __init__(self, storage: Any, embedder: Embedder,
                 capacity: int = MAX_MEMORY_COUNT,
                 threshold: float = SIMILARITY_THRESHOLD,
                 logger: logging.Logger | None = None):
        self.storage = storage
        self.embedder = embedder
        self.capacity = capacity
        self.threshold = threshold
        self.log = logger or log

    async def load(self) -> list[MemoryEntry]:
        raw = await self.storage.get(STORAGE_KEY, [])
        return [MemoryEntry.from_dict(d) for d in raw]

    async def store(self, content: str, emotion: Emotion,
                    now: datetime | None = None) -> MemoryEntry:
        embedding = await self.embedder.embed(content)
        now = now or datetime.now(UTC)
        memories = await self.load()

        if len(memories) >= self.capacity:
            oldest = min(memories, key=lambda m: m.updated_at)
            memories.remove(oldest)
            self.log.info("Memory capacity reached. Removed oldest memory: %s", oldest.content)

        entry = MemoryEntry(
            content=content,
            embedding=embedding,
            emotion=emotion,
            created_at=now,
            updated_at=now,
        )
        memories.append(entry)
        await self.storage.put(STORAGE_KEY, [m.to_dict() for m in memories])
        return entry

    async def search(self, query: str,
                     limit: int = SEARCH_RESULT_LIMIT) -> list[tuple[MemoryEntry, float]]:
        """Top memories by cosine similarity to the query, with scores."""
        memories = await self.load()
        if not memories:
            return []
        query_embedding = await self.embedder.embed(query)

        scored = []
        for memory in memories:
            score = cosine_sim(query_embedding, memory.embedding)
            if score >= self.threshold:
                scored.append((memory, score))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:limit]

    async def get_latest(self) -> MemoryEntry | None:
        memories = await self.load()
        if not memories:
            return None
        return max(memories, key=lambda m: m.created_at)
