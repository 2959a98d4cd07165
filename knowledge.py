"""Knowledge store — capacity-bounded keyword store with decay metadata.

Entries are plain-text facts, rules, preferences and so on. Search is a
whitespace-token substring match. Every successful recall reinforces the
returned entries: access count goes up, last access moves to now and the
scheduled forgetting date is pushed out exponentially.

forgotten_at is informational. Eviction at capacity is least-recently
accessed only; no reaper removes entries past their forgetting date.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

log = logging.getLogger(__name__)

STORAGE_KEY = "knowledge"
MAX_KNOWLEDGE_COUNT = 100
MAX_CONTENT_LENGTH = 1000
SEARCH_RESULT_LIMIT = 5
MAX_RETENTION_DAYS = 730

CATEGORIES = ("fact", "experience", "insight", "pattern", "rule", "preference", "other")

CATEGORY_RETENTION_MULTIPLIERS = {
    "rule": 5,
    "preference": 2,
    "fact": 1,
    "experience": 1,
    "insight": 1,
    "pattern": 1,
    "other": 1,
}


def retention_days(access_count: int, category: str) -> int:
    """2^access_count days scaled by category, capped at MAX_RETENTION_DAYS."""
    multiplier = CATEGORY_RETENTION_MULTIPLIERS.get(category, 1)
    # Past 2^10 the cap always wins; avoid building huge ints.
    if access_count >= 10:
        return MAX_RETENTION_DAYS
    return min(2 ** access_count * multiplier, MAX_RETENTION_DAYS)


def forgotten_at(last_accessed_at: datetime, access_count: int, category: str) -> datetime:
    return last_accessed_at + timedelta(days=retention_days(access_count, category))


def _parse_ts(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


@dataclass
class KnowledgeEntry:
    content: str
    category: str = "other"
    tags: list[str] = field(default_factory=list)
    access_count: int = 0
    last_accessed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    forgotten_at: datetime | None = None

    def __post_init__(self):
        if self.forgotten_at is None:
            self.forgotten_at = forgotten_at(
                self.last_accessed_at, self.access_count, self.category,
            )

    def touch(self, now: datetime) -> None:
        """Reinforce on recall."""
        self.access_count += 1
        self.last_accessed_at = now
        self.forgotten_at = forgotten_at(now, self.access_count, self.category)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["last_accessed_at"] = self.last_accessed_at.isoformat()
        d["forgotten_at"] = self.forgotten_at.isoformat() if self.forgotten_at else None
        return d

    @classmethod
    def from_dict(cls, data: dict) -> KnowledgeEntry:
        raw_forgotten = data.get("forgotten_at")
        return cls(
            content=data["content"],
            category=data.get("category", "other"),
            tags=list(data.get("tags") or []),
            access_count=int(data.get("access_count", 0)),
            last_accessed_at=_parse_ts(data["last_accessed_at"]),
            forgotten_at=_parse_ts(raw_forgotten) if raw_forgotten else None,
        )


def count_matches(query_tokens: list[str], content: str) -> int:
    content_lower = content.lower()
    return sum(1 for token in query_tokens if token in content_lower)


class KnowledgeStore:
    """Knowledge entries persisted as one JSON list in instance storage."""

    def __init__(self, storage: Any, capacity: int = MAX_KNOWLEDGE_COUNT,
                 logger: logging.Logger | None = None):
        self.storage = storage
        self.capacity = capacity
        self.log = logger or log

    async def load(self) -> list[KnowledgeEntry]:
        raw = await self.storage.get(STORAGE_KEY, [])
        return [KnowledgeEntry.from_dict(d) for d in raw]

    async def _save(self, entries: list[KnowledgeEntry]) -> None:
        await self.storage.put(STORAGE_KEY, [e.to_dict() for e in entries])

    async def entries(self) -> list[KnowledgeEntry]:
        """All entries, latest forgetting date first."""
        entries = await self.load()
        entries.sort(key=lambda e: e.forgotten_at, reverse=True)
        return entries

    async def store(self, content: str, category: str = "other",
                    tags: list[str] | None = None,
                    now: datetime | None = None) -> dict:
        if category not in CATEGORY_RETENTION_MULTIPLIERS:
            return {"success": False, "error": f"Unknown category: {category}"}
        now = now or datetime.now(UTC)
        entries = await self.load()

        if any(e.content == content for e in entries):
            return {"success": False, "error": "Knowledge already exists"}

        if len(entries) >= self.capacity:
            lru = min(entries, key=lambda e: e.last_accessed_at)
            entries.remove(lru)
            self.log.info("Knowledge capacity reached. Removed LRU knowledge: %s", lru.content)

        entries.append(KnowledgeEntry(
            content=content,
            category=category,
            tags=list(tags or []),
            access_count=0,
            last_accessed_at=now,
        ))
        await self._save(entries)
        return {"success": True}

    async def search(self, query: str, category: str | None = None,
                     now: datetime | None = None,
                     limit: int = SEARCH_RESULT_LIMIT) -> list[KnowledgeEntry]:
        """Keyword search; reinforces every returned entry."""
        tokens = query.strip().lower().split()
        if not tokens:
            return []
        entries = await self.load()
        if not entries:
            return []

        scored = []
        for entry in entries:
            if category and entry.category != category:
                continue
            matches = count_matches(tokens, entry.content)
            if matches > 0:
                scored.append((matches, entry))

        scored.sort(
            key=lambda item: (item[0], item[1].access_count, item[1].last_accessed_at),
            reverse=True,
        )
        results = [entry for _, entry in scored[:limit]]

        if results:
            now = now or datetime.now(UTC)
            for entry in results:
                entry.touch(now)
            await self._save(entries)
        return results
