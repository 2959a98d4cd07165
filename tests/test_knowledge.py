"""Tests for knowledge.py — retention decay, duplicate rejection, LRU eviction, search."""

from datetime import UTC, datetime, timedelta

import pytest

from knowledge import (
    MAX_RETENTION_DAYS,
    KnowledgeEntry,
    KnowledgeStore,
    forgotten_at,
    retention_days,
)

T0 = datetime(2024, 1, 1, tzinfo=UTC)


# ─── Retention ───────────────────────────────────────────────────

class TestRetention:
    @pytest.mark.parametrize("count,category,days", [
        (0, "fact", 1),
        (1, "fact", 2),
        (3, "other", 8),
        (3, "rule", 40),
        (5, "preference", 64),
        (9, "rule", MAX_RETENTION_DAYS),
        (10, "fact", MAX_RETENTION_DAYS),
        (500, "other", MAX_RETENTION_DAYS),
    ])
    def test_days(self, count, category, days):
        assert retention_days(count, category) == days

    def test_unknown_category_uses_multiplier_one(self):
        assert retention_days(2, "mystery") == 4

    def test_forgotten_at(self):
        assert forgotten_at(T0, 2, "rule") == T0 + timedelta(days=20)

    def test_entry_computes_forgotten_at(self):
        e = KnowledgeEntry(content="x", category="fact", last_accessed_at=T0)
        assert e.forgotten_at == T0 + timedelta(days=1)

    def test_touch_reinforces(self):
        e = KnowledgeEntry(content="x", category="fact", last_accessed_at=T0)
        later = T0 + timedelta(hours=5)
        e.touch(later)
        assert e.access_count == 1
        assert e.last_accessed_at == later
        assert e.forgotten_at == later + timedelta(days=2)

    def test_dict_round_trip(self):
        e = KnowledgeEntry(content="x", category="rule", tags=["t"], access_count=2, last_accessed_at=T0)
        assert KnowledgeEntry.from_dict(e.to_dict()) == e


# ─── Store ───────────────────────────────────────────────────────

class TestStore:
    @pytest.mark.asyncio
    async def test_store_new_entry(self, storage):
        ks = KnowledgeStore(storage)
        result = await ks.store("The sky is blue", "fact", ["nature"], now=T0)
        assert result == {"success": True}
        [entry] = await ks.load()
        assert entry.access_count == 0
        assert entry.tags == ["nature"]
        assert entry.forgotten_at == T0 + timedelta(days=1)

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, storage):
        ks = KnowledgeStore(storage)
        await ks.store("same", now=T0)
        before = dict(storage.data)
        result = await ks.store("same", now=T0)
        assert result["success"] is False
        assert result["error"] == "Knowledge already exists"
        assert storage.data == before

    @pytest.mark.asyncio
    async def test_unknown_category_rejected(self, storage):
        result = await KnowledgeStore(storage).store("x", "gossip")
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_capacity_evicts_least_recently_accessed(self, storage):
        ks = KnowledgeStore(storage, capacity=2)
        await ks.store("alpha note", now=T0)
        await ks.store("beta note", now=T0 + timedelta(minutes=1))
        # Recall makes alpha the most recently accessed.
        await ks.search("alpha", now=T0 + timedelta(minutes=2))
        await ks.store("gamma note", now=T0 + timedelta(minutes=3))
        contents = {e.content for e in await ks.load()}
        assert contents == {"alpha note", "gamma note"}

    @pytest.mark.asyncio
    async def test_count_never_exceeds_capacity(self, storage):
        ks = KnowledgeStore(storage, capacity=3)
        for i in range(10):
            await ks.store(f"entry {i}", now=T0 + timedelta(minutes=i))
        assert len(await ks.load()) == 3


# ─── Search ──────────────────────────────────────────────────────

class TestSearch:
    @pytest.mark.asyncio
    async def test_ranked_by_match_count(self, storage):
        ks = KnowledgeStore(storage)
        await ks.store("red car", now=T0)
        await ks.store("Red apple pie", now=T0)
        results = await ks.search("red apple", now=T0)
        assert [r.content for r in results] == ["Red apple pie", "red car"]

    @pytest.mark.asyncio
    async def test_substring_match(self, storage):
        ks = KnowledgeStore(storage)
        await ks.store("programming in python", now=T0)
        results = await ks.search("PROGRAM", now=T0)
        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_recall_reinforces_and_persists(self, storage):
        ks = KnowledgeStore(storage)
        await ks.store("a rule to follow", "rule", now=T0)
        later = T0 + timedelta(days=1)
        await ks.search("rule", now=later)
        [entry] = await ks.load()
        assert entry.access_count == 1
        assert entry.last_accessed_at == later
        assert entry.forgotten_at == later + timedelta(days=10)

    @pytest.mark.asyncio
    async def test_no_match_no_mutation(self, storage):
        ks = KnowledgeStore(storage)
        await ks.store("something", now=T0)
        assert await ks.search("nothing-like-it", now=T0) == []
        [entry] = await ks.load()
        assert entry.access_count == 0

    @pytest.mark.asyncio
    async def test_blank_query(self, storage):
        ks = KnowledgeStore(storage)
        await ks.store("something", now=T0)
        assert await ks.search("   ") == []

    @pytest.mark.asyncio
    async def test_category_filter(self, storage):
        ks = KnowledgeStore(storage)
        await ks.store("likes tea", "preference", now=T0)
        await ks.store("tea is a drink", "fact", now=T0)
        results = await ks.search("tea", category="preference", now=T0)
        assert [r.content for r in results] == ["likes tea"]

    @pytest.mark.asyncio
    async def test_limit(self, storage):
        ks = KnowledgeStore(storage)
        for i in range(8):
            await ks.store(f"note {i}", now=T0)
        assert len(await ks.search("note", now=T0)) == 5

    @pytest.mark.asyncio
    async def test_entries_sorted_by_forgotten_at_desc(self, storage):
        ks = KnowledgeStore(storage)
        await ks.store("fact one", "fact", now=T0)
        await ks.store("rule one", "rule", now=T0)
        entries = await ks.entries()
        assert [e.content for e in entries] == ["rule one", "fact one"]


class TestEvictionOrder:
    @pytest.mark.asyncio
    async def test_evicts_oldest_access_regardless_of_insertion_order(self, storage):
        ks = KnowledgeStore(storage, capacity=3)
        # Inserted newest-access first.
        await ks.store("first", now=T0 + timedelta(minutes=10))
        await ks.store("second", now=T0 + timedelta(minutes=5))
        await ks.store("third", now=T0)
        await ks.store("fourth", now=T0 + timedelta(minutes=20))
        assert {e.content for e in await ks.load()} == {"first", "second", "fourth"}
