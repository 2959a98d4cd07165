"""Tests for memory.py — cosine similarity, store, search, eviction."""

from datetime import UTC, datetime, timedelta

import pytest

from conftest import FakeEmbedder
from memory import Emotion, MemoryEntry, MemoryStore, cosine_sim

T0 = datetime(2024, 1, 1, tzinfo=UTC)


class TestCosineSim:
    def test_identical(self):
        assert cosine_sim([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_sim([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_opposite(self):
        assert cosine_sim([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_empty(self):
        assert cosine_sim([], [1.0]) == 0.0

    def test_zero_norm(self):
        assert cosine_sim([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_different_lengths_padded(self):
        assert cosine_sim([1.0, 0.0, 0.0], [1.0]) == pytest.approx(1.0)


class TestMemoryEntry:
    def test_summary_omits_embedding(self):
        e = MemoryEntry("x", [0.1], Emotion(0.5, 0.2, ["joy"]), T0, T0)
        s = e.summary()
        assert "embedding" not in s
        assert s["emotion"] == {"valence": 0.5, "arousal": 0.2, "labels": ["joy"]}

    def test_dict_round_trip(self):
        e = MemoryEntry("x", [0.1, 0.2], Emotion(-0.5, 0.9, ["fear"]), T0, T0)
        assert MemoryEntry.from_dict(e.to_dict()) == e


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_store_embeds_content(self, storage):
        emb = FakeEmbedder()
        ms = MemoryStore(storage, emb)
        entry = await ms.store("walked in the park", Emotion(0.6, 0.3, ["calm"]), now=T0)
        assert emb.calls == ["walked in the park"]
        assert entry.created_at == entry.updated_at == T0
        assert len(await ms.load()) == 1

    @pytest.mark.asyncio
    async def test_search_orders_by_similarity(self, storage):
        emb = FakeEmbedder({
            "cats": [1.0, 0.0],
            "dogs": [0.8, 0.6],
            "taxes": [0.0, 1.0],
            "pets": [1.0, 0.1],
        })
        ms = MemoryStore(storage, emb)
        for text in ("cats", "dogs", "taxes"):
            await ms.store(text, Emotion(), now=T0)
        results = await ms.search("pets")
        assert [m.content for m, _ in results] == ["cats", "dogs", "taxes"]
        assert results[0][1] > results[1][1] > results[2][1]

    @pytest.mark.asyncio
    async def test_search_drops_below_threshold(self, storage):
        emb = FakeEmbedder({"good": [1.0, 0.0], "bad": [-1.0, 0.0], "q": [1.0, 0.0]})
        ms = MemoryStore(storage, emb)
        await ms.store("good", Emotion(), now=T0)
        await ms.store("bad", Emotion(), now=T0)
        results = await ms.search("q")
        assert [m.content for m, _ in results] == ["good"]

    @pytest.mark.asyncio
    async def test_search_empty_store_skips_embedding(self, storage):
        emb = FakeEmbedder()
        assert await MemoryStore(storage, emb).search("anything") == []
        assert emb.calls == []

    @pytest.mark.asyncio
    async def test_search_does_not_mutate(self, storage):
        ms = MemoryStore(storage, FakeEmbedder())
        await ms.store("hello there", Emotion(), now=T0)
        before = dict(storage.data)
        await ms.search("hello")
        assert storage.data == before

    @pytest.mark.asyncio
    async def test_capacity_evicts_oldest(self, storage):
        ms = MemoryStore(storage, FakeEmbedder(), capacity=2)
        await ms.store("first", Emotion(), now=T0)
        await ms.store("second", Emotion(), now=T0 + timedelta(minutes=1))
        await ms.store("third", Emotion(), now=T0 + timedelta(minutes=2))
        assert [m.content for m in await ms.load()] == ["second", "third"]

    @pytest.mark.asyncio
    async def test_get_latest(self, storage):
        ms = MemoryStore(storage, FakeEmbedder())
        assert await ms.get_latest() is None
        await ms.store("old", Emotion(), now=T0)
        await ms.store("new", Emotion(), now=T0 + timedelta(hours=1))
        latest = await ms.get_latest()
        assert latest.content == "new"
