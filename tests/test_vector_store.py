"""Tests for the in-memory vector store.

Tests cover:
- Idempotent upsert per (plan, ref_type, ref_id) and default ref_type
- Null ref_id always inserting
- Threshold, top_k and ordering of nearest-neighbor queries
- Plan scoping
- Soft delete / restore round trip and restore conflicts (not retried)
- Repeated re-upserts of one reference staying searchable and compacted
- Concurrent upserts leaving one active record
- Optimistic write conflicts being retried
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from prometheus_client import REGISTRY

from src.context_engine.core.errors import (
    ConflictError,
    NotFoundError,
    ReferenceConflictError,
)
from src.context_engine.memory.schemas import EmbeddingRecord, ScoredRecord, sort_hits
from src.context_engine.memory.store import InMemoryVectorStore, VectorStore

SIMILARITIES = [
    0.95, 0.91, 0.87, 0.83, 0.79, 0.75, 0.72, 0.71,
    0.66, 0.62, 0.58, 0.54, 0.50, 0.45, 0.40,
]


class TestUpsert:
    def test_store_satisfies_protocol(self, vector_store):
        assert isinstance(vector_store, VectorStore)

    @pytest.mark.asyncio
    async def test_upsert_same_reference_is_idempotent(self, vector_store, vectors):
        """Re-ingesting a reference replaces content instead of duplicating."""
        first = await vector_store.upsert(
            "plan-1", "message", "msg-1", "Hotel near the station", vectors.basis(1)
        )
        second = await vector_store.upsert(
            "plan-1", "message", "msg-1", "Hotel by the river", vectors.basis(2)
        )

        assert first == second
        records = await vector_store.list_by_plan("plan-1")
        assert len(records) == 1
        assert records[0].content == "Hotel by the river"
        assert records[0].vector == vectors.basis(2)
        assert records[0].version == 2
        assert records[0].updated_at >= records[0].created_at

    @pytest.mark.asyncio
    async def test_replaced_vector_no_longer_matches(self, vector_store, vectors):
        await vector_store.upsert("plan-1", "message", "msg-1", "old", vectors.basis(1))
        await vector_store.upsert("plan-1", "message", "msg-1", "new", vectors.basis(2))

        hits = await vector_store.query_nearest("plan-1", vectors.basis(1), threshold=0.5)
        assert hits == []
        hits = await vector_store.query_nearest("plan-1", vectors.basis(2), threshold=0.5)
        assert [h.record.content for h in hits] == ["new"]

    @pytest.mark.asyncio
    async def test_missing_ref_type_defaults_to_manual(self, vector_store, vectors):
        record_id = await vector_store.upsert("plan-1", None, "note-1", "x", vectors.basis(1))
        record = await vector_store.get(record_id)
        assert record.ref_type == "manual"

        again = await vector_store.upsert("plan-1", "manual", "note-1", "y", vectors.basis(1))
        assert again == record_id

    @pytest.mark.asyncio
    async def test_null_ref_id_always_inserts(self, vector_store, vectors):
        a = await vector_store.upsert("plan-1", "manual", None, "same", vectors.basis(1))
        b = await vector_store.upsert("plan-1", "manual", None, "same", vectors.basis(1))
        assert a != b
        assert len(await vector_store.list_by_plan("plan-1")) == 2

    @pytest.mark.asyncio
    async def test_dimension_mismatch_rejected(self, vector_store):
        with pytest.raises(ValueError, match="dimension mismatch"):
            await vector_store.upsert("plan-1", "message", "m", "x", [1.0, 0.0])

    @pytest.mark.asyncio
    async def test_concurrent_upserts_leave_one_active_record(self, vector_store, vectors):
        ids = await asyncio.gather(
            *[
                vector_store.upsert(
                    "plan-1", "message", "msg-1", f"version {i}", vectors.basis(1 + i % 3)
                )
                for i in range(10)
            ]
        )
        assert len(set(ids)) == 1
        assert len(await vector_store.list_by_plan("plan-1")) == 1

    @pytest.mark.asyncio
    async def test_repeated_upserts_stay_searchable(self, vector_store, vectors):
        """Replaced vectors never crowd the live one out of query results."""
        await vector_store.upsert("plan-1", "message", "other", "other", vectors.basis(3))
        for i in range(60):
            record_id = await vector_store.upsert(
                "plan-1", "message", "msg-1", f"revision {i}", vectors.basis(1)
            )

        hits = await vector_store.query_nearest("plan-1", vectors.basis(1), top_k=5, threshold=0.5)

        assert [h.record.id for h in hits] == [record_id]
        assert hits[0].record.content == "revision 59"

    @pytest.mark.asyncio
    async def test_replaced_vectors_are_compacted(self, vector_store, vectors):
        for i in range(60):
            await vector_store.upsert("plan-1", "message", "msg-1", f"v{i}", vectors.basis(1))

        index = vector_store._partitions["plan-1"].index
        assert index.node_count < 33
        assert len(index) == 1

    @pytest.mark.asyncio
    async def test_compaction_keeps_deleted_records_restorable(self, vector_store, vectors):
        gone = await vector_store.upsert("plan-1", "message", "gone", "gone", vectors.basis(2))
        await vector_store.soft_delete(gone, "user-7")
        for i in range(40):
            await vector_store.upsert("plan-1", "message", "msg-1", f"v{i}", vectors.basis(1))

        assert await vector_store.query_nearest("plan-1", vectors.basis(2), threshold=0.5) == []
        await vector_store.restore(gone)
        hits = await vector_store.query_nearest("plan-1", vectors.basis(2), threshold=0.5)
        assert [h.record.id for h in hits] == [gone]


class TestQueryNearest:
    @pytest.mark.asyncio
    async def test_threshold_and_top_k(self, vector_store, vectors):
        """15 records from 0.95 down to 0.40: exactly the 8 above 0.7 come back."""
        for axis, similarity in enumerate(SIMILARITIES, start=1):
            await vector_store.upsert(
                "plan-1",
                "message",
                f"msg-{axis}",
                f"similarity {similarity}",
                vectors.with_similarity(similarity, axis),
            )

        hits = await vector_store.query_nearest(
            "plan-1", vectors.basis(0), top_k=10, threshold=0.7
        )

        assert len(hits) == 8
        assert [round(h.similarity, 2) for h in hits] == SIMILARITIES[:8]
        assert all(h.similarity >= 0.7 for h in hits)

    @pytest.mark.asyncio
    async def test_top_k_truncates(self, vector_store, vectors):
        for axis, similarity in enumerate(SIMILARITIES, start=1):
            await vector_store.upsert(
                "plan-1", "message", f"msg-{axis}", "x",
                vectors.with_similarity(similarity, axis),
            )
        hits = await vector_store.query_nearest("plan-1", vectors.basis(0), top_k=3, threshold=0.0)
        assert [round(h.similarity, 2) for h in hits] == [0.95, 0.91, 0.87]

    @pytest.mark.asyncio
    async def test_queries_are_plan_scoped(self, vector_store, vectors):
        await vector_store.upsert("plan-1", "message", "m1", "mine", vectors.basis(1))
        await vector_store.upsert("plan-2", "message", "m1", "theirs", vectors.basis(1))

        hits = await vector_store.query_nearest("plan-1", vectors.basis(1), threshold=0.5)
        assert [h.record.content for h in hits] == ["mine"]
        assert await vector_store.query_nearest("plan-3", vectors.basis(1)) == []

    @pytest.mark.asyncio
    async def test_zero_top_k_returns_nothing(self, vector_store, vectors):
        await vector_store.upsert("plan-1", "message", "m1", "x", vectors.basis(1))
        assert await vector_store.query_nearest("plan-1", vectors.basis(1), top_k=0) == []


class TestSortHits:
    def test_ties_break_on_recency_then_id(self):
        base = EmbeddingRecord(plan_id="p", content="x")
        older = base.model_copy(update={"id": "b", "updated_at": base.updated_at - timedelta(minutes=1)})
        newer_b = base.model_copy(update={"id": "b2"})
        newer_a = base.model_copy(update={"id": "a2"})
        hits = [
            ScoredRecord(record=older, similarity=0.8),
            ScoredRecord(record=newer_b, similarity=0.8),
            ScoredRecord(record=newer_a, similarity=0.8),
            ScoredRecord(record=base.model_copy(update={"id": "z"}), similarity=0.9),
        ]
        assert [h.record.id for h in sort_hits(hits)] == ["z", "a2", "b2", "b"]


class TestSoftDelete:
    @pytest.mark.asyncio
    async def test_soft_delete_hides_record(self, vector_store, vectors):
        record_id = await vector_store.upsert("plan-1", "message", "m1", "x", vectors.basis(1))
        deleted = await vector_store.soft_delete(record_id, "user-7")

        assert deleted.is_deleted is True
        assert deleted.deletion.deleted_by == "user-7"
        assert deleted.deletion.deleted_at is not None
        assert await vector_store.query_nearest("plan-1", vectors.basis(1)) == []
        assert await vector_store.list_by_plan("plan-1") == []
        assert len(await vector_store.list_by_plan("plan-1", include_deleted=True)) == 1

    @pytest.mark.asyncio
    async def test_restore_round_trip(self, vector_store, vectors):
        record_id = await vector_store.upsert("plan-1", "message", "m1", "x", vectors.basis(1))
        await vector_store.soft_delete(record_id, "user-7")
        restored = await vector_store.restore(record_id)

        assert restored.is_deleted is False
        assert restored.deletion.deleted_at is None
        assert restored.deletion.deleted_by is None
        hits = await vector_store.query_nearest("plan-1", vectors.basis(1))
        assert [h.record.id for h in hits] == [record_id]

    @pytest.mark.asyncio
    async def test_upsert_after_delete_creates_new_record(self, vector_store, vectors):
        """A deleted record doesn't count for uniqueness."""
        old_id = await vector_store.upsert("plan-1", "message", "m1", "x", vectors.basis(1))
        await vector_store.soft_delete(old_id, "user-7")
        new_id = await vector_store.upsert("plan-1", "message", "m1", "y", vectors.basis(1))
        assert new_id != old_id

    @pytest.mark.asyncio
    async def test_restore_conflicts_with_newer_active_record(self, vector_store, vectors):
        old_id = await vector_store.upsert("plan-1", "message", "m1", "x", vectors.basis(1))
        await vector_store.soft_delete(old_id, "user-7")
        await vector_store.upsert("plan-1", "message", "m1", "y", vectors.basis(1))

        with pytest.raises(ConflictError):
            await vector_store.restore(old_id)
        assert (await vector_store.get(old_id)).is_deleted is True

    @pytest.mark.asyncio
    async def test_restore_conflict_is_not_retried(self, vector_store, vectors):
        """A newer active holder can't go away by re-reading, so no retry is counted."""
        old_id = await vector_store.upsert("plan-1", "message", "m1", "x", vectors.basis(1))
        await vector_store.soft_delete(old_id, "user-7")
        await vector_store.upsert("plan-1", "message", "m1", "y", vectors.basis(1))
        labels = {"operation": "restore"}
        before = REGISTRY.get_sample_value("vector_store_conflicts_total", labels) or 0.0

        with pytest.raises(ReferenceConflictError):
            await vector_store.restore(old_id)

        after = REGISTRY.get_sample_value("vector_store_conflicts_total", labels) or 0.0
        assert after == before
        assert (await vector_store.get(old_id)).version == 2

    @pytest.mark.asyncio
    async def test_missing_record_raises_not_found(self, vector_store):
        with pytest.raises(NotFoundError):
            await vector_store.soft_delete("nope", "user-7")
        with pytest.raises(NotFoundError):
            await vector_store.restore("nope")


class TestOptimisticWrites:
    @pytest.mark.asyncio
    async def test_stale_snapshot_is_retried(self, vectors):
        """A commit against a stale snapshot raises ConflictError and is retried."""
        store = InMemoryVectorStore(dimension=vectors.dimension, conflict_retries=3)
        await store.upsert("plan-1", "message", "m1", "x", vectors.basis(1))

        original = store._snapshot_ref
        calls = {"n": 0}

        def stale_once(key):
            calls["n"] += 1
            if calls["n"] == 1:
                return None  # pretend the reference did not exist yet
            return original(key)

        store._snapshot_ref = stale_once
        record_id = await store.upsert("plan-1", "message", "m1", "y", vectors.basis(1))

        assert calls["n"] >= 3
        assert (await store.get(record_id)).content == "y"
        assert len(await store.list_by_plan("plan-1")) == 1

    @pytest.mark.asyncio
    async def test_conflict_surfaces_after_bounded_retries(self, vectors):
        store = InMemoryVectorStore(dimension=vectors.dimension, conflict_retries=2)
        await store.upsert("plan-1", "message", "m1", "x", vectors.basis(1))
        original = store._snapshot_ref
        calls = {"n": 0}

        def always_stale(key):
            calls["n"] += 1
            return None if calls["n"] % 2 else original(key)

        store._snapshot_ref = always_stale

        with pytest.raises(ConflictError):
            await store.upsert("plan-1", "message", "m1", "y", vectors.basis(1))
