"""Vector store contract and the in-process HNSW-backed implementation.

The VectorStore protocol is shared by InMemoryVectorStore (this module)
and PgVectorStore (pgvector.py). Both keep one active record per
(plan_id, ref_type, ref_id) reference and exclude soft-deleted records
from every query.

InMemoryVectorStore writes are optimistic: a write reads a snapshot
outside any lock, then commits under a short per-plan critical section
only if the snapshot (record id + version) is still current. A stale
snapshot raises ConflictError, which is retried a bounded number of
times with tenacity before it reaches the caller.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_random,
)

from src.context_engine.core.errors import (
    ConflictError,
    NotFoundError,
    ReferenceConflictError,
)
from src.context_engine.core.monitoring import (
    vector_query_results,
    vector_store_conflicts_total,
)
from src.context_engine.memory.hnsw import HnswIndex
from src.context_engine.memory.schemas import (
    DEFAULT_REF_TYPE,
    DeletionInfo,
    EmbeddingRecord,
    ScoredRecord,
    sort_hits,
)

logger = structlog.get_logger(__name__)

# Replaced vectors tolerated per partition before its index is rebuilt
_MIN_STALE_FOR_COMPACTION = 32


@runtime_checkable
class VectorStore(Protocol):
    """Plan-scoped embedding persistence with ANN similarity queries."""

    async def upsert(
        self,
        plan_id: str,
        ref_type: str | None,
        ref_id: str | None,
        content: str,
        vector: list[float],
    ) -> str: ...

    async def get(self, record_id: str) -> EmbeddingRecord: ...

    async def soft_delete(self, record_id: str, deleted_by: str) -> EmbeddingRecord: ...

    async def restore(self, record_id: str) -> EmbeddingRecord: ...

    async def query_nearest(
        self,
        plan_id: str,
        query_vector: list[float],
        top_k: int = 10,
        threshold: float = 0.7,
    ) -> list[ScoredRecord]: ...

    async def list_by_plan(
        self,
        plan_id: str,
        include_deleted: bool = False,
        limit: int | None = 50,
        with_vectors: bool = False,
    ) -> list[EmbeddingRecord]: ...


class _PlanPartition:
    """Per-plan index plus the mutex guarding its commits and searches."""

    def __init__(self, index: HnswIndex) -> None:
        self.index = index
        self.lock = threading.Lock()
        # record id -> node holding its current vector
        self.nodes: dict[str, int] = {}


class InMemoryVectorStore:
    """HNSW-backed vector store held in process memory.

    Usage:
        store = InMemoryVectorStore(dimension=1536, hnsw_m=16,
                                    hnsw_ef_construction=64)
        record_id = await store.upsert("plan-1", "message", "msg-1",
                                       "Hotel near the station", vector)
        hits = await store.query_nearest("plan-1", query, top_k=10,
                                         threshold=0.7)
    """

    def __init__(
        self,
        dimension: int = 1536,
        hnsw_m: int = 16,
        hnsw_ef_construction: int = 64,
        hnsw_ef_search: int = 40,
        conflict_retries: int = 3,
        seed: int | None = None,
    ) -> None:
        self._dimension = dimension
        self._hnsw_m = hnsw_m
        self._hnsw_ef_construction = hnsw_ef_construction
        self._hnsw_ef_search = hnsw_ef_search
        self._conflict_retries = conflict_retries
        self._seed = seed

        self._records: dict[str, EmbeddingRecord] = {}
        self._active_refs: dict[tuple[str, str, str], str] = {}
        self._partitions: dict[str, _PlanPartition] = {}
        self._partitions_guard = threading.Lock()

    # ── Writes ──────────────────────────────────────────────────────────────

    async def upsert(
        self,
        plan_id: str,
        ref_type: str | None,
        ref_id: str | None,
        content: str,
        vector: list[float],
    ) -> str:
        """Insert or replace the active record for a reference.

        Returns:
            The id of the surviving active record.
        """
        self._check_dimension(vector)
        ref_type = ref_type or DEFAULT_REF_TYPE

        async for attempt in self._retrying("upsert"):
            with attempt:
                key = (plan_id, ref_type, ref_id) if ref_id is not None else None
                snapshot = self._snapshot_ref(key)
                record_id = self._commit_upsert(
                    plan_id, ref_type, ref_id, content, vector, key, snapshot
                )

        logger.info(
            "vector_store.upserted",
            record_id=record_id,
            plan_id=plan_id,
            ref_type=ref_type,
            ref_id=ref_id,
        )
        return record_id

    async def soft_delete(self, record_id: str, deleted_by: str) -> EmbeddingRecord:
        """Mark a record deleted, recording who deleted it and when.

        Raises:
            NotFoundError: If no record has this id.
        """
        async for attempt in self._retrying("soft_delete"):
            with attempt:
                current = await self.get(record_id)
                updated = current.model_copy(
                    update={
                        "deletion": DeletionInfo.deleted(deleted_by),
                        "version": current.version + 1,
                    }
                )
                self._commit_deletion_change(current, updated)

        logger.info(
            "vector_store.soft_deleted", record_id=record_id, deleted_by=deleted_by
        )
        return updated

    async def restore(self, record_id: str) -> EmbeddingRecord:
        """Clear the deletion flag and metadata.

        Raises:
            NotFoundError: If no record has this id.
            ReferenceConflictError: If another active record now holds the
                same reference. Not retried.
        """
        async for attempt in self._retrying("restore"):
            with attempt:
                current = await self.get(record_id)
                updated = current.model_copy(
                    update={
                        "deletion": DeletionInfo(),
                        "version": current.version + 1,
                    }
                )
                self._commit_deletion_change(current, updated)

        logger.info("vector_store.restored", record_id=record_id)
        return updated

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(self, record_id: str) -> EmbeddingRecord:
        record = self._records.get(record_id)
        if record is None:
            raise NotFoundError("Embedding", record_id)
        return record

    async def query_nearest(
        self,
        plan_id: str,
        query_vector: list[float],
        top_k: int = 10,
        threshold: float = 0.7,
    ) -> list[ScoredRecord]:
        """Return active records of a plan most similar to ``query_vector``.

        Results have similarity >= threshold, are ordered by similarity
        descending (ties: most recent update, then id) and number at
        most ``top_k``.
        """
        self._check_dimension(query_vector)
        if top_k <= 0:
            return []

        partition = self._partitions.get(plan_id)
        if partition is None:
            return []

        ef = max(self._hnsw_ef_search, top_k)
        with partition.lock:
            raw_hits = partition.index.search(query_vector, k=ef, ef=ef)
            hits = [
                ScoredRecord(record=self._records[key], similarity=similarity)
                for key, similarity in raw_hits
                if similarity >= threshold and not self._records[key].is_deleted
            ]

        results = sort_hits(hits)[:top_k]
        vector_query_results.observe(len(results))
        logger.debug(
            "vector_store.queried",
            plan_id=plan_id,
            top_k=top_k,
            threshold=threshold,
            results=len(results),
        )
        return results

    async def list_by_plan(
        self,
        plan_id: str,
        include_deleted: bool = False,
        limit: int | None = 50,
        with_vectors: bool = False,
    ) -> list[EmbeddingRecord]:
        """List a plan's records, most recently updated first.

        ``limit=None`` lists every record. Vectors are always held in
        memory, so ``with_vectors`` has no effect here.
        """
        records = [
            r
            for r in self._records.values()
            if r.plan_id == plan_id and (include_deleted or not r.is_deleted)
        ]
        records.sort(key=lambda r: r.id)
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records[:limit]

    # ── Internals ───────────────────────────────────────────────────────────

    def _retrying(self, operation: str) -> AsyncRetrying:
        def _count_conflict(retry_state) -> None:
            vector_store_conflicts_total.labels(operation=operation).inc()
            logger.warning(
                "vector_store.conflict_retry",
                operation=operation,
                attempt=retry_state.attempt_number,
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self._conflict_retries),
            wait=wait_random(0, 0.01),
            retry=(
                retry_if_exception_type(ConflictError)
                & retry_if_not_exception_type(ReferenceConflictError)
            ),
            before_sleep=_count_conflict,
            reraise=True,
        )

    def _check_dimension(self, vector: list[float]) -> None:
        if len(vector) != self._dimension:
            raise ValueError(
                f"Vector dimension mismatch: expected {self._dimension}, "
                f"got {len(vector)}"
            )

    def _partition(self, plan_id: str) -> _PlanPartition:
        partition = self._partitions.get(plan_id)
        if partition is None:
            with self._partitions_guard:
                partition = self._partitions.get(plan_id)
                if partition is None:
                    partition = _PlanPartition(self._new_index())
                    self._partitions[plan_id] = partition
        return partition

    def _new_index(self) -> HnswIndex:
        return HnswIndex(
            self._dimension,
            m=self._hnsw_m,
            ef_construction=self._hnsw_ef_construction,
            seed=self._seed,
        )

    def _snapshot_ref(
        self, key: tuple[str, str, str] | None
    ) -> tuple[str, int] | None:
        if key is None:
            return None
        record_id = self._active_refs.get(key)
        if record_id is None:
            return None
        return record_id, self._records[record_id].version

    def _commit_upsert(
        self,
        plan_id: str,
        ref_type: str,
        ref_id: str | None,
        content: str,
        vector: list[float],
        key: tuple[str, str, str] | None,
        snapshot: tuple[str, int] | None,
    ) -> str:
        partition = self._partition(plan_id)
        with partition.lock:
            if self._snapshot_ref(key) != snapshot:
                raise ConflictError(f"Reference {key} changed during upsert")

            now = datetime.now(timezone.utc)
            if snapshot is None:
                record = EmbeddingRecord(
                    plan_id=plan_id,
                    ref_type=ref_type,
                    ref_id=ref_id,
                    content=content,
                    vector=list(vector),
                    created_at=now,
                    updated_at=now,
                )
                if key is not None:
                    self._active_refs[key] = record.id
            else:
                current = self._records[snapshot[0]]
                record = current.model_copy(
                    update={
                        "content": content,
                        "vector": list(vector),
                        "updated_at": now,
                        "version": current.version + 1,
                    }
                )
                partition.index.delete(partition.nodes[record.id])

            partition.nodes[record.id] = partition.index.add(record.id, vector)
            self._records[record.id] = record
            self._compact_if_stale(plan_id, partition)
            return record.id

    def _compact_if_stale(self, plan_id: str, partition: _PlanPartition) -> None:
        """Rebuild a partition's index once replaced vectors outnumber records.

        Caller holds ``partition.lock``.
        """
        stale = partition.index.node_count - len(partition.nodes)
        if stale < _MIN_STALE_FOR_COMPACTION or stale <= len(partition.nodes):
            return

        index = self._new_index()
        nodes: dict[str, int] = {}
        for record_id in partition.nodes:
            record = self._records[record_id]
            nodes[record_id] = index.add(record_id, record.vector)
            if record.is_deleted:
                index.delete(nodes[record_id])
        partition.index = index
        partition.nodes = nodes
        logger.info(
            "vector_store.index_compacted",
            plan_id=plan_id,
            dropped_nodes=stale,
            nodes=index.node_count,
        )

    def _commit_deletion_change(
        self, current: EmbeddingRecord, updated: EmbeddingRecord
    ) -> None:
        partition = self._partition(current.plan_id)
        with partition.lock:
            stored = self._records.get(current.id)
            if stored is None or stored.version != current.version:
                raise ConflictError(f"Embedding {current.id} changed concurrently")

            key = updated.ref_key
            node = partition.nodes[current.id]
            if updated.is_deleted:
                if key is not None and self._active_refs.get(key) == current.id:
                    del self._active_refs[key]
                partition.index.delete(node)
            else:
                if key is not None:
                    holder = self._active_refs.get(key)
                    if holder is not None and holder != current.id:
                        raise ReferenceConflictError(
                            f"Reference {key} already has active embedding {holder}"
                        )
                    self._active_refs[key] = current.id
                partition.index.restore(node)

            self._records[current.id] = updated
