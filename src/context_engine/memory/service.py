"""Text-level memory operations on top of a vector store.

MemoryService turns raw text into embedding records: it normalises
whitespace, rejects empty text, embeds (optionally L2-normalising the
vector) and upserts under the text's reference. Batches de-duplicate
identical texts before embedding and embed in fixed-size chunks.

Compression keeps a plan's memory from growing without bound: ``light``
mode soft-deletes near-duplicate records older than the preserve window,
so they stay restorable.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timedelta, timezone

import numpy as np
import structlog

from src.context_engine.memory.embeddings import EmbeddingGenerator, l2_normalize
from src.context_engine.memory.schemas import (
    CompressionPolicy,
    CompressionResult,
    EmbeddingRecord,
    MemoryItem,
    ScoredRecord,
)
from src.context_engine.memory.store import VectorStore

logger = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")

COMPRESSION_MODES = ("light",)
COMPRESSION_ACTOR = "memory_compression"


def normalize_text(text: str) -> str:
    """Collapse runs of whitespace and trim."""
    return _WHITESPACE.sub(" ", text or "").strip()


class MemoryService:
    """Plan-scoped memory ingestion and semantic search.

    Usage:
        service = MemoryService(store, embedder)
        record_id = await service.ingest("plan-1", "Hotel near the station",
                                         ref_type="message", ref_id="msg-1")
        hits = await service.search("plan-1", "where are we staying?")
        result = await service.compress("plan-1", mode="light")
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingGenerator,
        normalize_vectors: bool = False,
        batch_chunk: int = 64,
        compression: CompressionPolicy | None = None,
    ) -> None:
        if batch_chunk < 1:
            raise ValueError("batch_chunk must be at least 1")
        self._store = store
        self._embedder = embedder
        self._normalize_vectors = normalize_vectors
        self._batch_chunk = batch_chunk
        self._compression = compression or CompressionPolicy()

    async def ingest(
        self,
        plan_id: str,
        text: str,
        ref_type: str | None = None,
        ref_id: str | None = None,
    ) -> str:
        """Embed ``text`` and upsert it under its reference.

        Raises:
            ValueError: If the text is empty after normalisation.
        """
        content = normalize_text(text)
        if not content:
            raise ValueError("Cannot ingest empty text")

        vectors = await self._embedder.embed([content])
        record_id = await self._store.upsert(
            plan_id, ref_type, ref_id, content, self._prepare(vectors[0])
        )
        logger.info(
            "memory.ingested",
            plan_id=plan_id,
            record_id=record_id,
            ref_type=ref_type,
            ref_id=ref_id,
        )
        return record_id

    async def ingest_batch(self, plan_id: str, items: list[MemoryItem]) -> list[str]:
        """Ingest many texts; returns record ids in input order.

        Identical normalised texts are embedded once. Every item is
        still upserted under its own reference.

        Raises:
            ValueError: If any item is empty after normalisation.
        """
        contents = [normalize_text(item.text) for item in items]
        for index, content in enumerate(contents):
            if not content:
                raise ValueError(f"Cannot ingest empty text (item {index})")

        unique = list(dict.fromkeys(contents))
        vectors: dict[str, list[float]] = {}
        for start in range(0, len(unique), self._batch_chunk):
            chunk = unique[start : start + self._batch_chunk]
            embedded = await self._embedder.embed(chunk)
            for content, vector in zip(chunk, embedded):
                vectors[content] = self._prepare(vector)

        record_ids = []
        for item, content in zip(items, contents):
            record_ids.append(
                await self._store.upsert(
                    plan_id, item.ref_type, item.ref_id, content, vectors[content]
                )
            )

        logger.info(
            "memory.batch_ingested",
            plan_id=plan_id,
            items=len(items),
            unique_texts=len(unique),
        )
        return record_ids

    async def search(
        self,
        plan_id: str,
        query: str,
        top_k: int = 10,
        threshold: float = 0.7,
    ) -> list[ScoredRecord]:
        """Embed ``query`` and return the plan's nearest active records."""
        content = normalize_text(query)
        if not content:
            return []
        vectors = await self._embedder.embed([content])
        return await self._store.query_nearest(
            plan_id, self._prepare(vectors[0]), top_k=top_k, threshold=threshold
        )

    async def forget(self, record_id: str, deleted_by: str) -> EmbeddingRecord:
        return await self._store.soft_delete(record_id, deleted_by)

    async def restore(self, record_id: str) -> EmbeddingRecord:
        return await self._store.restore(record_id)

    async def needs_compression(self, plan_id: str) -> bool:
        """Whether a plan's active memory has reached the archive threshold."""
        active = await self._store.list_by_plan(plan_id, limit=None)
        return len(active) >= self._compression.archive_threshold

    async def compress(
        self,
        plan_id: str,
        mode: str = "light",
        deleted_by: str = COMPRESSION_ACTOR,
        dry_run: bool = False,
    ) -> CompressionResult:
        """Soft-delete near-duplicate records, keeping the newest of each group.

        Only ``light`` mode (duplicate removal) is supported. Records
        inside the preserve-recent window or younger than the minimum age
        are never removed.

        Raises:
            ValueError: If ``mode`` is not supported.
        """
        if mode not in COMPRESSION_MODES:
            raise ValueError(
                f"Unsupported compression mode '{mode}'. "
                f"Supported: {', '.join(COMPRESSION_MODES)}"
            )

        started = time.monotonic()
        policy = self._compression
        active = await self._store.list_by_plan(plan_id, limit=None, with_vectors=True)
        before = len(active)

        if before < policy.min_embeddings:
            reason = (
                f"Embedding count ({before}) is below minimum threshold "
                f"({policy.min_embeddings})"
            )
            logger.warning(
                "memory.compression_skipped", plan_id=plan_id, mode=mode, reason=reason
            )
            return CompressionResult(
                plan_id=plan_id,
                mode=mode,
                before_count=before,
                after_count=before,
                duration_ms=_elapsed_ms(started),
                dry_run=dry_run,
                skipped=True,
                skip_reason=reason,
            )

        duplicates = self._find_duplicates(active)
        if not dry_run:
            for record_id in duplicates:
                await self._store.soft_delete(record_id, deleted_by)

        after = before - len(duplicates)
        result = CompressionResult(
            plan_id=plan_id,
            mode=mode,
            before_count=before,
            after_count=after,
            duplicates_removed=len(duplicates),
            compression_ratio=(before - after) / before if before else 0.0,
            duration_ms=_elapsed_ms(started),
            dry_run=dry_run,
        )
        logger.info(
            "memory.compressed",
            plan_id=plan_id,
            mode=mode,
            dry_run=dry_run,
            before=before,
            after=after,
            duplicates_removed=result.duplicates_removed,
            duration_ms=result.duration_ms,
        )
        return result

    def _find_duplicates(self, records: list[EmbeddingRecord]) -> list[str]:
        """Ids of eligible records that repeat a newer eligible record.

        Groups form greedily from the newest record: each record not yet
        grouped claims every other ungrouped record at or above the
        duplicate threshold, and only the claimed ones are returned.
        """
        policy = self._compression
        ordered = sorted(records, key=lambda r: r.id)
        ordered.sort(key=lambda r: r.created_at, reverse=True)
        cutoff = datetime.now(timezone.utc) - timedelta(days=policy.min_age_days)
        eligible = [
            r
            for r in ordered[policy.preserve_recent_count :]
            if r.created_at <= cutoff and r.vector
        ]
        if len(eligible) < 2:
            return []

        matrix = np.asarray([r.vector for r in eligible], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0.0] = 1.0
        matrix = matrix / norms

        grouped = np.zeros(len(eligible), dtype=bool)
        duplicates: list[str] = []
        for i in range(len(eligible)):
            if grouped[i]:
                continue
            grouped[i] = True
            similar = (matrix @ matrix[i] >= policy.duplicate_threshold) & ~grouped
            members = np.flatnonzero(similar)
            grouped[members] = True
            duplicates.extend(eligible[int(j)].id for j in members)
        return duplicates

    def _prepare(self, vector: list[float]) -> list[float]:
        if self._normalize_vectors:
            return l2_normalize(vector)
        return list(vector)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
