"""Pydantic models for plan-scoped embedding memory.

DeletionInfo is a value object embedded by composition in every
soft-deletable record, rather than a shared base class.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field

DEFAULT_REF_TYPE = "manual"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeletionInfo(BaseModel):
    """Soft-delete status and audit metadata."""

    is_deleted: bool = False
    deleted_at: datetime | None = None
    deleted_by: str | None = None

    @classmethod
    def deleted(cls, actor: str) -> DeletionInfo:
        return cls(is_deleted=True, deleted_at=_utcnow(), deleted_by=actor)


class EmbeddingRecord(BaseModel):
    """A content fragment with its embedding vector, scoped to a plan.

    ``vector`` is None when a backend was asked not to load it.
    ``version`` increases on every write and guards optimistic updates.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    plan_id: str
    ref_type: str = DEFAULT_REF_TYPE
    ref_id: str | None = None
    content: str
    vector: list[float] | None = None
    deletion: DeletionInfo = Field(default_factory=DeletionInfo)
    version: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_deleted(self) -> bool:
        return self.deletion.is_deleted

    @property
    def ref_key(self) -> tuple[str, str, str] | None:
        """Uniqueness key, or None when the record has no reference id."""
        if self.ref_id is None:
            return None
        return (self.plan_id, self.ref_type, self.ref_id)


class ScoredRecord(BaseModel):
    """A query hit: the record plus its cosine similarity to the query."""

    record: EmbeddingRecord
    similarity: float


class MemoryItem(BaseModel):
    """One text to ingest in a batch."""

    text: str
    ref_type: str | None = None
    ref_id: str | None = None


def sort_hits(hits: list[ScoredRecord]) -> list[ScoredRecord]:
    """Order hits by similarity desc, then most recent update, then id."""
    hits = sorted(hits, key=lambda h: h.record.id)
    hits.sort(key=lambda h: h.record.updated_at, reverse=True)
    hits.sort(key=lambda h: h.similarity, reverse=True)
    return hits


class CompressionPolicy(BaseModel):
    """Thresholds for near-duplicate removal in a plan's memory.

    Plans with fewer than ``min_embeddings`` active records are skipped.
    The ``preserve_recent_count`` newest records and any record younger
    than ``min_age_days`` are never removed. ``archive_threshold`` is the
    active count at which a plan is due for compression.
    """

    min_embeddings: int = Field(default=50, ge=0)
    archive_threshold: int = Field(default=1000, ge=1)
    preserve_recent_count: int = Field(default=20, ge=0)
    min_age_days: int = Field(default=14, ge=0)
    duplicate_threshold: float = Field(default=0.97, gt=0.0, le=1.0)


class CompressionResult(BaseModel):
    """Outcome of one compression run.

    On a dry run nothing is deleted and ``after_count`` is the count the
    run would have left.
    """

    plan_id: str
    mode: str
    before_count: int
    after_count: int
    duplicates_removed: int = 0
    compression_ratio: float = 0.0
    duration_ms: int = 0
    dry_run: bool = False
    skipped: bool = False
    skip_reason: str | None = None
