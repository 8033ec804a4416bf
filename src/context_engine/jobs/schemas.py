"""Pydantic models for job records and the job payload/result contracts.

JobPayload and JobResult cross process boundaries (queue messages, job
results read by clients) and therefore serialise with camelCase keys.
Both accept snake_case field names in Python code.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobPayload(_CamelModel):
    """Queue message that starts a job: jobId, planId, userId, type, params."""

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    plan_id: str
    user_id: str
    type: str
    params: dict[str, Any] = Field(default_factory=dict)


class JobResultMeta(_CamelModel):
    created_at: datetime = Field(default_factory=_utcnow)
    model: str | None = None
    tokens_used: int | None = None


class JobResult(_CamelModel):
    """Outcome stored on a finished job."""

    success: bool
    job_type: str
    data: dict[str, Any] = Field(default_factory=dict)
    summary: str | None = None
    meta: JobResultMeta = Field(default_factory=JobResultMeta)


class JobRecord(BaseModel):
    """Persistent job state owned by the lifecycle manager."""

    id: str
    plan_id: str
    user_id: str
    type: str
    params: dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.PENDING
    retry_count: int = 0
    version: int = 1
    result: dict[str, Any] | None = None
    error: str | None = None
    worker_id: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)
