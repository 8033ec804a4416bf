"""Job repositories with compare-and-set transitions.

Provides the JobRepository contract and two implementations:
- SqlJobRepository: SQLAlchemy async with the session_factory callable
  pattern. A transition is a single conditional
  UPDATE ... WHERE id AND state AND version RETURNING.
- InMemoryJobRepository: dict-backed, the compare-and-set is a short
  critical section under a repository mutex.

compare_and_set returns None when the stored (state, version) no longer
matches what the caller observed; the lifecycle manager turns that into
a ConflictError and re-reads.
"""

from __future__ import annotations

import threading
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from src.context_engine.core.errors import ConflictError, UpstreamUnavailableError
from src.context_engine.jobs.models import JobModel
from src.context_engine.jobs.schemas import JobRecord, JobState

logger = structlog.get_logger(__name__)

_STORAGE_ERRORS = (OperationalError, InterfaceError, OSError)


@runtime_checkable
class JobRepository(Protocol):
    async def create(self, record: JobRecord) -> JobRecord: ...

    async def get(self, job_id: str) -> JobRecord | None: ...

    async def compare_and_set(
        self, current: JobRecord, target: JobState, changes: dict[str, Any]
    ) -> JobRecord | None: ...

    async def list_by_plan(self, plan_id: str, limit: int = 50) -> list[JobRecord]: ...


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_record(model: JobModel) -> JobRecord:
    """Convert JobModel to JobRecord."""
    return JobRecord(
        id=model.id,
        plan_id=model.plan_id,
        user_id=model.user_id,
        type=model.type,
        params=model.params or {},
        state=JobState(model.state),
        retry_count=model.retry_count or 0,
        version=model.version,
        result=model.result,
        error=model.error,
        worker_id=model.worker_id,
        started_at=model.started_at,
        finished_at=model.finished_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


# ── SQL Repository ──────────────────────────────────────────────────────────


class SqlJobRepository:
    """Job persistence on SQLAlchemy async sessions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def create(self, record: JobRecord) -> JobRecord:
        """Insert a new job row.

        Raises:
            ConflictError: If a job with the same id already exists.
            UpstreamUnavailableError: If the database is unreachable.
        """
        try:
            async for session in self._session_factory():
                model = JobModel(
                    id=record.id,
                    plan_id=record.plan_id,
                    user_id=record.user_id,
                    type=record.type,
                    params=record.params,
                    state=record.state.value,
                    retry_count=record.retry_count,
                    version=record.version,
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return _model_to_record(model)
        except IntegrityError as exc:
            raise ConflictError(f"Job '{record.id}' already exists") from exc
        except _STORAGE_ERRORS as exc:
            raise UpstreamUnavailableError("job_store", str(exc)) from exc

    async def get(self, job_id: str) -> JobRecord | None:
        try:
            async for session in self._session_factory():
                result = await session.execute(
                    select(JobModel).where(JobModel.id == job_id)
                )
                model = result.scalar_one_or_none()
                if model is None:
                    return None
                return _model_to_record(model)
        except _STORAGE_ERRORS as exc:
            raise UpstreamUnavailableError("job_store", str(exc)) from exc

    async def compare_and_set(
        self, current: JobRecord, target: JobState, changes: dict[str, Any]
    ) -> JobRecord | None:
        """Apply a transition only if (state, version) still match ``current``."""
        stmt = (
            update(JobModel)
            .where(
                JobModel.id == current.id,
                JobModel.state == current.state.value,
                JobModel.version == current.version,
            )
            .values(
                state=target.value,
                version=JobModel.version + 1,
                updated_at=datetime.now(timezone.utc),
                **changes,
            )
            .returning(JobModel)
            .execution_options(synchronize_session=False)
        )
        try:
            async for session in self._session_factory():
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                await session.commit()
                if model is None:
                    return None
                return _model_to_record(model)
        except _STORAGE_ERRORS as exc:
            raise UpstreamUnavailableError("job_store", str(exc)) from exc

    async def list_by_plan(self, plan_id: str, limit: int = 50) -> list[JobRecord]:
        try:
            async for session in self._session_factory():
                result = await session.execute(
                    select(JobModel)
                    .where(JobModel.plan_id == plan_id)
                    .order_by(JobModel.created_at.desc(), JobModel.id.desc())
                    .limit(limit)
                )
                return [_model_to_record(m) for m in result.scalars().all()]
        except _STORAGE_ERRORS as exc:
            raise UpstreamUnavailableError("job_store", str(exc)) from exc


# ── In-Memory Repository ────────────────────────────────────────────────────


class InMemoryJobRepository:
    """Dict-backed job repository for tests and single-process use."""

    def __init__(self) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    async def create(self, record: JobRecord) -> JobRecord:
        with self._lock:
            if record.id in self._jobs:
                raise ConflictError(f"Job '{record.id}' already exists")
            self._jobs[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def get(self, job_id: str) -> JobRecord | None:
        record = self._jobs.get(job_id)
        return record.model_copy(deep=True) if record is not None else None

    async def compare_and_set(
        self, current: JobRecord, target: JobState, changes: dict[str, Any]
    ) -> JobRecord | None:
        with self._lock:
            stored = self._jobs.get(current.id)
            if (
                stored is None
                or stored.state != current.state
                or stored.version != current.version
            ):
                return None
            updated = stored.model_copy(
                update={
                    **changes,
                    "state": target,
                    "version": stored.version + 1,
                    "updated_at": datetime.now(timezone.utc),
                },
                deep=True,
            )
            self._jobs[current.id] = updated
        return updated.model_copy(deep=True)

    async def list_by_plan(self, plan_id: str, limit: int = 50) -> list[JobRecord]:
        records = [r for r in self._jobs.values() if r.plan_id == plan_id]
        records.sort(key=lambda r: r.id, reverse=True)
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]
