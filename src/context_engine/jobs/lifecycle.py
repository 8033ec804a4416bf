"""Job lifecycle state machine.

JobLifecycleManager is the only writer of job state. Each operation is a
compare-and-transition:

1. Read the job (NotFoundError if absent).
2. Validate the requested transition against the job's *current* state
   and VALID_TRANSITIONS (InvalidTransitionError otherwise).
3. Write conditionally on the observed (state, version).

When the conditional write loses a race the manager re-reads and
re-validates, so the loser of two concurrent claims observes PROCESSING
and gets InvalidTransitionError instead of claiming twice. Lost races
are retried a bounded number of times (tenacity) before ConflictError
surfaces.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from src.context_engine.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
)
from src.context_engine.core.monitoring import job_transitions_total
from src.context_engine.jobs.repository import JobRepository
from src.context_engine.jobs.schemas import JobPayload, JobRecord, JobResult, JobState
from src.context_engine.jobs.transitions import VALID_TRANSITIONS, validate_transition

logger = structlog.get_logger(__name__)

# A decision maps the current record to (target state, extra column changes)
Decision = Callable[[JobRecord], tuple[JobState, dict[str, Any]]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _expect(current: JobRecord, target: JobState, sources: set[JobState]) -> None:
    """Reject operations that are only defined from specific source states."""
    if current.state not in sources:
        raise InvalidTransitionError(
            current.state, target, VALID_TRANSITIONS[current.state]
        )


class JobLifecycleManager:
    """Compare-and-transition state machine over a JobRepository.

    Usage:
        manager = JobLifecycleManager(InMemoryJobRepository(), max_retries=3)
        job = await manager.submit(payload)          # QUEUED
        job = await manager.claim(job.id, "worker-1")  # PROCESSING
        job = await manager.complete(job.id, result)   # COMPLETED
    """

    def __init__(
        self,
        repository: JobRepository,
        max_retries: int = 3,
        conflict_retries: int = 3,
    ) -> None:
        self._repository = repository
        self._max_retries = max_retries
        self._conflict_retries = conflict_retries

    @property
    def max_retries(self) -> int:
        return self._max_retries

    # ── Creation & Reads ────────────────────────────────────────────────────

    async def submit(self, payload: JobPayload, enqueue: bool = True) -> JobRecord:
        """Create a job from its payload, QUEUED by default, else PENDING."""
        record = JobRecord(
            id=payload.job_id,
            plan_id=payload.plan_id,
            user_id=payload.user_id,
            type=payload.type,
            params=payload.params,
            state=JobState.QUEUED if enqueue else JobState.PENDING,
        )
        created = await self._repository.create(record)
        logger.info(
            "job.submitted",
            job_id=created.id,
            plan_id=created.plan_id,
            job_type=created.type,
            state=created.state.value,
        )
        return created

    async def get(self, job_id: str) -> JobRecord:
        record = await self._repository.get(job_id)
        if record is None:
            raise NotFoundError("Job", job_id)
        return record

    async def list_by_plan(self, plan_id: str, limit: int = 50) -> list[JobRecord]:
        return await self._repository.list_by_plan(plan_id, limit=limit)

    # ── Transitions ─────────────────────────────────────────────────────────

    async def enqueue(self, job_id: str) -> JobRecord:
        def decide(current: JobRecord) -> tuple[JobState, dict[str, Any]]:
            return JobState.QUEUED, {}

        return await self._transition(job_id, "enqueue", decide)

    async def claim(self, job_id: str, worker_id: str | None = None) -> JobRecord:
        """QUEUED -> PROCESSING. Exactly one concurrent claimer wins."""

        def decide(current: JobRecord) -> tuple[JobState, dict[str, Any]]:
            _expect(current, JobState.PROCESSING, {JobState.QUEUED})
            return JobState.PROCESSING, {
                "worker_id": worker_id,
                "started_at": current.started_at or _utcnow(),
            }

        return await self._transition(job_id, "claim", decide)

    async def resume(self, job_id: str, worker_id: str | None = None) -> JobRecord:
        """RETRYING -> PROCESSING."""

        def decide(current: JobRecord) -> tuple[JobState, dict[str, Any]]:
            _expect(current, JobState.PROCESSING, {JobState.RETRYING})
            changes: dict[str, Any] = {}
            if worker_id is not None:
                changes["worker_id"] = worker_id
            return JobState.PROCESSING, changes

        return await self._transition(job_id, "resume", decide)

    async def complete(
        self, job_id: str, result: JobResult | dict[str, Any] | None = None
    ) -> JobRecord:
        if isinstance(result, JobResult):
            result = result.model_dump(mode="json", by_alias=True)

        def decide(current: JobRecord) -> tuple[JobState, dict[str, Any]]:
            return JobState.COMPLETED, {
                "result": result,
                "error": None,
                "finished_at": _utcnow(),
            }

        return await self._transition(job_id, "complete", decide)

    async def fail(
        self,
        job_id: str,
        error: str,
        result: JobResult | dict[str, Any] | None = None,
    ) -> JobRecord:
        if isinstance(result, JobResult):
            result = result.model_dump(mode="json", by_alias=True)

        def decide(current: JobRecord) -> tuple[JobState, dict[str, Any]]:
            changes: dict[str, Any] = {"error": error, "finished_at": _utcnow()}
            if result is not None:
                changes["result"] = result
            return JobState.FAILED, changes

        return await self._transition(job_id, "fail", decide)

    async def record_retry(
        self,
        job_id: str,
        error: str | None = None,
        result: JobResult | dict[str, Any] | None = None,
    ) -> JobRecord:
        """PROCESSING -> RETRYING while retries remain, else -> FAILED.

        ``result`` is stored only when the retry exhausts the job.
        """
        if isinstance(result, JobResult):
            result = result.model_dump(mode="json", by_alias=True)

        def decide(current: JobRecord) -> tuple[JobState, dict[str, Any]]:
            _expect(current, JobState.RETRYING, {JobState.PROCESSING})
            if current.retry_count < self._max_retries:
                return JobState.RETRYING, {
                    "retry_count": current.retry_count + 1,
                    "error": error,
                }
            changes: dict[str, Any] = {
                "error": error or "retries exhausted",
                "finished_at": _utcnow(),
            }
            if result is not None:
                changes["result"] = result
            return JobState.FAILED, changes

        return await self._transition(job_id, "record_retry", decide)

    async def cancel(self, job_id: str, reason: str | None = None) -> JobRecord:
        def decide(current: JobRecord) -> tuple[JobState, dict[str, Any]]:
            changes: dict[str, Any] = {"finished_at": _utcnow()}
            if reason is not None:
                changes["error"] = reason
            return JobState.CANCELLED, changes

        return await self._transition(job_id, "cancel", decide)

    # ── Internals ───────────────────────────────────────────────────────────

    async def _transition(
        self, job_id: str, operation: str, decide: Decision
    ) -> JobRecord:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._conflict_retries),
            wait=wait_random(0, 0.01),
            retry=retry_if_exception_type(ConflictError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                current = await self.get(job_id)
                try:
                    target, changes = decide(current)
                    validate_transition(current.state, target)
                except InvalidTransitionError as exc:
                    job_transitions_total.labels(
                        from_state=exc.from_state.value,
                        to_state=exc.to_state.value,
                        outcome="invalid",
                    ).inc()
                    logger.warning(
                        "job.transition_rejected",
                        job_id=job_id,
                        operation=operation,
                        from_state=exc.from_state.value,
                        to_state=exc.to_state.value,
                    )
                    raise

                updated = await self._repository.compare_and_set(
                    current, target, changes
                )
                if updated is None:
                    job_transitions_total.labels(
                        from_state=current.state.value,
                        to_state=target.value,
                        outcome="conflict",
                    ).inc()
                    logger.info(
                        "job.transition_conflict",
                        job_id=job_id,
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise ConflictError(
                        f"Job '{job_id}' changed while applying {operation}"
                    )

        job_transitions_total.labels(
            from_state=current.state.value,
            to_state=updated.state.value,
            outcome="applied",
        ).inc()
        logger.info(
            "job.transitioned",
            job_id=job_id,
            operation=operation,
            from_state=current.state.value,
            to_state=updated.state.value,
            version=updated.version,
            retry_count=updated.retry_count,
        )
        return updated
