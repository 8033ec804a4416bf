"""Job executor: drives a delivered job payload through its lifecycle.

For each payload the executor claims the job, runs the handler
registered for its type and records the outcome:
- handler returns a JobResult -> complete
- handler raises RecoverableJobError -> record_retry, back off
  (1s, 4s, 16s) and resume, until retries are exhausted
- handler raises anything else, or no handler exists -> fail

A lost claim race or a job cancelled mid-flight surfaces as an
InvalidTransitionError from the lifecycle manager; the executor logs it
and returns None.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

import structlog

from src.context_engine.core.errors import InvalidTransitionError
from src.context_engine.jobs.lifecycle import JobLifecycleManager
from src.context_engine.jobs.schemas import JobPayload, JobResult, JobState

logger = structlog.get_logger(__name__)


class RecoverableJobError(Exception):
    """Raised by a handler for failures worth retrying (timeouts, rate limits)."""


class JobHandler(Protocol):
    async def __call__(self, payload: JobPayload) -> JobResult: ...


class JobExecutor:
    """Runs job handlers under lifecycle control.

    Args:
        lifecycle: Lifecycle manager owning job state.
        handlers: Mapping of job type to async handler.
        worker_id: Identifier recorded on claimed jobs.
        sleep: Awaitable sleep used for backoff (injectable for tests).
    """

    RETRY_DELAYS: list[int] = [1, 4, 16]  # Exponential backoff: 1s, 4s, 16s

    def __init__(
        self,
        lifecycle: JobLifecycleManager,
        handlers: dict[str, JobHandler] | None = None,
        worker_id: str = "worker-1",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._lifecycle = lifecycle
        self._handlers: dict[str, JobHandler] = dict(handlers or {})
        self._worker_id = worker_id
        self._sleep = sleep

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    async def execute(self, payload: JobPayload) -> JobResult | None:
        """Process one payload to a terminal state.

        Returns:
            The JobResult stored on the job, or None if this worker did
            not own the job (lost claim race, cancellation).
        """
        try:
            await self._lifecycle.claim(payload.job_id, self._worker_id)
        except InvalidTransitionError as exc:
            logger.info(
                "job_executor.claim_skipped",
                job_id=payload.job_id,
                state=exc.from_state.value,
            )
            return None

        handler = self._handlers.get(payload.type)
        if handler is None:
            result = JobResult(
                success=False,
                job_type=payload.type,
                summary=f"Unsupported job type: {payload.type}",
            )
            return await self._finish_failed(payload, result.summary, result)

        while True:
            try:
                result = await handler(payload)
            except RecoverableJobError as exc:
                failure = JobResult(
                    success=False, job_type=payload.type, summary=str(exc)
                )
                outcome = await self._retry(payload, exc, failure)
                if outcome == JobState.PROCESSING:
                    continue
                if outcome == JobState.FAILED:
                    return failure
                return None
            except Exception as exc:
                logger.error(
                    "job_executor.handler_failed",
                    job_id=payload.job_id,
                    job_type=payload.type,
                    error=str(exc),
                    exc_info=True,
                )
                result = JobResult(
                    success=False, job_type=payload.type, summary=str(exc)
                )
                return await self._finish_failed(payload, str(exc), result)

            try:
                await self._lifecycle.complete(payload.job_id, result)
            except InvalidTransitionError as exc:
                logger.warning(
                    "job_executor.completion_rejected",
                    job_id=payload.job_id,
                    state=exc.from_state.value,
                )
                return None

            logger.info(
                "job_executor.completed",
                job_id=payload.job_id,
                job_type=payload.type,
                success=result.success,
            )
            return result

    async def _retry(
        self, payload: JobPayload, exc: Exception, failure: JobResult
    ) -> JobState | None:
        """Record a retry and resume; ``failure`` is stored if retries run out.

        Returns:
            PROCESSING when resumed, FAILED when retries are exhausted,
            None when the job left this worker's control.
        """
        try:
            job = await self._lifecycle.record_retry(
                payload.job_id, str(exc), result=failure
            )
        except InvalidTransitionError as rejected:
            logger.warning(
                "job_executor.retry_rejected",
                job_id=payload.job_id,
                state=rejected.from_state.value,
            )
            return None

        if job.state == JobState.FAILED:
            logger.error(
                "job_executor.retries_exhausted",
                job_id=payload.job_id,
                retry_count=job.retry_count,
                error=str(exc),
            )
            return JobState.FAILED

        delay_idx = min(job.retry_count - 1, len(self.RETRY_DELAYS) - 1)
        delay = self.RETRY_DELAYS[delay_idx]
        logger.warning(
            "job_executor.retrying",
            job_id=payload.job_id,
            retry_count=job.retry_count,
            delay=delay,
            error=str(exc),
        )
        await self._sleep(delay)

        try:
            await self._lifecycle.resume(payload.job_id, self._worker_id)
        except InvalidTransitionError as rejected:
            logger.info(
                "job_executor.resume_skipped",
                job_id=payload.job_id,
                state=rejected.from_state.value,
            )
            return None
        return JobState.PROCESSING

    async def _finish_failed(
        self, payload: JobPayload, error: str, result: JobResult
    ) -> JobResult | None:
        try:
            await self._lifecycle.fail(payload.job_id, error, result)
        except InvalidTransitionError as exc:
            logger.warning(
                "job_executor.fail_rejected",
                job_id=payload.job_id,
                state=exc.from_state.value,
            )
            return None
        return result
