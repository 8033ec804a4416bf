"""Job handlers.

ContextBuildHandler builds a context off the request path for jobs of
type ``build_context``. Expected params:
- conversation_id (required)
- query: text used for memory retrieval
- max_tokens: overall ceiling (defaults to the builder setting)
- timeout: seconds before returning a partial context

MemoryCompressionHandler runs MemoryService.compress for jobs of type
``memory_compression``. Optional params:
- mode: compression mode (default ``light``)
- dry_run: report what would be removed without deleting
"""


from __future__ import annotations

import structlog

from src.context_engine.context.builder import ContextBuilder
from src.context_engine.core.errors import UpstreamUnavailableError
from src.context_engine.jobs.executor import RecoverableJobError
from src.context_engine.jobs.schemas import JobPayload, JobResult, JobResultMeta
from src.context_engine.memory.service import COMPRESSION_ACTOR, MemoryService

logger = structlog.get_logger(__name__)

BUILD_CONTEXT_JOB = "build_context"
MEMORY_COMPRESSION_JOB = "memory_compression"


class ContextBuildHandler:
    """Runs ContextBuilder.build_for_conversation for a job payload."""

    job_type = BUILD_CONTEXT_JOB

    def __init__(
        self,
        builder: ContextBuilder,
        default_max_tokens: int = 8000,
        model: str | None = None,
    ) -> None:
        self._builder = builder
        self._default_max_tokens = default_max_tokens
        self._model = model

    async def __call__(self, payload: JobPayload) -> JobResult:
        params = payload.params
        conversation_id = params.get("conversation_id") or params.get("conversationId")
        if not conversation_id:
            raise ValueError("build_context job requires params.conversation_id")

        max_tokens = int(
            params.get("max_tokens") or params.get("maxTokens") or self._default_max_tokens
        )
        timeout = params.get("timeout")

        try:
            context = await self._builder.build_for_conversation(
                plan_id=payload.plan_id,
                conversation_id=conversation_id,
                query_text=params.get("query"),
                max_tokens=max_tokens,
                timeout=float(timeout) if timeout is not None else None,
            )
        except UpstreamUnavailableError as exc:
            raise RecoverableJobError(str(exc)) from exc

        logger.info(
            "context_build_job.built",
            job_id=payload.job_id,
            plan_id=payload.plan_id,
            total_tokens=context.total_tokens,
            partial=context.partial,
        )

        summary = f"Built context with {context.total_tokens} of {max_tokens} tokens"
        if context.partial:
            summary += " (partial)"

        return JobResult(
            success=True,
            job_type=payload.type,
            data={
                "context": context.render(),
                "tokens": {
                    part.name: part.tokens_used for part in context.parts()
                },
                "allocation": context.allocation.model_dump(),
                "partial": context.partial,
                "degraded": context.degraded,
            },
            summary=summary,
            meta=JobResultMeta(model=self._model, tokens_used=context.total_tokens),
        )


class MemoryCompressionHandler:
    """Runs MemoryService.compress for a job payload.

    Removed records are soft-deleted on behalf of the job's user.
    """

    job_type = MEMORY_COMPRESSION_JOB

    def __init__(self, memory: MemoryService) -> None:
        self._memory = memory

    async def __call__(self, payload: JobPayload) -> JobResult:
        params = payload.params
        mode = params.get("mode") or "light"
        dry_run = bool(params.get("dry_run", params.get("dryRun", False)))

        try:
            result = await self._memory.compress(
                payload.plan_id,
                mode=mode,
                deleted_by=payload.user_id or COMPRESSION_ACTOR,
                dry_run=dry_run,
            )
        except UpstreamUnavailableError as exc:
            raise RecoverableJobError(str(exc)) from exc

        logger.info(
            "memory_compression_job.finished",
            job_id=payload.job_id,
            plan_id=payload.plan_id,
            skipped=result.skipped,
            duplicates_removed=result.duplicates_removed,
        )

        if result.skipped:
            summary = f"Skipped: {result.skip_reason}"
        else:
            summary = (
                f"Removed {result.duplicates_removed} duplicate embeddings "
                f"({result.before_count} -> {result.after_count})"
            )
            if dry_run:
                summary += " (dry run)"

        return JobResult(
            success=True,
            job_type=payload.type,
            data=result.model_dump(mode="json"),
            summary=summary,
        )
