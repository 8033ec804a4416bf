"""Token-bounded context assembly.

ContextBuilder composes one ContextResult per request from three
sources, each bounded by its sub-budget from the TokenBudgetAllocator:

1. Conversation messages: the most recent messages that fit, walking
   backward from the newest and stopping at the first that does not
   fit. Output is chronological. Long messages are summarised when a
   summarizer is configured.
2. Retrieved memory: nearest plan-scoped embeddings in similarity order
   until the sub-budget is exhausted.
3. Plan metadata: plan header plus the most relevant plan entries
   (active first, then most recently updated).

Section headers are charged to their part. Every part is additionally
capped by what remains of the overall ceiling, so the total never
exceeds max_tokens.

Memory and plan source failures degrade to an empty part listed in
``degraded``. A tokenizer failure aborts the build. A timeout or a
cancellation returns what was assembled so far with ``partial=True``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from src.context_engine.context.budget import BudgetAllocation, TokenBudgetAllocator
from src.context_engine.context.schemas import (
    PART_HEADERS,
    ContextPart,
    ContextResult,
    ConversationMessage,
    Excerpt,
    PlanMetadata,
)
from src.context_engine.context.sources import MessageSource, PlanSource
from src.context_engine.context.summarizer import Summarizer
from src.context_engine.context.tokenizer import Tokenizer
from src.context_engine.core.errors import UpstreamUnavailableError
from src.context_engine.core.monitoring import (
    context_build_degraded_total,
    context_build_tokens,
)
from src.context_engine.memory.embeddings import EmbeddingGenerator
from src.context_engine.memory.store import VectorStore

logger = structlog.get_logger(__name__)


class _PartAssembler:
    """Accumulates excerpts for one part within a fixed token budget."""

    def __init__(
        self,
        name: str,
        budget: int,
        tokenizer: Tokenizer,
        header: str | None = None,
    ) -> None:
        self._tokenizer = tokenizer
        self.part = ContextPart(name=name, header=header, budget=max(budget, 0))

    @property
    def remaining(self) -> int:
        return self.part.budget - self.part.tokens_used

    def try_add(
        self,
        text: str,
        source_id: str | None = None,
        summarized: bool = False,
        prepend: bool = False,
    ) -> bool:
        """Add ``text`` if it fits; the header is charged with the first excerpt."""
        tokens = self._tokenizer.count(text)
        header_tokens = 0
        if self.part.is_empty and self.part.header:
            header_tokens = self._tokenizer.count(self.part.header)

        if tokens + header_tokens > self.remaining:
            return False

        excerpt = Excerpt(
            text=text, tokens=tokens, source_id=source_id, summarized=summarized
        )
        if prepend:
            self.part.excerpts.insert(0, excerpt)
        else:
            self.part.excerpts.append(excerpt)
        self.part.header_tokens += header_tokens
        self.part.tokens_used += tokens + header_tokens
        return True


class ContextBuilder:
    """Stateless orchestrator producing one bounded ContextResult.

    Usage:
        builder = ContextBuilder(tokenizer, vector_store,
                                 summarizer=summarizer)
        result = await builder.build(
            plan_id="plan-1",
            conversation_messages=messages,
            plan_metadata=plan,
            query_vector=query_vector,
            max_tokens=8000,
        )
        prompt = result.render()
    """

    def __init__(
        self,
        tokenizer: Tokenizer,
        vector_store: VectorStore,
        allocator: TokenBudgetAllocator | None = None,
        summarizer: Summarizer | None = None,
        embedder: EmbeddingGenerator | None = None,
        message_source: MessageSource | None = None,
        plan_source: PlanSource | None = None,
        message_limit: int = 20,
        embedding_top_k: int = 10,
        embedding_threshold: float = 0.7,
        job_limit: int = 5,
        long_message_threshold: int = 500,
    ) -> None:
        self._tokenizer = tokenizer
        self._vector_store = vector_store
        self._allocator = allocator or TokenBudgetAllocator()
        self._summarizer = summarizer
        self._embedder = embedder
        self._message_source = message_source
        self._plan_source = plan_source
        self._message_limit = message_limit
        self._top_k = embedding_top_k
        self._threshold = embedding_threshold
        self._job_limit = job_limit
        self._long_message_threshold = long_message_threshold

    # ── Public API ──────────────────────────────────────────────────────────

    async def build(
        self,
        plan_id: str,
        conversation_messages: list[ConversationMessage],
        plan_metadata: PlanMetadata | None,
        query_vector: list[float] | None,
        max_tokens: int = 8000,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ContextResult:
        """Assemble a context from already-fetched inputs.

        Raises:
            UpstreamUnavailableError: If the tokenizer is unavailable.
        """
        return await self._build(
            plan_id,
            conversation_messages,
            plan_metadata,
            query_vector,
            max_tokens=max_tokens,
            timeout=timeout,
            cancel_event=cancel_event,
            degraded=[],
        )

    async def build_for_conversation(
        self,
        plan_id: str,
        conversation_id: str,
        query_text: str | None = None,
        max_tokens: int = 8000,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ContextResult:
        """Fetch inputs from the configured sources, then build.

        Source failures degrade the matching part instead of failing.
        """
        degraded: list[str] = []

        messages: list[ConversationMessage] = []
        if self._message_source is not None:
            try:
                messages = await self._message_source.recent_messages(
                    conversation_id, self._message_limit
                )
            except UpstreamUnavailableError as exc:
                self._mark_degraded(degraded, "messages", "unavailable", exc)

        plan_metadata: PlanMetadata | None = None
        if self._plan_source is not None:
            try:
                plan_metadata = await self._plan_source.plan_metadata(plan_id)
            except UpstreamUnavailableError as exc:
                self._mark_degraded(degraded, "plan", "unavailable", exc)

        query_vector: list[float] | None = None
        if query_text and self._embedder is not None:
            try:
                query_vector = (await self._embedder.embed([query_text]))[0]
            except UpstreamUnavailableError as exc:
                self._mark_degraded(degraded, "memory", "unavailable", exc)

        return await self._build(
            plan_id,
            messages,
            plan_metadata,
            query_vector,
            max_tokens=max_tokens,
            timeout=timeout,
            cancel_event=cancel_event,
            degraded=degraded,
        )

    # ── Assembly ────────────────────────────────────────────────────────────

    async def _build(
        self,
        plan_id: str,
        conversation_messages: list[ConversationMessage],
        plan_metadata: PlanMetadata | None,
        query_vector: list[float] | None,
        *,
        max_tokens: int,
        timeout: float | None,
        cancel_event: asyncio.Event | None,
        degraded: list[str],
    ) -> ContextResult:
        max_tokens = max(int(max_tokens), 0)
        allocation = self._allocator.allocate(max_tokens)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        assemblers: dict[str, _PartAssembler] = {}
        stages: list[tuple[str, Callable[[_PartAssembler], Awaitable[None]]]] = [
            (
                "messages",
                lambda a: self._assemble_messages(a, conversation_messages),
            ),
            (
                "memory",
                lambda a: self._assemble_memory(a, plan_id, query_vector, degraded),
            ),
            ("plan", lambda a: self._assemble_plan(a, plan_metadata)),
        ]

        partial = False
        for name, stage in stages:
            assembler = self._start_part(name, allocation, max_tokens, assemblers)
            if partial:
                continue

            if cancel_event is not None and cancel_event.is_set():
                partial = True
                self._count_interrupted(name, "cancelled")
                continue

            remaining_time = None
            if deadline is not None:
                remaining_time = deadline - loop.time()
                if remaining_time <= 0:
                    partial = True
                    self._count_interrupted(name, "timeout")
                    continue

            reason = await self._run_stage(stage(assembler), remaining_time, cancel_event)
            if reason is not None:
                partial = True
                self._count_interrupted(name, reason)

        result = ContextResult(
            plan_id=plan_id,
            messages=assemblers["messages"].part,
            memory=assemblers["memory"].part,
            plan=assemblers["plan"].part,
            allocation=allocation,
            max_tokens=max_tokens,
            partial=partial,
            degraded=list(dict.fromkeys(degraded)),
        )

        for part in result.parts():
            context_build_tokens.labels(part=part.name).observe(part.tokens_used)

        logger.info(
            "context_builder.built",
            plan_id=plan_id,
            max_tokens=max_tokens,
            total_tokens=result.total_tokens,
            messages_tokens=result.messages.tokens_used,
            memory_tokens=result.memory.tokens_used,
            plan_tokens=result.plan.tokens_used,
            partial=partial,
            degraded=result.degraded,
        )
        return result

    def _start_part(
        self,
        name: str,
        allocation: BudgetAllocation,
        max_tokens: int,
        assemblers: dict[str, _PartAssembler],
    ) -> _PartAssembler:
        used = sum(a.part.tokens_used for a in assemblers.values())
        budget = min(allocation.for_part(name), max_tokens - used)
        header = None if name == "plan" else PART_HEADERS[name]
        assembler = _PartAssembler(name, budget, self._tokenizer, header=header)
        assemblers[name] = assembler
        return assembler

    @staticmethod
    async def _run_stage(
        stage: Awaitable[None],
        remaining_time: float | None,
        cancel_event: asyncio.Event | None,
    ) -> str | None:
        """Run one stage until it finishes, times out or is cancelled.

        Returns None when the stage completed, otherwise the interruption
        reason. The losing task is cancelled before returning; a stage
        exception (tokenizer failure) propagates.
        """
        stage_task = asyncio.ensure_future(stage)
        waiters = {stage_task}
        cancel_task = None
        if cancel_event is not None:
            cancel_task = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=remaining_time, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            pending = [task for task in waiters if not task.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if stage_task in done:
            stage_task.result()
            return None
        if cancel_task is not None and cancel_task in done:
            return "cancelled"
        return "timeout"

    async def _assemble_messages(
        self,
        assembler: _PartAssembler,
        conversation_messages: list[ConversationMessage],
    ) -> None:
        if self._message_limit <= 0:
            return
        recent = conversation_messages[-self._message_limit :]
        for index in range(len(recent) - 1, -1, -1):
            message = recent[index]
            content, summarized = await self._maybe_summarize(message.content)
            text = f"{message.role}: {content}"
            if not assembler.try_add(text, summarized=summarized, prepend=True):
                break

    async def _maybe_summarize(self, content: str) -> tuple[str, bool]:
        if self._summarizer is None:
            return content, False

        original_tokens = self._tokenizer.count(content)
        if original_tokens <= self._long_message_threshold:
            return content, False

        try:
            summary = await self._summarizer.summarize(
                content, max_tokens=self._long_message_threshold
            )
        except UpstreamUnavailableError as exc:
            logger.warning("context_builder.summarizer_fallback", error=str(exc))
            return content, False

        text = f"[Summarized from {original_tokens} tokens] {summary}"
        if self._tokenizer.count(text) >= original_tokens:
            return content, False
        return text, True

    async def _assemble_memory(
        self,
        assembler: _PartAssembler,
        plan_id: str,
        query_vector: list[float] | None,
        degraded: list[str],
    ) -> None:
        if query_vector is None:
            return

        try:
            hits = await self._vector_store.query_nearest(
                plan_id, query_vector, top_k=self._top_k, threshold=self._threshold
            )
        except UpstreamUnavailableError as exc:
            self._mark_degraded(degraded, "memory", "unavailable", exc)
            return

        for hit in hits:
            record = hit.record
            text = f"[{hit.similarity * 100:.1f}% {record.ref_type}] {record.content}"
            if not assembler.try_add(text, source_id=record.id):
                break

    async def _assemble_plan(
        self, assembler: _PartAssembler, plan_metadata: PlanMetadata | None
    ) -> None:
        if plan_metadata is None:
            return

        if not assembler.try_add(plan_metadata.header_text(), source_id=plan_metadata.plan_id):
            return

        entries = sorted(plan_metadata.entries, key=lambda e: e.id)
        entries.sort(key=lambda e: e.updated_at, reverse=True)
        entries.sort(key=lambda e: not e.active)
        for entry in entries[: self._job_limit]:
            text = f"- {entry.kind} ({entry.state})"
            if entry.summary:
                text += f": {entry.summary}"
            if not assembler.try_add(text, source_id=entry.id):
                break

    # ── Bookkeeping ─────────────────────────────────────────────────────────

    @staticmethod
    def _mark_degraded(
        degraded: list[str], part: str, reason: str, exc: Exception
    ) -> None:
        degraded.append(part)
        context_build_degraded_total.labels(part=part, reason=reason).inc()
        logger.warning(
            "context_builder.part_degraded", part=part, reason=reason, error=str(exc)
        )

    @staticmethod
    def _count_interrupted(part: str, reason: str) -> None:
        context_build_degraded_total.labels(part=part, reason=reason).inc()
        logger.warning("context_builder.interrupted", part=part, reason=reason)
