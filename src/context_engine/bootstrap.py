"""Explicit construction of engine components from settings.

Every collaborator is constructed here and passed down by constructor
injection; nothing is looked up from a global registry.

Usage:
    components = build_components(get_settings(),
                                   message_source=messages,
                                   plan_source=plans)
    await startup(components)
    result = await components.builder.build_for_conversation(
        "plan-1", "conv-1", "where are we staying?")
    await shutdown(components)
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from src.context_engine.config import Settings, get_settings
from src.context_engine.context.budget import DegeneratePolicy, TokenBudgetAllocator
from src.context_engine.context.builder import ContextBuilder
from src.context_engine.context.sources import MessageSource, PlanSource
from src.context_engine.context.summarizer import LiteLLMSummarizer
from src.context_engine.context.tokenizer import TiktokenCounter
from src.context_engine.core.database import close_db, get_session, init_db
from src.context_engine.core.logging import configure_structlog
from src.context_engine.jobs.executor import JobExecutor
from src.context_engine.jobs.handlers import (
    BUILD_CONTEXT_JOB,
    MEMORY_COMPRESSION_JOB,
    ContextBuildHandler,
    MemoryCompressionHandler,
)
from src.context_engine.jobs.lifecycle import JobLifecycleManager
from src.context_engine.jobs.repository import (
    InMemoryJobRepository,
    JobRepository,
    SqlJobRepository,
)
from src.context_engine.memory.embeddings import LiteLLMEmbedder
from src.context_engine.memory.pgvector import PgVectorStore
from src.context_engine.memory.schemas import CompressionPolicy
from src.context_engine.memory.service import MemoryService
from src.context_engine.memory.store import InMemoryVectorStore, VectorStore

logger = structlog.get_logger(__name__)


@dataclass
class EngineComponents:
    settings: Settings
    vector_store: VectorStore
    memory: MemoryService
    builder: ContextBuilder
    job_repository: JobRepository
    lifecycle: JobLifecycleManager
    executor: JobExecutor


def build_vector_store(settings: Settings) -> VectorStore:
    if settings.VECTOR_BACKEND == "memory":
        return InMemoryVectorStore(
            dimension=settings.VECTOR_DIMENSION,
            hnsw_m=settings.VECTOR_HNSW_M,
            hnsw_ef_construction=settings.VECTOR_HNSW_EF_CONSTRUCTION,
            hnsw_ef_search=settings.VECTOR_HNSW_EF_SEARCH,
            conflict_retries=settings.CONFLICT_MAX_RETRIES,
        )
    if settings.VECTOR_BACKEND == "pgvector":
        return PgVectorStore(
            settings.DATABASE_URL,
            dimension=settings.VECTOR_DIMENSION,
            hnsw_m=settings.VECTOR_HNSW_M,
            hnsw_ef_construction=settings.VECTOR_HNSW_EF_CONSTRUCTION,
            hnsw_ef_search=settings.VECTOR_HNSW_EF_SEARCH,
        )
    raise ValueError(f"Unknown VECTOR_BACKEND '{settings.VECTOR_BACKEND}'")


def build_compression_policy(settings: Settings) -> CompressionPolicy:
    return CompressionPolicy(
        min_embeddings=settings.MEMORY_COMPRESSION_MIN_EMBEDDINGS,
        archive_threshold=settings.MEMORY_COMPRESSION_ARCHIVE_THRESHOLD,
        preserve_recent_count=settings.MEMORY_COMPRESSION_PRESERVE_RECENT_COUNT,
        min_age_days=settings.MEMORY_COMPRESSION_MIN_AGE_DAYS,
        duplicate_threshold=settings.MEMORY_COMPRESSION_DUPLICATE_THRESHOLD,
    )


def build_job_repository(settings: Settings) -> JobRepository:
    if settings.JOB_BACKEND == "memory":
        return InMemoryJobRepository()
    if settings.JOB_BACKEND == "sql":
        return SqlJobRepository(get_session)
    raise ValueError(f"Unknown JOB_BACKEND '{settings.JOB_BACKEND}'")


def build_components(
    settings: Settings | None = None,
    message_source: MessageSource | None = None,
    plan_source: PlanSource | None = None,
) -> EngineComponents:
    """Wire every engine component from ``settings``."""
    settings = settings or get_settings()

    vector_store = build_vector_store(settings)
    embedder = LiteLLMEmbedder(
        model=settings.EMBEDDING_MODEL,
        dimension=settings.VECTOR_DIMENSION,
        api_key=settings.OPENAI_API_KEY,
        timeout=settings.LLM_TIMEOUT,
    )
    memory = MemoryService(
        vector_store,
        embedder,
        normalize_vectors=settings.EMBED_NORMALIZE,
        batch_chunk=settings.EMBED_BATCH_CHUNK,
        compression=build_compression_policy(settings),
    )

    builder = ContextBuilder(
        tokenizer=TiktokenCounter(settings.TOKENIZER_ENCODING),
        vector_store=vector_store,
        allocator=TokenBudgetAllocator(
            degenerate_policy=DegeneratePolicy(settings.CONTEXT_BUILDER_DEGENERATE_POLICY)
        ),
        summarizer=LiteLLMSummarizer(
            model=settings.SUMMARIZER_MODEL,
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.LLM_TIMEOUT,
            num_retries=settings.LLM_MAX_RETRIES,
        ),
        embedder=embedder,
        message_source=message_source,
        plan_source=plan_source,
        message_limit=settings.CONTEXT_BUILDER_MESSAGE_LIMIT,
        embedding_top_k=settings.CONTEXT_BUILDER_EMBEDDING_TOP_K,
        embedding_threshold=settings.CONTEXT_BUILDER_EMBEDDING_THRESHOLD,
        job_limit=settings.CONTEXT_BUILDER_JOB_LIMIT,
        long_message_threshold=settings.CONTEXT_BUILDER_LONG_MESSAGE_THRESHOLD,
    )

    job_repository = build_job_repository(settings)
    lifecycle = JobLifecycleManager(
        job_repository,
        max_retries=settings.JOB_MAX_RETRIES,
        conflict_retries=settings.CONFLICT_MAX_RETRIES,
    )
    executor = JobExecutor(lifecycle, worker_id=settings.JOB_WORKER_ID)
    executor.register(
        BUILD_CONTEXT_JOB,
        ContextBuildHandler(
            builder,
            default_max_tokens=settings.CONTEXT_BUILDER_MAX_TOKENS,
            model=settings.SUMMARIZER_MODEL,
        ),
    )
    executor.register(MEMORY_COMPRESSION_JOB, MemoryCompressionHandler(memory))

    return EngineComponents(
        settings=settings,
        vector_store=vector_store,
        memory=memory,
        builder=builder,
        job_repository=job_repository,
        lifecycle=lifecycle,
        executor=executor,
    )


async def startup(components: EngineComponents) -> None:
    """Configure logging and create storage schemas."""
    configure_structlog(components.settings)
    if isinstance(components.job_repository, SqlJobRepository):
        await init_db()
    if isinstance(components.vector_store, PgVectorStore):
        await components.vector_store.setup()
    logger.info(
        "engine.started",
        vector_backend=components.settings.VECTOR_BACKEND,
        job_backend=components.settings.JOB_BACKEND,
    )


async def shutdown(components: EngineComponents) -> None:
    if isinstance(components.vector_store, PgVectorStore):
        await components.vector_store.close()
    if isinstance(components.job_repository, SqlJobRepository):
        await close_db()
    logger.info("engine.stopped")
