"""Plan-scoped embedding memory.

Provides:
- EmbeddingRecord / DeletionInfo / ScoredRecord: Pydantic record models
- CompressionPolicy / CompressionResult: memory compression settings and outcome
- HnswIndex: numpy HNSW graph for cosine ANN search
- VectorStore: shared store contract
- InMemoryVectorStore: HNSW-backed in-process store
- PgVectorStore: asyncpg + pgvector store
- LiteLLMEmbedder: embedding generator via LiteLLM
- MemoryService: text ingestion, semantic search and compression
"""

from src.context_engine.memory.schemas import (
    CompressionPolicy,
    CompressionResult,
    DeletionInfo,
    EmbeddingRecord,
    MemoryItem,
    ScoredRecord,
)
from src.context_engine.memory.hnsw import HnswIndex
from src.context_engine.memory.store import InMemoryVectorStore, VectorStore
from src.context_engine.memory.pgvector import PgVectorStore
from src.context_engine.memory.embeddings import EmbeddingGenerator, LiteLLMEmbedder
from src.context_engine.memory.service import MemoryService

__all__ = [
    "CompressionPolicy",
    "CompressionResult",
    "DeletionInfo",
    "EmbeddingRecord",
    "MemoryItem",
    "ScoredRecord",
    "HnswIndex",
    "VectorStore",
    "InMemoryVectorStore",
    "PgVectorStore",
    "EmbeddingGenerator",
    "LiteLLMEmbedder",
    "MemoryService",
]
