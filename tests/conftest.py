"""Shared test fixtures.

Provides:
- A whitespace tokenizer (one token per word) so budgets are easy to reason about
- Vector helpers for building unit vectors with a known cosine similarity
- In-memory vector store and job repository instances
"""

from __future__ import annotations

import math

import pytest

from src.context_engine.core.errors import UpstreamUnavailableError
from src.context_engine.jobs.lifecycle import JobLifecycleManager
from src.context_engine.jobs.repository import InMemoryJobRepository
from src.context_engine.memory.store import InMemoryVectorStore

TEST_DIMENSION = 16


class WordTokenizer:
    """Counts whitespace-separated words."""

    def count(self, text: str) -> int:
        return len(text.split())


class BrokenTokenizer:
    def count(self, text: str) -> int:
        raise UpstreamUnavailableError("tokenizer", "encoding not loaded")


def basis(index: int, dimension: int = TEST_DIMENSION) -> list[float]:
    vector = [0.0] * dimension
    vector[index] = 1.0
    return vector


def with_similarity(
    similarity: float, axis: int, dimension: int = TEST_DIMENSION
) -> list[float]:
    """Unit vector whose cosine similarity to basis(0) is ``similarity``.

    ``axis`` (>= 1) picks the orthogonal component, so vectors built on
    different axes only share their basis(0) component.
    """
    vector = [0.0] * dimension
    vector[0] = similarity
    vector[axis] = math.sqrt(max(0.0, 1.0 - similarity**2))
    return vector


@pytest.fixture
def tokenizer() -> WordTokenizer:
    return WordTokenizer()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore(dimension=TEST_DIMENSION, seed=7)


@pytest.fixture
def job_repository() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture
def lifecycle(job_repository) -> JobLifecycleManager:
    return JobLifecycleManager(job_repository, max_retries=3)


class VectorFactory:
    dimension = TEST_DIMENSION
    basis = staticmethod(basis)
    with_similarity = staticmethod(with_similarity)


@pytest.fixture
def vectors() -> VectorFactory:
    return VectorFactory()


@pytest.fixture
def broken_tokenizer() -> BrokenTokenizer:
    return BrokenTokenizer()
