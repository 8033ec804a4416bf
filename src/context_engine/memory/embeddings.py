"""Embedding generation via LiteLLM.

EmbeddingGenerator is the collaborator contract used by the memory
service and the context builder. LiteLLMEmbedder is the provider-agnostic
implementation; transient provider failures are retried with tenacity
(3 attempts, exponential backoff 1-10s) and then surface as
UpstreamUnavailableError.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import litellm
import numpy as np
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.context_engine.core.errors import UpstreamUnavailableError

logger = structlog.get_logger(__name__)

_TRANSIENT_ERRORS = (
    litellm.RateLimitError,
    litellm.APIConnectionError,
    litellm.Timeout,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)

_embedding_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(_TRANSIENT_ERRORS),
    reraise=True,
)


@runtime_checkable
class EmbeddingGenerator(Protocol):
    """Turns texts into fixed-dimension vectors, one per input, in order."""

    async def embed(self, texts: list[str]) -> list[list[float]]: ...


def l2_normalize(vector: list[float]) -> list[float]:
    """Scale a vector to unit length (zero vectors are returned unchanged)."""
    array = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(array)
    if norm == 0.0:
        return [float(x) for x in array]
    return [float(x) for x in array / norm]


class LiteLLMEmbedder:
    """Embedding generator backed by ``litellm.aembedding``.

    Usage:
        embedder = LiteLLMEmbedder(model="text-embedding-3-small",
                                   dimension=1536)
        vectors = await embedder.embed(["Hotel near the station"])
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        api_key: str | None = None,
        timeout: float = 30,
    ) -> None:
        self._model = model
        self._dimension = dimension
        self._api_key = api_key or None
        self._timeout = timeout

    @_embedding_retry
    async def _call(self, texts: list[str]):
        return await litellm.aembedding(
            model=self._model,
            input=texts,
            api_key=self._api_key,
            timeout=self._timeout,
        )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed ``texts`` in one provider call.

        Raises:
            UpstreamUnavailableError: If the provider stays unavailable
                after retries.
        """
        if not texts:
            return []

        try:
            response = await self._call(texts)
        except _TRANSIENT_ERRORS as exc:
            logger.error(
                "embeddings.provider_unavailable",
                model=self._model,
                batch_size=len(texts),
                error=str(exc),
            )
            raise UpstreamUnavailableError("embedding_generator", str(exc)) from exc

        vectors = [item["embedding"] for item in response.data]
        for vector in vectors:
            if len(vector) != self._dimension:
                logger.warning(
                    "embeddings.dimension_mismatch",
                    model=self._model,
                    expected=self._dimension,
                    actual=len(vector),
                )
                break

        logger.debug("embeddings.generated", model=self._model, count=len(vectors))
        return vectors
