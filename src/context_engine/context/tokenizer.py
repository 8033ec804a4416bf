"""Token counting collaborator.

Tokenizer is the contract the builder depends on. TiktokenCounter counts
with a tiktoken encoding (cl100k_base by default, a reasonable
approximation across Claude and GPT models). The encoding is loaded on
first use; a load failure surfaces as UpstreamUnavailableError.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import structlog
import tiktoken

from src.context_engine.core.errors import UpstreamUnavailableError

logger = structlog.get_logger(__name__)


@runtime_checkable
class Tokenizer(Protocol):
    def count(self, text: str) -> int: ...


class TiktokenCounter:
    """Counts tokens with a tiktoken encoding."""

    def __init__(self, encoding_name: str = "cl100k_base") -> None:
        self._encoding_name = encoding_name
        self._encoding: tiktoken.Encoding | None = None

    def _get_encoding(self) -> tiktoken.Encoding:
        if self._encoding is None:
            try:
                self._encoding = tiktoken.get_encoding(self._encoding_name)
            except (OSError, ValueError) as exc:
                logger.error(
                    "tokenizer.encoding_unavailable",
                    encoding=self._encoding_name,
                    error=str(exc),
                )
                raise UpstreamUnavailableError("tokenizer", str(exc)) from exc
        return self._encoding

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._get_encoding().encode(text))
