"""Long-message summarisation via LiteLLM.

The builder asks a Summarizer to condense messages that exceed the
long-message threshold. Any provider failure surfaces as
UpstreamUnavailableError so the builder can fall back to the raw text.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import litellm
import structlog

from src.context_engine.core.errors import UpstreamUnavailableError

logger = structlog.get_logger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "Summarize the following message in a few sentences. Keep names, dates, "
    "places, amounts and decisions. Reply with the summary only."
)


@runtime_checkable
class Summarizer(Protocol):
    async def summarize(self, text: str, max_tokens: int) -> str: ...


class LiteLLMSummarizer:
    """Summarizer backed by ``litellm.acompletion``.

    Usage:
        summarizer = LiteLLMSummarizer(model="gpt-4o-mini")
        summary = await summarizer.summarize(long_text, max_tokens=200)
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        timeout: float = 30,
        num_retries: int = 3,
    ) -> None:
        self._model = model
        self._api_key = api_key or None
        self._timeout = timeout
        self._num_retries = num_retries

    async def summarize(self, text: str, max_tokens: int) -> str:
        """Return a summary of ``text`` limited to about ``max_tokens``.

        Raises:
            UpstreamUnavailableError: If the provider call fails or
                returns no content.
        """
        try:
            response = await litellm.acompletion(
                model=self._model,
                messages=[
                    {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                    {"role": "user", "content": text},
                ],
                max_tokens=max_tokens,
                temperature=0.2,
                api_key=self._api_key,
                timeout=self._timeout,
                num_retries=self._num_retries,
            )
        except Exception as exc:
            logger.warning(
                "summarizer.failed", model=self._model, error=str(exc)
            )
            raise UpstreamUnavailableError("summarizer", str(exc)) from exc

        content = (response.choices[0].message.content or "").strip()
        if not content:
            raise UpstreamUnavailableError("summarizer", "empty completion")
        return content
