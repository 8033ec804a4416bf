"""Tests for the tiktoken counter and the LiteLLM summarizer.

Tests cover:
- Token counting through the configured encoding
- Lazy, cached encoding load
- Encoding load failures becoming UpstreamUnavailableError
- Summaries parsed from completion responses
- Provider failures and empty completions becoming UpstreamUnavailableError
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.context_engine.context.summarizer import (
    SUMMARY_SYSTEM_PROMPT,
    LiteLLMSummarizer,
)
from src.context_engine.context.tokenizer import TiktokenCounter, Tokenizer
from src.context_engine.core.errors import UpstreamUnavailableError

GET_ENCODING = "src.context_engine.context.tokenizer.tiktoken.get_encoding"
ACOMPLETION = "src.context_engine.context.summarizer.litellm.acompletion"


def _completion(content: str | None) -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


class TestTiktokenCounter:
    def test_satisfies_protocol(self):
        assert isinstance(TiktokenCounter(), Tokenizer)

    def test_counts_encoded_tokens(self):
        encoding = MagicMock()
        encoding.encode.return_value = [1, 2, 3]
        with patch(GET_ENCODING, return_value=encoding) as get_encoding:
            counter = TiktokenCounter("cl100k_base")
            assert counter.count("hello there world") == 3
            assert counter.count("again") == 3

        get_encoding.assert_called_once_with("cl100k_base")

    def test_encoding_not_loaded_until_first_count(self):
        with patch(GET_ENCODING) as get_encoding:
            TiktokenCounter()
        get_encoding.assert_not_called()

    def test_empty_text_is_zero(self):
        with patch(GET_ENCODING) as get_encoding:
            assert TiktokenCounter().count("") == 0
        get_encoding.assert_not_called()

    def test_load_failure_is_upstream_unavailable(self):
        with patch(GET_ENCODING, side_effect=OSError("no network")):
            with pytest.raises(UpstreamUnavailableError) as exc_info:
                TiktokenCounter().count("hello")
        assert exc_info.value.collaborator == "tokenizer"


class TestLiteLLMSummarizer:
    @pytest.mark.asyncio
    async def test_returns_stripped_summary(self):
        with patch(ACOMPLETION, AsyncMock(return_value=_completion("  Booked hotel.  "))) as call:
            summarizer = LiteLLMSummarizer(model="gpt-4o-mini", timeout=5)
            summary = await summarizer.summarize("a very long message", max_tokens=120)

        assert summary == "Booked hotel."
        kwargs = call.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["max_tokens"] == 120
        assert kwargs["messages"][0] == {"role": "system", "content": SUMMARY_SYSTEM_PROMPT}
        assert kwargs["messages"][1]["content"] == "a very long message"

    @pytest.mark.asyncio
    async def test_provider_failure_is_upstream_unavailable(self):
        with patch(ACOMPLETION, AsyncMock(side_effect=RuntimeError("rate limited"))):
            with pytest.raises(UpstreamUnavailableError) as exc_info:
                await LiteLLMSummarizer().summarize("text", max_tokens=50)
        assert exc_info.value.collaborator == "summarizer"

    @pytest.mark.asyncio
    async def test_empty_completion_is_upstream_unavailable(self):
        with patch(ACOMPLETION, AsyncMock(return_value=_completion(None))):
            with pytest.raises(UpstreamUnavailableError):
                await LiteLLMSummarizer().summarize("text", max_tokens=50)
