"""Token-bounded context assembly.

Provides:
- TokenBudgetAllocator / BudgetAllocation: ceiling -> per-part sub-budgets
- ContextBuilder: composes messages, memory and plan into a ContextResult
- Tokenizer / TiktokenCounter: token counting
- Summarizer / LiteLLMSummarizer: long-message summarisation
- MessageSource / PlanSource: input data contracts
"""

from src.context_engine.context.budget import (
    BudgetAllocation,
    CategoryBounds,
    DegeneratePolicy,
    TokenBudgetAllocator,
)
from src.context_engine.context.schemas import (
    ContextPart,
    ContextResult,
    ConversationMessage,
    Excerpt,
    PlanEntry,
    PlanMetadata,
)
from src.context_engine.context.tokenizer import TiktokenCounter, Tokenizer
from src.context_engine.context.summarizer import LiteLLMSummarizer, Summarizer
from src.context_engine.context.sources import MessageSource, PlanSource
from src.context_engine.context.builder import ContextBuilder

__all__ = [
    "BudgetAllocation",
    "CategoryBounds",
    "DegeneratePolicy",
    "TokenBudgetAllocator",
    "ContextPart",
    "ContextResult",
    "ConversationMessage",
    "Excerpt",
    "PlanEntry",
    "PlanMetadata",
    "TiktokenCounter",
    "Tokenizer",
    "LiteLLMSummarizer",
    "Summarizer",
    "MessageSource",
    "PlanSource",
    "ContextBuilder",
]
