"""Pydantic models for context building inputs and results."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from src.context_engine.context.budget import BudgetAllocation

PART_ORDER = ("messages", "memory", "plan")

PART_HEADERS: dict[str, str] = {
    "messages": "## Conversation History",
    "memory": "## Relevant Memory",
    "plan": "## Plan",
}


class ConversationMessage(BaseModel):
    role: str
    content: str
    created_at: datetime | None = None


class PlanEntry(BaseModel):
    """A job or task attached to a plan, summarised for the prompt."""

    id: str
    kind: str
    state: str
    summary: str = ""
    active: bool = True
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PlanMetadata(BaseModel):
    plan_id: str
    title: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)
    entries: list[PlanEntry] = Field(default_factory=list)

    def header_text(self) -> str:
        """Plan title and attributes as a single prompt line."""
        text = f"{PART_HEADERS['plan']}: {self.title}" if self.title else PART_HEADERS["plan"]
        if self.attributes:
            text += "\n" + json.dumps(self.attributes, sort_keys=True, default=str)
        return text


class Excerpt(BaseModel):
    """One included unit of text and the tokens it cost."""

    text: str
    tokens: int
    source_id: str | None = None
    summarized: bool = False


class ContextPart(BaseModel):
    name: str
    header: str | None = None
    header_tokens: int = 0
    excerpts: list[Excerpt] = Field(default_factory=list)
    budget: int = 0
    tokens_used: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.excerpts

    def render(self) -> str:
        if not self.excerpts:
            return ""
        lines = [self.header] if self.header else []
        lines.extend(e.text for e in self.excerpts)
        return "\n".join(lines)


class ContextResult(BaseModel):
    """Assembled, token-bounded context for one generation request."""

    plan_id: str
    messages: ContextPart
    memory: ContextPart
    plan: ContextPart
    allocation: BudgetAllocation
    max_tokens: int
    partial: bool = False
    degraded: list[str] = Field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.messages.tokens_used + self.memory.tokens_used + self.plan.tokens_used

    def parts(self) -> list[ContextPart]:
        return [self.messages, self.memory, self.plan]

    def render(self) -> str:
        """Prompt text: plan, then relevant memory, then conversation history."""
        sections = [p.render() for p in (self.plan, self.memory, self.messages)]
        return "\n\n".join(s for s in sections if s)
