"""Data source contracts the context builder reads from.

Implementations live with the host application (conversation store,
plan store). Both raise UpstreamUnavailableError when unreachable.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from src.context_engine.context.schemas import ConversationMessage, PlanMetadata


@runtime_checkable
class MessageSource(Protocol):
    async def recent_messages(
        self, conversation_id: str, limit: int
    ) -> list[ConversationMessage]:
        """Return up to ``limit`` most recent messages, oldest first."""
        ...


@runtime_checkable
class PlanSource(Protocol):
    async def plan_metadata(self, plan_id: str) -> PlanMetadata | None: ...
