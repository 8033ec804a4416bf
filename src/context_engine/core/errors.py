"""Domain error taxonomy shared by every engine component.

- NotFoundError: an operation addressed a record that does not exist.
- InvalidTransitionError: a job state change not reachable from the
  job's current state (including any change on a terminal job).
- ConflictError: a concurrent conditional write lost its race. Retried
  internally a bounded number of times before it reaches a caller.
- ReferenceConflictError: a restore blocked by another active record
  holding the same reference. A ConflictError that is never retried.
- UpstreamUnavailableError: a collaborator (tokenizer, summarizer,
  embedding generator, data source, storage) could not be reached.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum


class ContextEngineError(Exception):
    """Base class for all engine domain errors."""


class NotFoundError(ContextEngineError):
    """Raised when a record id does not reference an existing record."""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} with id '{record_id}' not found")


class InvalidTransitionError(ContextEngineError):
    """Raised when a state change violates the transition rules."""

    def __init__(
        self,
        from_state: Enum,
        to_state: Enum,
        allowed: Iterable[Enum] = (),
    ) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = frozenset(allowed)
        allowed_text = ", ".join(sorted(s.value for s in self.allowed)) or "none"
        super().__init__(
            f"Invalid transition: {from_state.value} -> {to_state.value}. "
            f"Allowed transitions from {from_state.value}: {allowed_text}"
        )


class ConflictError(ContextEngineError):
    """Raised when an optimistic write observed stale state."""


class ReferenceConflictError(ConflictError):
    """Raised when another active record already holds a reference.

    Not a lost race: re-reading cannot succeed, so it is never retried.
    """


class UpstreamUnavailableError(ContextEngineError):
    """Raised when a collaborator could not be reached or timed out."""

    def __init__(self, collaborator: str, detail: str = "") -> None:
        self.collaborator = collaborator
        self.detail = detail
        message = f"{collaborator} unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
