"""Job state transition rules.

Every JobState appears as a key of VALID_TRANSITIONS. Terminal states
map to the empty set, so any request on a terminal job (including a
request for the state it is already in) is invalid.
"""

from __future__ import annotations

from src.context_engine.core.errors import InvalidTransitionError
from src.context_engine.jobs.schemas import JobState

# Maps each state to the set of states it can transition TO.
# CANCELLED can be reached from any open state.
VALID_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.QUEUED, JobState.CANCELLED}),
    JobState.QUEUED: frozenset({JobState.PROCESSING, JobState.CANCELLED}),
    JobState.PROCESSING: frozenset(
        {
            JobState.COMPLETED,
            JobState.FAILED,
            JobState.RETRYING,
            JobState.CANCELLED,
        }
    ),
    JobState.RETRYING: frozenset(
        {JobState.PROCESSING, JobState.FAILED, JobState.CANCELLED}
    ),
    JobState.COMPLETED: frozenset(),  # Terminal
    JobState.FAILED: frozenset(),  # Terminal
    JobState.CANCELLED: frozenset(),  # Terminal
}

OPEN_STATES = frozenset(s for s, targets in VALID_TRANSITIONS.items() if targets)
TERMINAL_STATES = frozenset(s for s, targets in VALID_TRANSITIONS.items() if not targets)


def is_terminal(state: JobState) -> bool:
    return state in TERMINAL_STATES


def validate_transition(from_state: JobState, to_state: JobState) -> None:
    """Validate that a job state transition is allowed.

    Raises:
        InvalidTransitionError: If ``to_state`` is not reachable from
            ``from_state``.
    """
    allowed = VALID_TRANSITIONS[from_state]
    if to_state not in allowed:
        raise InvalidTransitionError(from_state, to_state, allowed)
