"""Asynchronous job lifecycle.

Provides:
- JobState / JobRecord / JobPayload / JobResult: job models and contracts
- VALID_TRANSITIONS: the job state machine
- SqlJobRepository / InMemoryJobRepository: compare-and-set persistence
- JobLifecycleManager: the only writer of job state
- JobExecutor: claim -> handle -> complete/retry/fail
- ContextBuildHandler: builds contexts off the request path
- MemoryCompressionHandler: removes near-duplicate plan memory
"""

from src.context_engine.jobs.schemas import (
    JobPayload,
    JobRecord,
    JobResult,
    JobResultMeta,
    JobState,
)
from src.context_engine.jobs.transitions import (
    OPEN_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    validate_transition,
)
from src.context_engine.jobs.repository import (
    InMemoryJobRepository,
    JobRepository,
    SqlJobRepository,
)
from src.context_engine.jobs.lifecycle import JobLifecycleManager
from src.context_engine.jobs.executor import JobExecutor, RecoverableJobError
from src.context_engine.jobs.handlers import (
    BUILD_CONTEXT_JOB,
    MEMORY_COMPRESSION_JOB,
    ContextBuildHandler,
    MemoryCompressionHandler,
)

__all__ = [
    "JobPayload",
    "JobRecord",
    "JobResult",
    "JobResultMeta",
    "JobState",
    "OPEN_STATES",
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "validate_transition",
    "InMemoryJobRepository",
    "JobRepository",
    "SqlJobRepository",
    "JobLifecycleManager",
    "JobExecutor",
    "RecoverableJobError",
    "BUILD_CONTEXT_JOB",
    "ContextBuildHandler",
    "MEMORY_COMPRESSION_JOB",
    "MemoryCompressionHandler",
]
