"""Prometheus metrics for the context engine.

Provides:
- Job transition counters (by from/to state and outcome)
- Vector store conflict counter (optimistic write retries)
- Context build token histograms and degradation counters
- get_metrics_payload(): exposition text for an external /metrics route
"""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest

# ── Job Metrics ──────────────────────────────────────────────────────────────

job_transitions_total = Counter(
    "job_transitions_total",
    "Job state transition attempts",
    ["from_state", "to_state", "outcome"],
)

# ── Vector Store Metrics ─────────────────────────────────────────────────────

vector_store_conflicts_total = Counter(
    "vector_store_conflicts_total",
    "Optimistic write conflicts observed by the vector store",
    ["operation"],
)

vector_query_results = Histogram(
    "vector_query_results",
    "Number of results returned by nearest-neighbor queries",
    buckets=(0, 1, 2, 5, 10, 20, 50),
)

# ── Context Metrics ──────────────────────────────────────────────────────────

context_build_tokens = Histogram(
    "context_build_tokens",
    "Tokens consumed per context part",
    ["part"],
    buckets=(0, 50, 100, 250, 500, 1000, 2000, 4000, 8000, 16000),
)

context_build_degraded_total = Counter(
    "context_build_degraded_total",
    "Context builds where a part degraded or was cut short",
    ["part", "reason"],
)


def get_metrics_payload() -> bytes:
    """Render all registered metrics in Prometheus exposition format."""
    return generate_latest(REGISTRY)
