"""Prometheus metrics for the swap marketplace.

Counters are process-global; ``start_metrics_server`` exposes them over
HTTP when a port is configured.
"""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    start_http_server,
)

from swapmarket import __version__

# ---------------------------------------------------------------------------
# System metrics
# ---------------------------------------------------------------------------

SYSTEM_INFO = Info("swapmarket", "Swap marketplace information")

# ---------------------------------------------------------------------------
# Swap lifecycle metrics
# ---------------------------------------------------------------------------

PROPOSALS_TOTAL = Counter(
    "swapmarket_proposals_total",
    "Swap proposals by outcome",
    ["outcome"],
)

RESOLUTIONS_TOTAL = Counter(
    "swapmarket_resolutions_total",
    "Swap resolutions by decision and outcome",
    ["decision", "outcome"],
)

CAS_CONFLICTS_TOTAL = Counter(
    "swapmarket_cas_conflicts_total",
    "Conditional writes that matched zero rows",
    ["table"],
)

PARTIAL_FAILURES_TOTAL = Counter(
    "swapmarket_partial_failures_total",
    "Multi-record writes that stopped midway",
    ["operation"],
)

RECONCILIATION_REPAIRS_TOTAL = Counter(
    "swapmarket_reconciliation_repairs_total",
    "Records repaired by the reconciler",
    ["kind"],
)

# ---------------------------------------------------------------------------
# Store metrics
# ---------------------------------------------------------------------------

STORE_LATENCY = Histogram(
    "swapmarket_store_latency_seconds",
    "Record store operation latency",
    ["backend", "operation"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 1.0],
)


def start_metrics_server(port: int = 9090, backend: str = "unknown") -> None:
    """Start Prometheus metrics HTTP server in a background thread."""
    SYSTEM_INFO.info({
        "version": __version__,
        "backend": backend,
    })
    start_http_server(port)


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------


def record_proposal(outcome: str) -> None:
    """Record a proposal attempt ("created", "conflict", "partial", ...)."""
    PROPOSALS_TOTAL.labels(outcome=outcome).inc()


def record_resolution(decision: str, outcome: str) -> None:
    """Record a resolve attempt."""
    RESOLUTIONS_TOTAL.labels(decision=decision, outcome=outcome).inc()


def record_cas_conflict(table: str) -> None:
    """Record a zero-row conditional write."""
    CAS_CONFLICTS_TOTAL.labels(table=table).inc()


def record_partial_failure(operation: str) -> None:
    """Record a write sequence that needs reconciliation."""
    PARTIAL_FAILURES_TOTAL.labels(operation=operation).inc()


def record_repair(kind: str, count: int = 1) -> None:
    """Record reconciliation repairs of one kind."""
    if count:
        RECONCILIATION_REPAIRS_TOTAL.labels(kind=kind).inc(count)
