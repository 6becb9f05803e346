"""
Prometheus metrics for the indexer.

This module does NOT start an HTTP server on import. The composition root
calls maybe_start_http_server(), which only binds a port when
METRICS_HTTP_SERVER=1 is set in the environment.
"""

import os
import threading
from typing import Any, Dict, Tuple, Type

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ----------------------------
# Optional standalone server
# ----------------------------
_METRICS_PORT = int(os.getenv("METRICS_PORT", "8001"))
_server_started = False
_server_lock = threading.Lock()


def maybe_start_http_server() -> None:
    """Start a sidecar metrics HTTP server exactly once, if METRICS_HTTP_SERVER=1."""
    global _server_started
    if _server_started or os.getenv("METRICS_HTTP_SERVER") != "1":
        return
    with _server_lock:
        if not _server_started:
            start_http_server(_METRICS_PORT)
            _server_started = True


# ----------------------------
# Registration helper (avoid duplicate collectors)
# ----------------------------
_METRICS: Dict[Tuple[Type[Any], str], Any] = {}


def get_metric(cls: Type[Any], name: str, *args, **kwargs):
    key = (cls, name)
    if key in _METRICS:
        return _METRICS[key]
    metric = cls(name, *args, **kwargs)
    _METRICS[key] = metric
    return metric


# ----------------------------
# Event dispatcher
# ----------------------------

# outcome: applied | duplicate | ignored | rejected
events_applied_total = get_metric(
    Counter,
    "indexer_events_applied_total",
    "Chain events handled by the dispatcher, by outcome",
    ["event", "outcome"],
)

event_apply_latency_seconds = get_metric(
    Histogram,
    "indexer_event_apply_latency_seconds",
    "Latency to apply a single chain event (seconds)",
    ["event"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5),
)

invariant_violations_total = get_metric(
    Counter,
    "indexer_invariant_violations_total",
    "Events rejected because applying them would break a state invariant",
    ["kind"],
)

event_decode_failures_total = get_metric(
    Counter,
    "indexer_event_decode_failures_total",
    "Records skipped at the ingestion boundary because they did not decode",
)

scoring_fallbacks_total = get_metric(
    Counter,
    "scoring_fallbacks_total",
    "Scoring bridge calls answered with the conservative fallback score",
)

pool_available_liquidity = get_metric(
    Gauge,
    "pool_available_liquidity",
    "Available liquidity per pool in token base units",
    ["pool_id"],
)

# ----------------------------
# Liquidation monitor
# ----------------------------

liquidation_sweeps_total = get_metric(
    Counter,
    "liquidation_sweeps_total",
    "Number of liquidation sweeps run",
)

liquidation_sweep_latency_seconds = get_metric(
    Histogram,
    "liquidation_sweep_latency_seconds",
    "Latency of a full liquidation sweep in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)

# outcome: submitted | reverted | unknown | compensation_failed
liquidation_attempts_total = get_metric(
    Counter,
    "liquidation_attempts_total",
    "Liquidation executor attempts by outcome",
    ["outcome"],
)

liquidation_unconfirmed_attempts = get_metric(
    Gauge,
    "liquidation_unconfirmed_attempts",
    "Loans latched for liquidation without a confirmed transaction hash",
)
