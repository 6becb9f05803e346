"""Prometheus metrics for the lending indexer and liquidation monitor."""

from .metrics import (events_applied_total, invariant_violations_total,
                      liquidation_attempts_total, maybe_start_http_server)

__all__ = [
    "events_applied_total",
    "invariant_violations_total",
    "liquidation_attempts_total",
    "maybe_start_http_server",
]
