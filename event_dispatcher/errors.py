"""Errors raised while applying chain events.

An ``ApplyError`` aborts the event's transaction. The dispatcher records it
in the audit journal and moves on; it never corrects the state itself.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ApplyError(Exception):
    """Base class: the event could not be applied and nothing was written."""

    kind = "apply_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details: Dict[str, Any] = details or {}


class InvariantViolation(ApplyError):
    kind = "invariant_violation"


class LiquidityInvariantError(InvariantViolation):
    """Applying the event would leave a pool with negative or excess available liquidity."""

    kind = "liquidity"


class BalanceInvariantError(InvariantViolation):
    """Repayment accounting no longer satisfies balance == original - repaid."""

    kind = "balance"


class UnknownAggregateError(ApplyError):
    """A lifecycle event references a loan, pool, auction or request never seen."""

    kind = "unknown_aggregate"


class InvalidTransitionError(ApplyError):
    kind = "invalid_transition"


class OrderingError(ApplyError):
    """Event arrived behind the cursor without having been applied before."""

    kind = "ordering"
