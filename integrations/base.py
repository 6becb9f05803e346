"""Interfaces to the indexer's external collaborators.

The dispatcher and the liquidation monitor only see these protocols, so
tests swap in fakes and production wires the HTTP/RPC adapters in
``integrations.backend`` and ``integrations.doma``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, TypedDict

__all__ = [
    "DomainScore",
    "SubmissionResult",
    "LiquidationRequest",
    "LiquidationResult",
    "DomainResolver",
    "ScoringBridge",
    "ScoreSubmitter",
    "LiquidationExecutor",
    "placeholder_domain_name",
]


def placeholder_domain_name(token_id: int) -> str:
    """Deterministic stand-in used whenever a token id cannot be resolved."""
    return f"domain-{token_id}"


@dataclass(frozen=True)
class DomainScore:
    """Normalised scoring-bridge answer. Always well formed, even on fallback."""

    score: int
    confidence: int
    reasoning: str
    is_fallback: bool = False
    error: Optional[str] = None


class SubmissionResult(TypedDict, total=False):
    tx_hash: str
    raw: Dict[str, Any]  # raw backend response for debugging


@dataclass(frozen=True)
class LiquidationRequest:
    loan_id: str
    domain_token_id: str
    borrower_address: str


class LiquidationResult(TypedDict, total=False):
    tx_hash: str
    auction_id: str
    raw: Dict[str, Any]


class DomainResolver(Protocol):
    async def resolve_domain_name(self, token_id: int) -> str:
        """Never raises; falls back to ``placeholder_domain_name``."""
        ...


class ScoringBridge(Protocol):
    async def score_domain(self, domain_name: str) -> DomainScore:
        """Never raises; falls back to a conservative ``DomainScore``."""
        ...


class ScoreSubmitter(Protocol):
    async def submit_score(self, domain_token_id: int, domain_name: str, score: DomainScore) -> SubmissionResult:
        """Raises ``BackendError`` when the submission is not confirmed."""
        ...


class LiquidationExecutor(Protocol):
    async def liquidate(self, request: LiquidationRequest) -> LiquidationResult:
        """Raises ``ExecutorError`` when no liquidation transaction was submitted."""
        ...
