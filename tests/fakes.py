"""In-process stand-ins for the indexer's external collaborators, plus an event factory."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Union

from integrations.base import (DomainScore, LiquidationRequest,
                               LiquidationResult, SubmissionResult)
from lending_domain.events import ChainEvent, decode_event

BASE_TS = 1_700_000_000
DAY = 86_400


class FakeResolver:
    def __init__(self, names: Optional[Dict[int, str]] = None, *, gate: Optional[asyncio.Event] = None):
        self.names = names or {}
        self.gate = gate
        self.calls: List[int] = []

    async def resolve_domain_name(self, token_id: int) -> str:
        self.calls.append(token_id)
        if self.gate is not None:
            await self.gate.wait()
        return self.names.get(token_id, f"domain-{token_id}")


class FakeScorer:
    def __init__(self, score: Optional[DomainScore] = None, *, gate: Optional[asyncio.Event] = None):
        self.score = score or DomainScore(score=82, confidence=91, reasoning="strong brand")
        self.gate = gate
        self.calls: List[str] = []

    async def score_domain(self, domain_name: str) -> DomainScore:
        self.calls.append(domain_name)
        if self.gate is not None:
            await self.gate.wait()
        return self.score


class FakeSubmitter:
    def __init__(self, tx_hash: str = "0xscoretx", error: Optional[Exception] = None):
        self.tx_hash = tx_hash
        self.error = error
        self.calls: List[int] = []

    async def submit_score(self, domain_token_id: int, domain_name: str, score: DomainScore) -> SubmissionResult:
        self.calls.append(domain_token_id)
        if self.error is not None:
            raise self.error
        return {"tx_hash": self.tx_hash}


class FakeExecutor:
    """Returns (or raises) ``outcome`` for every call; ``delay`` simulates a slow relay."""

    def __init__(self, outcome: Union[LiquidationResult, BaseException, None] = None, *, delay: float = 0.0):
        self.outcome = outcome if outcome is not None else {"tx_hash": "0xliquidate", "auction_id": "9"}
        self.delay = delay
        self.calls: List[str] = []

    async def liquidate(self, request: LiquidationRequest) -> LiquidationResult:
        self.calls.append(request.loan_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return dict(self.outcome)  # type: ignore[return-value]


class Chain:
    """Builds decoded events at strictly increasing ``(block, logIndex)`` positions."""

    def __init__(self, block: int = 100, timestamp: int = BASE_TS):
        self.block = block
        self.log_index = -1
        self.timestamp = timestamp

    def next_block(self, seconds: int = 12) -> "Chain":
        self.block += 1
        self.log_index = -1
        self.timestamp += seconds
        return self

    def event(self, name: str, **fields: Any) -> ChainEvent:
        self.log_index += 1
        payload = {
            "event": name,
            "blockNumber": self.block,
            "logIndex": self.log_index,
            "transactionHash": f"0x{self.block:08x}{self.log_index:04x}",
            "blockTimestamp": self.timestamp,
            **fields,
        }
        return decode_event(payload)

    # common shapes -----------------------------------------------------

    def pool_created(self, pool_id: int = 1, liquidity: int = 10_000, **kw: Any) -> ChainEvent:
        return self.event(
            "PoolCreated", pool_id=pool_id, creator="0xpoolcreator", initial_liquidity=liquidity,
            min_ai_score=40, interest_rate=800, **kw,
        )

    def loan_created(
        self,
        loan_id: int = 1,
        *,
        principal: int = 1_000,
        token: int = 7,
        pool_id: int = 0,
        request_id: int = 0,
        due_in: int = 30 * DAY,
        **kw: Any,
    ) -> ChainEvent:
        return self.event(
            "LoanCreated",
            loan_id=loan_id,
            borrower="0xborrower",
            domain_token_id=token,
            principal_amount=principal,
            interest_rate=1_000,
            total_owed=principal + principal // 10,
            due_date=self.timestamp + due_in,
            pool_id=pool_id,
            request_id=request_id,
            **kw,
        )
