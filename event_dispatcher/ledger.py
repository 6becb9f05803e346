"""Pool liquidity ledger.

Every change to a pool's ``available_liquidity``/``total_liquidity`` goes
through ``_move`` so the bounds ``0 <= available <= total`` are checked in
one place, and every change appends exactly one ``PoolHistory`` row.

Accounting model (amounts in token base units):

* loan draw            available -= principal
* repayment            available += principal part + interest part,
                       total     += interest part
* liquidity add/remove available, total +/- amount
* auction ended        available += final price,
                       total     += final price - outstanding balance
* auction cancelled    available += outstanding balance (loan written off)

With these rules ``total == available + sum(outstanding balances)`` holds for
every pool whenever no event is mid-flight.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlmodel import Session

from event_dispatcher.errors import LiquidityInvariantError
from lending_domain.events import (ChainEvent, LiquidityAdded,
                                   LiquidityRemoved, PoolCreated, PoolUpdated)
from lending_domain.models import Loan, Pool, PoolHistory, PoolHistoryType
from lending_observability.metrics import pool_available_liquidity
from state_store.repositories import LoanRepository, PoolRepository

log = logging.getLogger(__name__)


def _move(pool: Pool, *, available_delta: int, total_delta: int, reason: str) -> None:
    available = pool.available_liquidity + available_delta
    total = pool.total_liquidity + total_delta
    if available < 0 or total < 0 or available > total:
        raise LiquidityInvariantError(
            f"pool {pool.pool_id}: {reason} would leave available={available} total={total}",
            details={
                "pool_id": pool.pool_id,
                "reason": reason,
                "available_before": str(pool.available_liquidity),
                "total_before": str(pool.total_liquidity),
                "available_delta": str(available_delta),
                "total_delta": str(total_delta),
            },
        )
    pool.available_liquidity = available
    pool.total_liquidity = total


def _record(
    session: Session,
    pool: Pool,
    event: ChainEvent,
    event_type: PoolHistoryType,
    *,
    amount: Optional[int] = None,
    provider: Optional[str] = None,
    loan_id: Optional[str] = None,
) -> None:
    pool.last_updated = event.occurred_at
    session.add(
        PoolHistory(
            id=event.event_id,
            pool_id=pool.pool_id,
            event_type=event_type.value,
            provider_address=provider,
            loan_id=loan_id,
            liquidity_amount=amount,
            total_after=pool.total_liquidity,
            available_after=pool.available_liquidity,
            min_ai_score=pool.min_ai_score,
            interest_rate=pool.interest_rate,
            event_timestamp=event.occurred_at,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
        )
    )
    pool_available_liquidity.labels(pool_id=pool.pool_id).set(float(pool.available_liquidity))


# ---------------------------------------------------------------------------
# Pool lifecycle
# ---------------------------------------------------------------------------


def create_pool(session: Session, event: PoolCreated) -> Pool:
    pool = Pool(
        pool_id=str(event.pool_id),
        creator_address=event.creator,
        total_liquidity=event.initial_liquidity,
        available_liquidity=event.initial_liquidity,
        min_ai_score=event.min_ai_score,
        interest_rate=event.interest_rate,
        participant_count=1,
        created_at=event.occurred_at,
        last_updated=event.occurred_at,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
    )
    PoolRepository(session).add(pool)
    _record(session, pool, event, PoolHistoryType.CREATED, amount=event.initial_liquidity, provider=event.creator)
    return pool


def add_liquidity(session: Session, pool: Pool, event: LiquidityAdded) -> None:
    if not PoolRepository(session).has_provider(pool.pool_id, event.provider):
        pool.participant_count += 1
    _move(pool, available_delta=event.amount, total_delta=event.amount, reason="liquidity_added")
    _record(session, pool, event, PoolHistoryType.LIQUIDITY_ADDED, amount=event.amount, provider=event.provider)


def remove_liquidity(session: Session, pool: Pool, event: LiquidityRemoved) -> None:
    _move(pool, available_delta=-event.amount, total_delta=-event.amount, reason="liquidity_removed")
    _record(session, pool, event, PoolHistoryType.LIQUIDITY_REMOVED, amount=event.amount, provider=event.provider)


def update_terms(session: Session, pool: Pool, event: PoolUpdated) -> None:
    pool.min_ai_score = event.new_min_ai_score
    pool.interest_rate = event.new_interest_rate
    _record(session, pool, event, PoolHistoryType.UPDATED, provider=event.updated_by)


# ---------------------------------------------------------------------------
# Loan side effects
# ---------------------------------------------------------------------------


def draw_loan(session: Session, pool: Pool, loan: Loan, event: ChainEvent) -> None:
    _move(pool, available_delta=-loan.original_amount, total_delta=0, reason="loan_drawn")
    _record(session, pool, event, PoolHistoryType.LOAN_DRAWN, amount=loan.original_amount, loan_id=loan.loan_id)


def credit_repayment(
    session: Session, pool: Pool, loan: Loan, event: ChainEvent, *, principal: int, interest: int
) -> None:
    _move(pool, available_delta=principal + interest, total_delta=interest, reason="loan_repaid")
    _record(session, pool, event, PoolHistoryType.LOAN_REPAID, amount=principal + interest, loan_id=loan.loan_id)


def credit_auction_proceeds(
    session: Session, pool: Pool, loan: Loan, event: ChainEvent, *, final_price: int
) -> None:
    # the outstanding balance is realised at final_price; the difference is the pool's gain or loss
    _move(
        pool,
        available_delta=final_price,
        total_delta=final_price - loan.current_balance,
        reason="auction_proceeds",
    )
    _record(session, pool, event, PoolHistoryType.AUCTION_PROCEEDS, amount=final_price, loan_id=loan.loan_id)


def restore_cancelled_auction(session: Session, pool: Pool, loan: Loan, event: ChainEvent) -> None:
    _move(pool, available_delta=loan.current_balance, total_delta=0, reason="auction_cancel_restore")
    _record(
        session, pool, event, PoolHistoryType.AUCTION_CANCEL_RESTORE,
        amount=loan.current_balance, loan_id=loan.loan_id,
    )


def conservation_gap(session: Session, pool: Pool) -> int:
    """``total - available - sum(outstanding)``; zero for a consistent pool."""
    outstanding = sum(
        loan.current_balance for loan in LoanRepository(session).outstanding_for_pool(pool.pool_id)
    )
    return pool.total_liquidity - pool.available_liquidity - outstanding
