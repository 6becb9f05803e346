"""Dutch auction state machine.

``active -> ended | cancelled``; both end states are terminal. Any event for
a terminal auction is ignored without touching state or appending history.
Ending or cancelling an auction settles the loan and, for pooled loans, the
pool ledger.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlmodel import Session

from common.datetime import from_unix
from event_dispatcher import ledger
from event_dispatcher.context import ApplyContext, ApplyStatus, require
from event_dispatcher.errors import InvalidTransitionError
from event_dispatcher.handlers.loans import enter_auction, transition_loan
from lending_domain.events import (AuctionCancelled, AuctionEnded,
                                   AuctionStarted, BidPlaced, ChainEvent)
from lending_domain.models import (TERMINAL_AUCTION_STATUSES, Auction,
                                   AuctionHistory, AuctionStatus, Loan,
                                   LoanStatus, Pool)
from state_store.repositories import (AuctionRepository, LoanRepository,
                                      PoolRepository)

log = logging.getLogger(__name__)

_TERMINAL = {s.value for s in TERMINAL_AUCTION_STATUSES}


def recovery_rate(final_price: int, loan_amount: Optional[int]) -> Optional[float]:
    if not loan_amount:
        return None
    return round(final_price / loan_amount, 4)


def _history(
    session: Session,
    auction: Auction,
    event: ChainEvent,
    event_type: str,
    *,
    price: Optional[int] = None,
    bidder: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    auction.last_updated = event.occurred_at
    session.add(
        AuctionHistory(
            id=event.event_id,
            auction_id=auction.auction_id,
            event_type=event_type,
            bidder_address=bidder,
            price=price,
            reason=reason,
            event_timestamp=event.occurred_at,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
        )
    )


def _open_auction(ctx: ApplyContext, auction_id: int) -> Optional[Auction]:
    """The auction if it may still change; None when it is terminal."""
    key = str(auction_id)
    auction = require(AuctionRepository(ctx.session).get(key), "auction", key)
    if auction.status in _TERMINAL:
        log.info("Auction %s is %s; ignoring further events", key, auction.status, extra={"auction_id": key})
        return None
    return auction


def on_auction_started(ctx: ApplyContext, event: AuctionStarted) -> ApplyStatus:
    session = ctx.session
    auction_id = str(event.auction_id)
    existing = AuctionRepository(session).get(auction_id)
    if existing is not None:
        if existing.status in _TERMINAL:
            return ApplyStatus.IGNORED
        raise InvalidTransitionError(
            f"auction {auction_id} already started", details={"auction_id": auction_id}
        )

    loan_id = str(event.loan_id)
    loan = require(LoanRepository(session).get(loan_id), "loan", loan_id)
    if loan.status == LoanStatus.ACTIVE.value:
        enter_auction(ctx, loan, event, amount=loan.current_balance)
    elif loan.status != LoanStatus.AUCTIONING.value:
        raise InvalidTransitionError(
            f"auction {auction_id} started for loan {loan_id} in status {loan.status}",
            details={"auction_id": auction_id, "loan_id": loan_id, "status": loan.status},
        )

    started_at = from_unix(event.start_timestamp) if event.start_timestamp else event.occurred_at
    auction = Auction(
        auction_id=auction_id,
        loan_id=loan_id,
        domain_token_id=str(event.domain_token_id),
        domain_name=ctx.domain_name(event.domain_token_id),
        borrower_address=loan.borrower_address,
        ai_score=loan.ai_score,
        loan_amount=loan.original_amount,
        starting_price=event.starting_price,
        current_price=event.starting_price,
        reserve_price=event.reserve_price,
        status=AuctionStatus.ACTIVE.value,
        started_at=started_at,
        ends_at=from_unix(event.end_timestamp) if event.end_timestamp else None,
        last_updated=event.occurred_at,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
    )
    AuctionRepository(session).add(auction)
    _history(session, auction, event, "started", price=event.starting_price)
    return ApplyStatus.APPLIED


def on_bid_placed(ctx: ApplyContext, event: BidPlaced) -> ApplyStatus:
    auction = _open_auction(ctx, event.auction_id)
    if auction is None:
        return ApplyStatus.IGNORED
    auction.current_bidder_address = event.bidder
    auction.current_price = event.current_price if event.current_price is not None else event.bid_amount
    _history(ctx.session, auction, event, "bid_placed", price=event.bid_amount, bidder=event.bidder)
    return ApplyStatus.APPLIED


def on_auction_ended(ctx: ApplyContext, event: AuctionEnded) -> ApplyStatus:
    session = ctx.session
    auction = _open_auction(ctx, event.auction_id)
    if auction is None:
        return ApplyStatus.IGNORED
    loan = require(LoanRepository(session).get(auction.loan_id), "loan", auction.loan_id)

    transition_loan(loan, LoanStatus.SOLD)
    pool = _loan_pool(session, loan)
    if pool is not None:
        ledger.credit_auction_proceeds(session, pool, loan, event, final_price=event.final_price)
    loan.last_updated = event.occurred_at

    loan_amount = event.loan_amount if event.loan_amount is not None else auction.loan_amount
    auction.status = AuctionStatus.ENDED.value
    auction.final_price = event.final_price
    auction.current_price = event.final_price
    auction.recovery_rate = recovery_rate(event.final_price, loan_amount)
    auction.ended_at = event.occurred_at
    if event.winner:
        auction.current_bidder_address = event.winner
    _history(session, auction, event, "ended", price=event.final_price, bidder=event.winner)
    log.info(
        "Auction %s ended at %s (recovery %s)", auction.auction_id, event.final_price, auction.recovery_rate,
        extra={"auction_id": auction.auction_id, "loan_id": loan.loan_id},
    )
    return ApplyStatus.APPLIED


def on_auction_cancelled(ctx: ApplyContext, event: AuctionCancelled) -> ApplyStatus:
    session = ctx.session
    auction = _open_auction(ctx, event.auction_id)
    if auction is None:
        return ApplyStatus.IGNORED
    loan = require(LoanRepository(session).get(auction.loan_id), "loan", auction.loan_id)

    if loan.status == LoanStatus.AUCTIONING.value:
        # collateral went unsold: the outstanding balance is written off back into the pool
        pool = _loan_pool(session, loan)
        if pool is not None:
            ledger.restore_cancelled_auction(session, pool, loan, event)
        transition_loan(loan, LoanStatus.LIQUIDATED)
        loan.last_updated = event.occurred_at
    else:
        log.info(
            "Auction %s cancelled with loan %s %s; no liquidity restored",
            auction.auction_id, loan.loan_id, loan.status,
            extra={"auction_id": auction.auction_id, "loan_id": loan.loan_id},
        )

    auction.status = AuctionStatus.CANCELLED.value
    auction.ended_at = event.occurred_at
    _history(session, auction, event, "cancelled", reason=event.reason or None)
    return ApplyStatus.APPLIED


def _loan_pool(session: Session, loan: Loan) -> Optional[Pool]:
    if loan.pool_id is None:
        return None
    return require(PoolRepository(session).get(loan.pool_id), "pool", loan.pool_id)
