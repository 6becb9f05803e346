"""Event name -> handler registry, and the aggregate keys each event locks."""
from __future__ import annotations

from typing import Callable, Dict, List

from sqlmodel import Session

from event_dispatcher import auction_fsm
from event_dispatcher.context import ApplyContext, ApplyStatus
from event_dispatcher.handlers import (loans, paid_scoring, pools, requests,
                                       scoring, system)
from lending_domain.events import ChainEvent
from lending_domain.models import Auction, Loan
from state_store.locks import (auction_key, domain_key, loan_key, manager_key,
                               paid_request_key, pool_key, request_key)

Handler = Callable[[ApplyContext, ChainEvent], ApplyStatus]

HANDLERS: Dict[str, Handler] = {
    "ScoringRequested": scoring.on_scoring_requested,
    "ScoreSubmitted": scoring.on_score_submitted,
    "BatchScoringRequested": scoring.on_batch_scoring_requested,
    "BatchScoresSubmitted": scoring.on_batch_scores_submitted,
    "ScoreInvalidated": scoring.on_score_invalidated,
    "BackendServiceUpdated": system.on_backend_service_updated,
    "EmergencyPauseToggled": system.on_emergency_pause_toggled,
    "PaidScoringRequested": paid_scoring.on_paid_scoring_requested,
    "PaidScoreSubmitted": paid_scoring.on_paid_score_submitted,
    "PaymentTokenUpdated": system.on_payment_token_updated,
    "PaidScoringFeeUpdated": system.on_paid_scoring_fee_updated,
    "ServiceManagerRegistered": paid_scoring.on_service_manager_registered,
    "ServiceManagerUnregistered": paid_scoring.on_service_manager_unregistered,
    "LoanCreated": loans.on_loan_created,
    "CollateralLocked": loans.on_collateral_locked,
    "CollateralReleased": loans.on_collateral_released,
    "CollateralLiquidated": loans.on_collateral_liquidated,
    "LoanRepaid": loans.on_loan_repaid,
    "PoolCreated": pools.on_pool_created,
    "LiquidityAdded": pools.on_liquidity_added,
    "LiquidityRemoved": pools.on_liquidity_removed,
    "PoolUpdated": pools.on_pool_updated,
    "AuctionStarted": auction_fsm.on_auction_started,
    "BidPlaced": auction_fsm.on_bid_placed,
    "AuctionEnded": auction_fsm.on_auction_ended,
    "AuctionCancelled": auction_fsm.on_auction_cancelled,
    "LoanRequestCreated": requests.on_request_created,
    "LoanRequestFunded": requests.on_request_funded,
    "LoanRequestCancelled": requests.on_request_cancelled,
}

# their request ids live in a separate numbering from loan requests
_PAID_EVENTS = frozenset({"PaidScoringRequested", "PaidScoreSubmitted"})


def aggregate_keys(session: Session, event: ChainEvent) -> List[str]:
    """Lock keys for every aggregate *event* may write.

    Loans and auctions are looked up to add the pool (and loan) they settle
    against; those references never change once written.
    """
    keys = {domain_key(str(t)) for t in event.token_ids()}

    pool_id = getattr(event, "pool_id", None)
    if pool_id:
        keys.add(pool_key(str(pool_id)))
    request_id = getattr(event, "request_id", None)
    if request_id and event.name in _PAID_EVENTS:
        keys.add(paid_request_key(str(request_id)))
    elif request_id:
        keys.add(request_key(str(request_id)))
    manager = getattr(event, "service_manager", None)
    if manager:
        keys.add(manager_key(manager))

    loan_id = getattr(event, "loan_id", None)
    auction_id = getattr(event, "auction_id", None)
    if auction_id is not None:
        keys.add(auction_key(str(auction_id)))
        if loan_id is None:
            auction = session.get(Auction, str(auction_id))
            loan_id = auction.loan_id if auction is not None else None
    if loan_id is not None:
        keys.add(loan_key(str(loan_id)))
        loan = session.get(Loan, str(loan_id))
        if loan is not None and loan.pool_id:
            keys.add(pool_key(loan.pool_id))
    return sorted(keys)


__all__ = ["HANDLERS", "Handler", "aggregate_keys"]
