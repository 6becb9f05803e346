"""Loan lifecycle handlers: creation, collateral moves, repayment, liquidation."""
from __future__ import annotations

import logging
from typing import Optional

from sqlmodel import Session

from common.datetime import from_unix
from event_dispatcher import analytics, ledger
from event_dispatcher.context import ApplyContext, ApplyStatus, require
from event_dispatcher.errors import (BalanceInvariantError,
                                     InvalidTransitionError)
from event_dispatcher.handlers.requests import can_execute, mark_executed
from lending_domain.events import (ChainEvent, CollateralLiquidated,
                                   CollateralLocked, CollateralReleased,
                                   LoanCreated, LoanRepaid)
from lending_domain.models import (LOAN_TRANSITIONS, Loan, LoanHistory,
                                   LoanHistoryType, LoanStatus)
from state_store.repositories import (LoanRepository, LoanRequestRepository,
                                      PoolRepository)

log = logging.getLogger(__name__)


def transition_loan(loan: Loan, new: LoanStatus) -> None:
    current = LoanStatus(loan.status)
    if new not in LOAN_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"loan {loan.loan_id}: {current.value} -> {new.value} is not allowed",
            details={"loan_id": loan.loan_id, "from": current.value, "to": new.value},
        )
    loan.status = new.value


def check_balance(loan: Loan) -> None:
    if loan.current_balance < 0 or loan.current_balance != loan.original_amount - loan.total_repaid:
        raise BalanceInvariantError(
            f"loan {loan.loan_id}: balance {loan.current_balance} != "
            f"{loan.original_amount} - {loan.total_repaid}",
            details={
                "loan_id": loan.loan_id,
                "original_amount": str(loan.original_amount),
                "total_repaid": str(loan.total_repaid),
                "current_balance": str(loan.current_balance),
            },
        )


def append_history(
    session: Session,
    loan: Loan,
    event: ChainEvent,
    event_type: LoanHistoryType,
    *,
    amount: Optional[int] = None,
) -> None:
    loan.last_updated = event.occurred_at
    session.add(
        LoanHistory(
            id=event.event_id,
            loan_id=loan.loan_id,
            event_type=event_type.value,
            borrower_address=loan.borrower_address,
            domain_token_id=loan.domain_token_id,
            domain_name=loan.domain_name,
            amount=amount,
            remaining_balance=loan.current_balance,
            interest_rate=loan.interest_rate,
            pool_id=loan.pool_id,
            repayment_deadline=loan.repayment_deadline,
            event_timestamp=event.occurred_at,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
        )
    )


def enter_auction(ctx: ApplyContext, loan: Loan, event: ChainEvent, *, amount: Optional[int] = None) -> None:
    """Move an active loan into ``auctioning`` and record the liquidation."""
    transition_loan(loan, LoanStatus.AUCTIONING)
    # the chain has liquidated it; the monitor must not try again
    loan.liquidation_attempted = True
    if loan.liquidation_timestamp is None:
        loan.liquidation_timestamp = event.occurred_at
    append_history(ctx.session, loan, event, LoanHistoryType.LIQUIDATED, amount=amount)
    analytics.on_liquidation(ctx.session, loan.domain_token_id, loan.domain_name, event.occurred_at)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def on_loan_created(ctx: ApplyContext, event: LoanCreated) -> ApplyStatus:
    session = ctx.session
    loans = LoanRepository(session)
    loan_id = str(event.loan_id)
    if loans.get(loan_id) is not None:
        raise InvalidTransitionError(f"loan {loan_id} already exists", details={"loan_id": loan_id})

    pool_id = str(event.pool_id) if event.pool_id > 0 else None
    request_id = str(event.request_id) if event.request_id > 0 else None
    request = LoanRequestRepository(session).by_request_id(request_id) if request_id else None
    ai_score = event.ai_score if event.ai_score is not None else (request.ai_score if request else None)

    ts = event.occurred_at
    loan = Loan(
        loan_id=loan_id,
        request_id=request_id,
        borrower_address=event.borrower,
        domain_token_id=str(event.domain_token_id),
        domain_name=ctx.domain_name(event.domain_token_id),
        original_amount=event.principal_amount,
        current_balance=event.principal_amount,
        total_repaid=0,
        interest_paid=0,
        total_owed=event.total_owed,
        interest_rate=event.interest_rate,
        ai_score=ai_score,
        pool_id=pool_id,
        status=LoanStatus.ACTIVE.value,
        repayment_deadline=from_unix(event.due_date),
        liquidation_attempted=False,
        liquidation_buffer_hours=ctx.settings.liquidation_buffer_hours,
        created_at=ts,
        last_updated=ts,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
    )

    if pool_id is not None:
        pool = require(PoolRepository(session).get(pool_id), "pool", pool_id)
        ledger.draw_loan(session, pool, loan, event)
    if request is not None and can_execute(request):
        mark_executed(request, ts)
    elif request is not None:
        # the loan is on chain regardless; only the request bookkeeping is skipped
        log.warning(
            "Loan %s executes loan request %s, which is already %s; leaving the request as is",
            loan_id, request_id, request.status, extra={"loan_id": loan_id},
        )
    elif request_id is not None:
        log.warning("Loan %s references unknown loan request %s", loan_id, request_id, extra={"loan_id": loan_id})

    loans.add(loan)
    history_type = LoanHistoryType.CREATED_CROWDFUNDED if request_id else LoanHistoryType.CREATED_INSTANT
    append_history(session, loan, event, history_type, amount=event.principal_amount)
    analytics.on_loan_created(session, loan.domain_token_id, loan.domain_name, event.principal_amount, ts)
    return ApplyStatus.APPLIED


def on_collateral_locked(ctx: ApplyContext, event: CollateralLocked) -> ApplyStatus:
    loan = require(LoanRepository(ctx.session).get(str(event.loan_id)), "loan", str(event.loan_id))
    append_history(ctx.session, loan, event, LoanHistoryType.COLLATERAL_LOCKED)
    return ApplyStatus.APPLIED


def on_collateral_released(ctx: ApplyContext, event: CollateralReleased) -> ApplyStatus:
    loan = require(LoanRepository(ctx.session).get(str(event.loan_id)), "loan", str(event.loan_id))
    append_history(ctx.session, loan, event, LoanHistoryType.COLLATERAL_RELEASED)
    return ApplyStatus.APPLIED


def on_collateral_liquidated(ctx: ApplyContext, event: CollateralLiquidated) -> ApplyStatus:
    loan = require(LoanRepository(ctx.session).get(str(event.loan_id)), "loan", str(event.loan_id))
    amount = event.loan_amount if event.loan_amount is not None else loan.current_balance
    if loan.status == LoanStatus.ACTIVE.value:
        enter_auction(ctx, loan, event, amount=amount)
    elif loan.status == LoanStatus.AUCTIONING.value:
        # AuctionStarted got there first; keep the fact, status already moved
        append_history(ctx.session, loan, event, LoanHistoryType.LIQUIDATED, amount=amount)
        analytics.on_liquidation(ctx.session, loan.domain_token_id, loan.domain_name, event.occurred_at)
    else:
        transition_loan(loan, LoanStatus.AUCTIONING)  # raises
    if loan.liquidation_tx_hash is None:
        loan.liquidation_tx_hash = event.transaction_hash
    return ApplyStatus.APPLIED


def on_loan_repaid(ctx: ApplyContext, event: LoanRepaid) -> ApplyStatus:
    session = ctx.session
    loan_id = str(event.loan_id)
    loan = require(LoanRepository(session).get(loan_id), "loan", loan_id)
    if loan.status != LoanStatus.ACTIVE.value:
        raise InvalidTransitionError(
            f"loan {loan_id}: repayment while {loan.status}",
            details={"loan_id": loan_id, "status": loan.status},
        )
    check_balance(loan)

    outstanding = loan.current_balance
    principal = outstanding if event.is_fully_repaid else min(event.repayment_amount, outstanding)
    interest = max(event.repayment_amount - principal, 0)

    loan.total_repaid += principal
    loan.interest_paid += interest
    loan.current_balance = outstanding - principal
    check_balance(loan)

    fully_repaid = loan.current_balance == 0
    if fully_repaid:
        transition_loan(loan, LoanStatus.REPAID)

    if loan.pool_id is not None:
        pool = require(PoolRepository(session).get(loan.pool_id), "pool", loan.pool_id)
        ledger.credit_repayment(session, pool, loan, event, principal=principal, interest=interest)

    history_type = LoanHistoryType.REPAID_FULL if fully_repaid else LoanHistoryType.REPAID_PARTIAL
    append_history(session, loan, event, history_type, amount=event.repayment_amount)
    log.info(
        "Loan %s repaid principal=%s interest=%s balance=%s",
        loan_id, principal, interest, loan.current_balance,
        extra={"loan_id": loan_id},
    )
    return ApplyStatus.APPLIED
