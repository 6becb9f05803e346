"""Crowdfunded loan-request handlers."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, FrozenSet

from common.datetime import from_unix
from event_dispatcher.context import ApplyContext, ApplyStatus, require
from event_dispatcher.errors import InvalidTransitionError
from lending_domain.events import (LoanRequestCancelled, LoanRequestCreated,
                                   LoanRequestFunded)
from lending_domain.models import LoanFunding, LoanRequest, LoanRequestStatus
from state_store.repositories import LoanRequestRepository, insert_if_absent

log = logging.getLogger(__name__)

_S = LoanRequestStatus
REQUEST_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    _S.ACTIVE.value: frozenset({_S.FUNDED.value, _S.EXECUTED.value, _S.CANCELLED.value}),
    _S.FUNDED.value: frozenset({_S.EXECUTED.value, _S.CANCELLED.value}),
    _S.EXECUTED.value: frozenset(),
    _S.CANCELLED.value: frozenset(),
}


def _transition(request: LoanRequest, new: LoanRequestStatus, ts: datetime) -> None:
    if new.value not in REQUEST_TRANSITIONS[request.status]:
        raise InvalidTransitionError(
            f"loan request {request.request_id}: {request.status} -> {new.value} is not allowed",
            details={"request_id": request.request_id, "from": request.status, "to": new.value},
        )
    request.status = new.value
    request.last_updated = ts


def can_execute(request: LoanRequest) -> bool:
    return LoanRequestStatus.EXECUTED.value in REQUEST_TRANSITIONS[request.status]


def mark_executed(request: LoanRequest, ts: datetime) -> None:
    _transition(request, LoanRequestStatus.EXECUTED, ts)


def on_request_created(ctx: ApplyContext, event: LoanRequestCreated) -> ApplyStatus:
    request_id = str(event.request_id)
    if LoanRequestRepository(ctx.session).by_request_id(request_id) is not None:
        log.warning("Loan request %s already recorded; keeping the first row", request_id)
        return ApplyStatus.IGNORED
    ts = event.occurred_at
    inserted = insert_if_absent(
        ctx.session,
        LoanRequest(
            id=event.event_id,
            request_id=request_id,
            borrower_address=event.borrower,
            domain_token_id=str(event.domain_token_id),
            domain_name=ctx.domain_name(event.domain_token_id),
            requested_amount=event.requested_amount,
            proposed_interest_rate=event.proposed_interest_rate,
            ai_score=event.ai_score,
            campaign_deadline=from_unix(event.campaign_deadline),
            total_funded=0,
            contributor_count=0,
            status=LoanRequestStatus.ACTIVE.value,
            created_at=ts,
            last_updated=ts,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
        ),
    )
    return ApplyStatus.APPLIED if inserted else ApplyStatus.IGNORED


def on_request_funded(ctx: ApplyContext, event: LoanRequestFunded) -> ApplyStatus:
    repo = LoanRequestRepository(ctx.session)
    request_id = str(event.request_id)
    request = require(repo.by_request_id(request_id), "loan_request", request_id)
    if request.status not in (LoanRequestStatus.ACTIVE.value, LoanRequestStatus.FUNDED.value):
        raise InvalidTransitionError(
            f"loan request {request_id}: funding while {request.status}",
            details={"request_id": request_id, "status": request.status},
        )

    ts = event.occurred_at
    if not repo.has_contributor(request_id, event.contributor):
        request.contributor_count += 1
    ctx.session.add(
        LoanFunding(
            id=event.event_id,
            request_id=request_id,
            contributor_address=event.contributor,
            contribution_amount=event.contribution_amount,
            total_funded_after=event.total_funded,
            remaining_amount=event.remaining_amount,
            event_timestamp=ts,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
        )
    )
    # the contract reports the running total; trust it over our own sum
    request.total_funded = event.total_funded
    request.last_updated = ts
    if event.is_fully_funded and request.status == LoanRequestStatus.ACTIVE.value:
        _transition(request, LoanRequestStatus.FUNDED, ts)
    return ApplyStatus.APPLIED


def on_request_cancelled(ctx: ApplyContext, event: LoanRequestCancelled) -> ApplyStatus:
    request_id = str(event.request_id)
    request = require(LoanRequestRepository(ctx.session).by_request_id(request_id), "loan_request", request_id)
    if request.status == LoanRequestStatus.CANCELLED.value:
        return ApplyStatus.IGNORED
    _transition(request, LoanRequestStatus.CANCELLED, event.occurred_at)
    return ApplyStatus.APPLIED
