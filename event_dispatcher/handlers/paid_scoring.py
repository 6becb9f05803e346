"""Paid scoring: requests paid in the oracle's payment token, answered by AVS service managers."""
from __future__ import annotations

import logging

from common.datetime import from_unix
from event_dispatcher import analytics
from event_dispatcher.context import ApplyContext, ApplyStatus
from lending_domain.events import (PaidScoreSubmitted, PaidScoringRequested,
                                   ServiceManagerRegistered,
                                   ServiceManagerUnregistered)
from lending_domain.models import (PaidScoreRequest, PaidScoreSubmission,
                                   ServiceManager)
from state_store.repositories import PaidScoringRepository, insert_if_absent

log = logging.getLogger(__name__)


def on_paid_scoring_requested(ctx: ApplyContext, event: PaidScoringRequested) -> ApplyStatus:
    request_id = str(event.request_id)
    if PaidScoringRepository(ctx.session).by_request_id(request_id) is not None:
        log.warning("Paid scoring request %s already recorded; keeping the first row", request_id)
        return ApplyStatus.IGNORED
    inserted = insert_if_absent(
        ctx.session,
        PaidScoreRequest(
            id=event.event_id,
            request_id=request_id,
            domain_token_id=str(event.domain_token_id),
            domain_name=ctx.domain_name(event.domain_token_id),
            requester_address=event.requester,
            payment_token=event.payment_token,
            payment_amount=event.payment_amount,
            status="pending",
            request_timestamp=from_unix(event.timestamp) if event.timestamp else event.occurred_at,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
        ),
    )
    return ApplyStatus.APPLIED if inserted else ApplyStatus.IGNORED


def on_paid_score_submitted(ctx: ApplyContext, event: PaidScoreSubmitted) -> ApplyStatus:
    session = ctx.session
    repo = PaidScoringRepository(session)
    request_id = str(event.request_id)
    token_id = str(event.domain_token_id)
    name = ctx.domain_name(event.domain_token_id)
    ts = from_unix(event.timestamp) if event.timestamp else event.occurred_at

    inserted = insert_if_absent(
        session,
        PaidScoreSubmission(
            id=event.event_id,
            request_id=request_id,
            domain_token_id=token_id,
            domain_name=name,
            score=event.score,
            service_manager_address=event.service_manager,
            reward_recipient=event.reward_recipient,
            reward_amount=event.reward_amount,
            submission_timestamp=ts,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
        ),
    )
    if not inserted:
        return ApplyStatus.IGNORED

    request = repo.by_request_id(request_id)
    if request is None:
        log.warning("Paid score for unknown paid request %s", request_id)
    elif request.status == "pending":
        request.status = "completed"
        request.reward_recipient = event.reward_recipient
        request.completion_timestamp = ts
    else:
        log.warning("Paid request %s already %s; keeping its first completion", request_id, request.status)

    manager = repo.manager(event.service_manager)
    if manager is None:
        log.warning("Paid score from unregistered service manager %s", event.service_manager)
    else:
        manager.total_scores_submitted += 1
        manager.total_rewards_earned += event.reward_amount
        manager.last_activity_at = ts

    analytics.on_score(session, token_id, name, event.score, ts)
    log.info(
        "Paid score %d recorded for domain %s (request %s)", event.score, token_id, request_id,
        extra={"domain_token_id": token_id},
    )
    return ApplyStatus.APPLIED


def on_service_manager_registered(ctx: ApplyContext, event: ServiceManagerRegistered) -> ApplyStatus:
    ts = event.occurred_at
    manager = PaidScoringRepository(ctx.session).manager(event.service_manager)
    if manager is None:
        ctx.session.add(
            ServiceManager(
                manager_address=event.service_manager,
                is_active=True,
                total_scores_submitted=0,
                total_rewards_earned=0,
                registered_at=ts,
                last_activity_at=ts,
            )
        )
        log.info("Service manager %s registered", event.service_manager)
    else:
        manager.is_active = True
        manager.unregistered_at = None
        manager.last_activity_at = ts
        log.info("Service manager %s re-activated", event.service_manager)
    return ApplyStatus.APPLIED


def on_service_manager_unregistered(ctx: ApplyContext, event: ServiceManagerUnregistered) -> ApplyStatus:
    manager = PaidScoringRepository(ctx.session).manager(event.service_manager)
    if manager is None:
        log.warning("Unregistering unknown service manager %s", event.service_manager)
        return ApplyStatus.IGNORED
    manager.is_active = False
    manager.unregistered_at = event.occurred_at
    manager.last_activity_at = event.occurred_at
    return ApplyStatus.APPLIED
