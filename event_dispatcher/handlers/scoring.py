"""AI oracle handlers: scoring requests, submissions and invalidations."""
from __future__ import annotations

import logging
from datetime import datetime
from functools import partial
from typing import Optional, Union

from common.datetime import from_unix
from event_dispatcher import analytics
from event_dispatcher.context import ApplyContext, ApplyStatus
from lending_domain.events import (BatchScoresSubmitted, BatchScoringRequested,
                                   ChainEvent, ScoreInvalidated,
                                   ScoreSubmitted, ScoringRequested)
from lending_domain.models import BatchOperation, ScoringEvent, ScoringStatus
from state_store.repositories import (PaidScoringRepository, ScoringRepository,
                                      insert_if_absent)

log = logging.getLogger(__name__)

_Timed = Union[ScoringRequested, ScoreSubmitted, BatchScoringRequested, BatchScoresSubmitted, ScoreInvalidated]


def _event_time(event: _Timed) -> datetime:
    # the oracle stamps its own timestamp; fall back to the block's
    return from_unix(event.timestamp) if event.timestamp else event.occurred_at


def _schedule(ctx: ApplyContext, scoring_id: str) -> None:
    if ctx.enricher is not None:
        ctx.defer(partial(ctx.enricher.enrich, scoring_id))


def _complete(row: ScoringEvent, score: int, event: ChainEvent, ts: datetime) -> None:
    row.status = ScoringStatus.COMPLETED.value
    row.ai_score = score
    row.completion_timestamp = ts
    row.error_message = None
    if row.submission_tx_hash is None:
        row.submission_tx_hash = event.transaction_hash
        row.submission_timestamp = ts
    if row.processing_duration_ms is None and row.backend_call_timestamp is not None:
        row.processing_duration_ms = max(int((ts - row.backend_call_timestamp).total_seconds() * 1000), 0)


def _direct_row(
    ctx: ApplyContext,
    row_id: str,
    token_id: int,
    score: int,
    event: ChainEvent,
    ts: datetime,
    submitted_by: Optional[str],
) -> ScoringEvent:
    return ScoringEvent(
        id=row_id,
        domain_token_id=str(token_id),
        domain_name=ctx.domain_name(token_id),
        requester_address=submitted_by or "",
        source="direct",
        status=ScoringStatus.COMPLETED.value,
        ai_score=score,
        submission_tx_hash=event.transaction_hash,
        request_timestamp=ts,
        submission_timestamp=ts,
        completion_timestamp=ts,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
    )


def on_scoring_requested(ctx: ApplyContext, event: ScoringRequested) -> ApplyStatus:
    ts = _event_time(event)
    token_id = str(event.domain_token_id)
    name = ctx.domain_name(event.domain_token_id)
    row = ScoringEvent(
        id=event.event_id,
        domain_token_id=token_id,
        domain_name=name,
        requester_address=event.requester,
        source="request",
        status=ScoringStatus.PENDING.value,
        request_timestamp=ts,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
    )
    if not insert_if_absent(ctx.session, row):
        return ApplyStatus.IGNORED
    analytics.on_scoring_request(ctx.session, token_id, name, ts)
    _schedule(ctx, row.id)
    return ApplyStatus.APPLIED


def on_score_submitted(ctx: ApplyContext, event: ScoreSubmitted) -> ApplyStatus:
    ts = _event_time(event)
    token_id = str(event.domain_token_id)
    open_rows = ScoringRepository(ctx.session).open_for_domain(token_id)
    for row in open_rows:
        _complete(row, event.score, event, ts)
    if not open_rows:
        ctx.session.add(
            _direct_row(ctx, event.event_id, event.domain_token_id, event.score, event, ts, event.submitted_by)
        )
    analytics.on_score(ctx.session, token_id, ctx.domain_name(event.domain_token_id), event.score, ts)
    log.info(
        "Score %d recorded for domain %s (%d open requests closed)",
        event.score, token_id, len(open_rows),
        extra={"domain_token_id": token_id},
    )
    return ApplyStatus.APPLIED


def on_batch_scoring_requested(ctx: ApplyContext, event: BatchScoringRequested) -> ApplyStatus:
    ts = _event_time(event)
    batch = BatchOperation(
        id=event.event_id,
        operation_type="batch_scoring_request",
        requester_address=event.requester,
        domain_token_ids=[str(t) for t in event.domain_token_ids],
        total_items=len(event.domain_token_ids),
        status="processing",
        created_at=ts,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
    )
    if not insert_if_absent(ctx.session, batch):
        return ApplyStatus.IGNORED

    for i, token in enumerate(event.domain_token_ids):
        name = ctx.domain_name(token)
        row = ScoringEvent(
            id=f"{event.event_id}-{i}",
            domain_token_id=str(token),
            domain_name=name,
            requester_address=event.requester,
            source="batch",
            batch_id=batch.id,
            status=ScoringStatus.BATCH_REQUESTED.value,
            request_timestamp=ts,
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
        )
        ctx.session.add(row)
        analytics.on_scoring_request(ctx.session, str(token), name, ts)
        _schedule(ctx, row.id)
    return ApplyStatus.APPLIED


def on_batch_scores_submitted(ctx: ApplyContext, event: BatchScoresSubmitted) -> ApplyStatus:
    ts = _event_time(event)
    count = len(event.domain_token_ids)
    batch = BatchOperation(
        id=event.event_id,
        operation_type="batch_score_submission",
        requester_address=event.submitted_by,
        domain_token_ids=[str(t) for t in event.domain_token_ids],
        total_items=count,
        completed_items=count,
        status="completed",
        created_at=ts,
        completed_at=ts,
        block_number=event.block_number,
        transaction_hash=event.transaction_hash,
    )
    if not insert_if_absent(ctx.session, batch):
        return ApplyStatus.IGNORED

    scoring = ScoringRepository(ctx.session)
    for i, (token, score) in enumerate(zip(event.domain_token_ids, event.scores)):
        open_rows = scoring.open_for_domain(str(token))
        if open_rows:
            _complete(open_rows[0], score, event, ts)
        else:
            ctx.session.add(_direct_row(ctx, f"{event.event_id}-{i}", token, score, event, ts, event.submitted_by))
        analytics.on_score(ctx.session, str(token), ctx.domain_name(token), score, ts)
    return ApplyStatus.APPLIED


def on_score_invalidated(ctx: ApplyContext, event: ScoreInvalidated) -> ApplyStatus:
    token_id = str(event.domain_token_id)
    rows = ScoringRepository(ctx.session).not_invalidated_for_domain(token_id)
    paid = PaidScoringRepository(ctx.session).valid_submissions_for_domain(token_id)
    if not rows and not paid:
        log.info("ScoreInvalidated for domain %s with no scoring rows", token_id)
        return ApplyStatus.IGNORED
    for row in rows:
        row.status = ScoringStatus.INVALIDATED.value
        row.error_message = event.reason or "invalidated"
    for submission in paid:
        submission.invalidated = True
    analytics.on_score_invalidated(ctx.session, token_id, ctx.domain_name(event.domain_token_id))
    return ApplyStatus.APPLIED
