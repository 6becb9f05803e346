import asyncio

import pytest
from sqlmodel import select

from event_dispatcher import ApplyStatus, EventDispatcher, HandlerSettings
from fakes import FakeScorer, FakeSubmitter
from integrations.backend.errors import BackendError
from integrations.base import DomainScore
from lending_domain.models import (BatchOperation, DomainAnalytics,
                                   ScoringEvent)


def _dispatcher(sessions, engine, resolver, locks, scorer, submitter=None, *, auto_submit=False):
    return EventDispatcher(
        sessions,
        engine,
        resolver=resolver,
        scorer=scorer,
        submitter=submitter,
        locks=locks,
        settings=HandlerSettings(),
        auto_submit=auto_submit,
    )


def _rows(sessions, token="7"):
    with sessions() as s:
        return s.exec(
            select(ScoringEvent).where(ScoringEvent.domain_token_id == token).order_by(ScoringEvent.id)
        ).all()


@pytest.mark.anyio
async def test_request_without_scorer_stays_pending(dispatcher, sessions, chain):
    await dispatcher.apply(chain.event("ScoringRequested", domain_token_id=7, requester="0xr"))
    await dispatcher.drain()
    (row,) = _rows(sessions)
    assert (row.status, row.domain_name, row.source) == ("pending", "example.com", "request")
    with sessions() as s:
        assert s.get(DomainAnalytics, "7").total_scoring_requests == 1


@pytest.mark.anyio
async def test_scored_request_awaits_operator(sessions, engine, resolver, locks, chain):
    scorer = FakeScorer()
    dispatcher = _dispatcher(sessions, engine, resolver, locks, scorer)
    await dispatcher.apply(chain.event("ScoringRequested", domain_token_id=7, requester="0xr"))
    await dispatcher.drain()

    (row,) = _rows(sessions)
    assert scorer.calls == ["example.com"]
    assert row.status == "awaiting_avs_operator"
    assert (row.ai_score, row.confidence, row.reasoning) == (82, 91, "strong brand")
    assert row.backend_call_timestamp is not None


@pytest.mark.anyio
async def test_fallback_score_marks_row_failed_until_chain_scores_it(sessions, engine, resolver, locks, chain):
    fallback = DomainScore(score=50, confidence=20, reasoning="fallback", is_fallback=True, error="bridge down")
    dispatcher = _dispatcher(sessions, engine, resolver, locks, FakeScorer(fallback))
    await dispatcher.apply(chain.event("ScoringRequested", domain_token_id=7, requester="0xr"))
    await dispatcher.drain()
    (row,) = _rows(sessions)
    assert (row.status, row.error_message) == ("failed", "bridge down")

    chain.next_block()
    await dispatcher.apply(chain.event("ScoreSubmitted", domain_token_id=7, score=61, submitted_by="0xavs"))
    (row,) = _rows(sessions)
    assert (row.status, row.ai_score, row.error_message) == ("completed", 61, None)


@pytest.mark.anyio
async def test_auto_submit_failure_keeps_backend_result_without_tx(sessions, engine, resolver, locks, chain):
    submitter = FakeSubmitter(error=BackendError("contract call reverted", status_code=500))
    dispatcher = _dispatcher(sessions, engine, resolver, locks, FakeScorer(), submitter, auto_submit=True)
    await dispatcher.apply(chain.event("ScoringRequested", domain_token_id=7, requester="0xr"))
    await dispatcher.drain()

    (row,) = _rows(sessions)
    assert submitter.calls == [7]
    assert row.status == "backend_completed"
    assert row.submission_tx_hash is None
    assert row.error_message == "contract call reverted"


@pytest.mark.anyio
async def test_auto_submit_records_transaction(sessions, engine, resolver, locks, chain):
    dispatcher = _dispatcher(sessions, engine, resolver, locks, FakeScorer(), FakeSubmitter("0xfeed"), auto_submit=True)
    await dispatcher.apply(chain.event("ScoringRequested", domain_token_id=7, requester="0xr"))
    await dispatcher.drain()
    (row,) = _rows(sessions)
    assert (row.status, row.submission_tx_hash) == ("backend_completed", "0xfeed")


@pytest.mark.anyio
async def test_on_chain_score_during_backend_call_is_not_regressed(sessions, engine, resolver, locks, chain):
    gate = asyncio.Event()
    scorer = FakeScorer(gate=gate)
    dispatcher = _dispatcher(sessions, engine, resolver, locks, scorer)
    await dispatcher.apply(chain.event("ScoringRequested", domain_token_id=7, requester="0xr"))
    for _ in range(20):
        if scorer.calls:
            break
        await asyncio.sleep(0)
    assert _rows(sessions)[0].status == "backend_called"

    chain.next_block()
    submitted = chain.event("ScoreSubmitted", domain_token_id=7, score=44, submitted_by="0xavs")
    await dispatcher.apply(submitted)
    gate.set()
    await dispatcher.drain()

    (row,) = _rows(sessions)
    assert (row.status, row.ai_score) == ("completed", 44)
    assert row.submission_tx_hash == submitted.transaction_hash


@pytest.mark.anyio
async def test_direct_score_without_request_gets_its_own_row(dispatcher, sessions, chain):
    event = chain.event("ScoreSubmitted", domain_token_id=8, score=77, submitted_by="0xavs")
    await dispatcher.apply(event)
    (row,) = _rows(sessions, "8")
    assert (row.id, row.source, row.status, row.ai_score) == (event.event_id, "direct", "completed", 77)
    with sessions() as s:
        analytics = s.get(DomainAnalytics, "8")
        assert analytics.latest_ai_score == 77
        assert analytics.total_scoring_requests == 0


@pytest.mark.anyio
async def test_batch_request_counts_items(sessions, engine, resolver, locks, chain):
    dispatcher = _dispatcher(sessions, engine, resolver, locks, FakeScorer())
    batch = chain.event("BatchScoringRequested", domain_token_ids=[7, 8], requester="0xr")
    await dispatcher.apply(batch)
    await dispatcher.drain()

    with sessions() as s:
        op = s.get(BatchOperation, batch.event_id)
        assert (op.operation_type, op.total_items, op.completed_items, op.status) == (
            "batch_scoring_request", 2, 2, "completed",
        )
        assert op.completed_at is not None
    assert [r.id for r in _rows(sessions, "8")] == [f"{batch.event_id}-1"]


@pytest.mark.anyio
async def test_batch_with_fallbacks_fails(sessions, engine, resolver, locks, chain):
    fallback = DomainScore(score=50, confidence=20, reasoning="fallback", is_fallback=True)
    dispatcher = _dispatcher(sessions, engine, resolver, locks, FakeScorer(fallback))
    batch = chain.event("BatchScoringRequested", domain_token_ids=[7, 8], requester="0xr")
    await dispatcher.apply(batch)
    await dispatcher.drain()
    with sessions() as s:
        op = s.get(BatchOperation, batch.event_id)
        assert (op.failed_items, op.status) == (2, "failed")


@pytest.mark.anyio
async def test_batch_scores_complete_latest_open_rows(dispatcher, sessions, chain):
    await dispatcher.apply(chain.event("ScoringRequested", domain_token_id=7, requester="0xr"))
    chain.next_block()
    submitted = chain.event("BatchScoresSubmitted", domain_token_ids=[7, 8], scores=[90, 35], submitted_by="0xavs")
    assert await dispatcher.apply(submitted) is ApplyStatus.APPLIED

    (requested,) = _rows(sessions, "7")
    assert (requested.status, requested.ai_score) == ("completed", 90)
    (direct,) = _rows(sessions, "8")
    assert (direct.id, direct.source, direct.ai_score) == (f"{submitted.event_id}-1", "direct", 35)
    with sessions() as s:
        op = s.get(BatchOperation, submitted.event_id)
        assert (op.operation_type, op.status, op.completed_items) == ("batch_score_submission", "completed", 2)


@pytest.mark.anyio
async def test_invalidation_clears_latest_score(dispatcher, sessions, chain):
    await dispatcher.apply(chain.event("ScoreSubmitted", domain_token_id=7, score=70, submitted_by="0xavs"))
    chain.next_block()
    invalidate = chain.event("ScoreInvalidated", domain_token_id=7, invalidated_by="0xadmin", reason="manipulated")
    assert await dispatcher.apply(invalidate) is ApplyStatus.APPLIED

    (row,) = _rows(sessions)
    assert (row.status, row.error_message) == ("invalidated", "manipulated")
    with sessions() as s:
        assert s.get(DomainAnalytics, "7").latest_ai_score is None

    chain.next_block()
    nothing = chain.event("ScoreInvalidated", domain_token_id=8, invalidated_by="0xadmin")
    assert await dispatcher.apply(nothing) is ApplyStatus.IGNORED
