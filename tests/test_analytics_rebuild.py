import pytest
from sqlmodel import select

from event_dispatcher.analytics import rebuild_domain_analytics
from lending_domain.models import DomainAnalytics


def _analytics(sessions):
    with sessions() as s:
        return {
            row.domain_token_id: row.model_dump()
            for row in s.exec(select(DomainAnalytics)).all()
        }


@pytest.mark.anyio
async def test_rebuild_matches_incremental_rollup(dispatcher, sessions, chain):
    events = [
        chain.pool_created(liquidity=10_000),
        chain.event("ScoringRequested", domain_token_id=7, requester="0xr"),
        chain.event("ScoringRequested", domain_token_id=8, requester="0xr"),
    ]
    chain.next_block()
    events += [
        chain.event("ScoreSubmitted", domain_token_id=7, score=81, submitted_by="0xavs"),
        chain.event("BatchScoresSubmitted", domain_token_ids=[8, 9], scores=[40, 12]),
        chain.loan_created(loan_id=1, principal=2_000, token=7, pool_id=1),
    ]
    chain.next_block()
    events += [
        chain.loan_created(loan_id=2, principal=500, token=7, pool_id=1),
        chain.loan_created(loan_id=3, principal=300, token=8),
        chain.event("ScoreSubmitted", domain_token_id=7, score=85, submitted_by="0xavs"),
    ]
    chain.next_block()
    events += [
        chain.event("AuctionStarted", auction_id=1, loan_id=1, domain_token_id=7, starting_price=2_500),
        chain.event("ScoreInvalidated", domain_token_id=9, invalidated_by="0xadmin"),
    ]
    await dispatcher.apply_all(events)

    incremental = _analytics(sessions)
    assert incremental["7"]["total_loans_created"] == 2
    assert incremental["7"]["total_loan_volume"] == 2_500
    assert incremental["7"]["latest_ai_score"] == 85
    assert incremental["7"]["has_been_liquidated"] is True
    assert incremental["8"]["total_scoring_requests"] == 1
    assert incremental["9"]["latest_ai_score"] is None

    with sessions() as s:
        assert rebuild_domain_analytics(s) == 3
        s.commit()
    assert _analytics(sessions) == incremental


@pytest.mark.anyio
async def test_rebuild_on_empty_store(sessions):
    with sessions() as s:
        assert rebuild_domain_analytics(s) == 0
