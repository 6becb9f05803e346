import pytest
from sqlmodel import select

from common.audit import SystemEvent
from event_dispatcher import ApplyStatus
from event_dispatcher.errors import OrderingError, UnknownAggregateError
from lending_domain.models import (Auction, AuctionHistory, DomainAnalytics,
                                   IndexerCursor, Loan, LoanHistory, Pool,
                                   PoolHistory, ProcessedEvent, ScoringEvent)

_TABLES = (
    Loan, LoanHistory, Pool, PoolHistory, Auction, AuctionHistory,
    ScoringEvent, DomainAnalytics, SystemEvent, ProcessedEvent, IndexerCursor,
)


def _snapshot(sessions):
    with sessions() as s:
        return {model.__tablename__: [row.model_dump() for row in s.exec(select(model)).all()] for model in _TABLES}


@pytest.mark.anyio
async def test_replaying_the_whole_list_changes_nothing(dispatcher, sessions, chain):
    events = [chain.pool_created(liquidity=5_000)]
    chain.next_block()
    events.append(chain.loan_created(loan_id=1, principal=1_000, pool_id=1))
    chain.next_block()
    orphan = chain.event("LoanRepaid", loan_id=42, borrower="0xb", repayment_amount=10)
    events.append(orphan)
    chain.next_block()
    events.append(chain.event("LoanRepaid", loan_id=1, borrower="0xborrower", repayment_amount=400))
    chain.next_block()
    events.append(chain.event("ScoringRequested", domain_token_id=8, requester="0xr"))
    events.append(chain.event("ScoreSubmitted", domain_token_id=8, score=70, submitted_by="0xop"))
    chain.next_block()
    events.append(chain.loan_created(loan_id=2, principal=500, pool_id=1, token=8))
    chain.next_block()
    events.append(
        chain.event("AuctionStarted", auction_id=4, loan_id=2, domain_token_id=8, starting_price=800)
    )
    events.append(chain.event("BidPlaced", auction_id=4, bidder="0xbidder", bid_amount=600))

    results = await dispatcher.apply_all(events)
    statuses = [status for _, status in results]
    assert statuses.count(ApplyStatus.REJECTED) == 1
    assert statuses.count(ApplyStatus.APPLIED) == len(events) - 1
    before = _snapshot(sessions)

    replayed = await dispatcher.apply_all(events)
    assert [status for _, status in replayed] == [ApplyStatus.DUPLICATE] * len(events)
    assert _snapshot(sessions) == before

    with sessions() as s:
        (journal,) = s.exec(select(SystemEvent).where(SystemEvent.event_type == "invariant_violation")).all()
        assert journal.details["kind"] == "unknown_aggregate"
        assert journal.details["event_id"] == orphan.event_id
        assert s.get(Auction, "4").current_price == 600
        assert s.get(DomainAnalytics, "8").latest_ai_score == 70


@pytest.mark.anyio
async def test_apply_all_sorts_by_chain_position(dispatcher, sessions, chain):
    pool = chain.pool_created()
    chain.next_block()
    loan = chain.loan_created(pool_id=1)

    results = await dispatcher.apply_all([loan, pool])
    assert [e.name for e, _ in results] == ["PoolCreated", "LoanCreated"]
    with sessions() as s:
        cursor = s.get(IndexerCursor, 97476)
        assert (cursor.block_number, cursor.log_index) == loan.position


@pytest.mark.anyio
async def test_event_behind_cursor_is_rejected_and_journaled(dispatcher, sessions, chain):
    early = chain.pool_created(pool_id=1)
    chain.next_block()
    late = chain.pool_created(pool_id=2)

    await dispatcher.apply(late)
    with pytest.raises(OrderingError):
        await dispatcher.apply(early)

    with sessions() as s:
        assert s.get(Pool, "1") is None
        journal = s.exec(select(SystemEvent).where(SystemEvent.event_type == "invariant_violation")).all()
        assert len(journal) == 1
        assert journal[0].details["kind"] == "ordering"
        assert journal[0].details["event_id"] == early.event_id

    assert await dispatcher.apply(early) is ApplyStatus.DUPLICATE
    with sessions() as s:
        assert len(s.exec(select(SystemEvent).where(SystemEvent.event_type == "invariant_violation")).all()) == 1


@pytest.mark.anyio
async def test_unknown_aggregate_rolls_back_and_batch_continues(dispatcher, sessions, chain):
    orphan = chain.event("LoanRepaid", loan_id=42, borrower="0xb", repayment_amount=10)
    chain.next_block()
    pool = chain.pool_created()

    with pytest.raises(UnknownAggregateError):
        await dispatcher.apply(orphan)

    results = await dispatcher.apply_all([pool])
    assert results[0][1] is ApplyStatus.APPLIED
    with sessions() as s:
        assert s.get(ProcessedEvent, orphan.event_id) is None
        assert s.get(ProcessedEvent, pool.event_id) is not None


@pytest.mark.anyio
async def test_rejected_event_inside_batch_is_reported(dispatcher, chain):
    first = chain.pool_created(pool_id=1)
    dup_pool = chain.pool_created(pool_id=1)
    other = chain.pool_created(pool_id=2)

    results = await dispatcher.apply_all([first, dup_pool, other])
    assert [status for _, status in results] == [
        ApplyStatus.APPLIED,
        ApplyStatus.REJECTED,
        ApplyStatus.APPLIED,
    ]


@pytest.mark.anyio
async def test_domain_names_resolved_once_per_batch(dispatcher, resolver, sessions, chain):
    events = [chain.loan_created(loan_id=1, token=7), chain.loan_created(loan_id=2, token=7)]
    await dispatcher.apply_all(events)
    assert resolver.calls == [7]
    with sessions() as s:
        assert s.get(Loan, "1").domain_name == "example.com"


@pytest.mark.anyio
async def test_unresolvable_token_gets_placeholder_name(dispatcher, sessions, chain):
    await dispatcher.apply(chain.loan_created(loan_id=3, token=555))
    with sessions() as s:
        assert s.get(Loan, "3").domain_name == "domain-555"


@pytest.mark.anyio
async def test_system_events_are_journaled(dispatcher, sessions, chain):
    pause = chain.event("EmergencyPauseToggled", is_paused=True, toggled_by="0xadmin")
    await dispatcher.apply(pause)
    with sessions() as s:
        row = s.get(SystemEvent, pause.event_id)
        assert row.event_type == "emergency_pause_toggled"
        assert (row.old_value, row.new_value) == ("false", "true")
