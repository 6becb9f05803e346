import pytest
from sqlmodel import select

from common.audit import SystemEvent
from event_dispatcher import ApplyStatus
from event_dispatcher.errors import LiquidityInvariantError
from event_dispatcher.ledger import conservation_gap
from lending_domain.models import Pool, PoolHistory


def _gap(sessions, pool_id="1"):
    with sessions() as s:
        return conservation_gap(s, s.get(Pool, pool_id))


@pytest.mark.anyio
async def test_liquidity_moves_keep_pool_conserved(dispatcher, sessions, chain):
    events = [chain.pool_created(liquidity=1_000)]
    chain.next_block()
    events.append(chain.event("LiquidityAdded", pool_id=1, provider="0xlp2", amount=500))
    events.append(chain.event("LiquidityAdded", pool_id=1, provider="0xpoolcreator", amount=250))
    chain.next_block()
    events.append(chain.loan_created(loan_id=1, principal=600, pool_id=1))
    events.append(chain.loan_created(loan_id=2, principal=300, pool_id=1, token=8))
    chain.next_block()
    events.append(chain.event("LoanRepaid", loan_id=1, borrower="0xborrower", repayment_amount=660, is_fully_repaid=True))
    events.append(chain.event("LiquidityRemoved", pool_id=1, provider="0xlp2", amount=400))

    results = await dispatcher.apply_all(events)
    assert all(status is ApplyStatus.APPLIED for _, status in results)

    with sessions() as s:
        pool = s.get(Pool, "1")
        # 1000 + 500 + 250 - 600 - 300 + 660 - 400
        assert pool.available_liquidity == 1_110
        assert pool.total_liquidity == 1_000 + 500 + 250 + 60 - 400
        assert pool.participant_count == 2
        history = s.exec(select(PoolHistory).where(PoolHistory.pool_id == "1")).all()
        assert len(history) == len(events)
        assert all(0 <= h.available_after <= h.total_after for h in history)
    assert _gap(sessions) == 0


@pytest.mark.anyio
async def test_removing_more_than_available_is_rejected_and_journaled(dispatcher, sessions, chain):
    await dispatcher.apply(chain.pool_created(liquidity=1_000))
    chain.next_block()
    await dispatcher.apply(chain.loan_created(principal=800, pool_id=1))
    chain.next_block()

    drain = chain.event("LiquidityRemoved", pool_id=1, provider="0xpoolcreator", amount=300)
    with pytest.raises(LiquidityInvariantError):
        await dispatcher.apply(drain)

    with sessions() as s:
        pool = s.get(Pool, "1")
        assert (pool.available_liquidity, pool.total_liquidity) == (200, 1_000)
        journal = s.exec(select(SystemEvent).where(SystemEvent.event_type == "invariant_violation")).one()
        assert journal.details["kind"] == "liquidity"
        assert journal.details["pool_id"] == "1"
        assert journal.details["available_before"] == "200"
    assert _gap(sessions) == 0


@pytest.mark.anyio
async def test_pool_update_changes_terms_only(dispatcher, sessions, chain):
    await dispatcher.apply(chain.pool_created(liquidity=1_000))
    chain.next_block()
    await dispatcher.apply(
        chain.event("PoolUpdated", pool_id=1, updated_by="0xadmin", new_min_ai_score=70, new_interest_rate=650)
    )
    with sessions() as s:
        pool = s.get(Pool, "1")
        assert (pool.min_ai_score, pool.interest_rate) == (70, 650)
        assert (pool.available_liquidity, pool.total_liquidity) == (1_000, 1_000)


@pytest.mark.anyio
async def test_liquidity_for_unknown_pool_is_rejected(dispatcher, chain):
    results = await dispatcher.apply_all([chain.event("LiquidityAdded", pool_id=9, provider="0xlp", amount=1)])
    assert results[0][1] is ApplyStatus.REJECTED
