import asyncio
from datetime import timedelta

import pytest
from sqlmodel import select

from common.audit import SystemEvent
from fakes import DAY, FakeExecutor
from integrations.backend.errors import ExecutorError
from lending_domain.models import LiquidationAttempt, Loan
from liquidation_monitor import LiquidationMonitor, LiquidationScheduler


@pytest.fixture
async def overdue_loan(dispatcher, sessions, chain):
    """A pooled loan due one day after creation; returns its repayment deadline."""
    await dispatcher.apply_all([chain.pool_created(liquidity=5_000)])
    chain.next_block()
    await dispatcher.apply_all([chain.loan_created(loan_id=1, principal=1_000, pool_id=1, due_in=DAY)])
    with sessions() as s:
        return s.get(Loan, "1").repayment_deadline


def _attempts(sessions):
    with sessions() as s:
        return s.exec(select(LiquidationAttempt).order_by(LiquidationAttempt.id)).all()


@pytest.mark.anyio
async def test_loan_is_liquidated_only_after_the_buffer(sessions, locks, overdue_loan):
    executor = FakeExecutor()
    monitor = LiquidationMonitor(sessions, executor, locks=locks)

    early = await monitor.sweep(now=overdue_loan + timedelta(hours=23))
    assert (early.scanned, early.skipped, early.liquidated) == (1, 1, 0)
    assert executor.calls == []

    late = await monitor.sweep(now=overdue_loan + timedelta(hours=25))
    assert late.liquidated == 1
    assert executor.calls == ["1"]

    with sessions() as s:
        loan = s.get(Loan, "1")
        assert loan.liquidation_attempted is True
        assert loan.liquidation_tx_hash == "0xliquidate"
        # the monitor never touches status or pool liquidity
        assert loan.status == "active"
    attempt = _attempts(sessions)[0]
    assert (attempt.outcome, attempt.tx_hash, attempt.auction_id) == ("submitted", "0xliquidate", "9")

    again = await monitor.sweep(now=overdue_loan + timedelta(hours=30))
    assert again.scanned == 0
    assert executor.calls == ["1"]


@pytest.mark.anyio
async def test_executor_timeout_reverts_the_latch(sessions, locks, overdue_loan):
    now = overdue_loan + timedelta(hours=25)
    slow = FakeExecutor(delay=1.0)
    monitor = LiquidationMonitor(sessions, slow, locks=locks, executor_timeout_s=0.05)

    summary = await monitor.sweep(now=now)
    assert summary.failed == 1
    with sessions() as s:
        loan = s.get(Loan, "1")
        assert loan.liquidation_attempted is False
        assert loan.liquidation_timestamp is None
        journal = s.exec(select(SystemEvent).where(SystemEvent.event_type == "liquidation_latch_reverted")).one()
        assert journal.details["loan_id"] == "1"
        assert journal.details["reverted"] is True

    retry = LiquidationMonitor(sessions, FakeExecutor(), locks=locks)
    assert (await retry.sweep(now=now + timedelta(minutes=1))).liquidated == 1
    assert [a.outcome for a in _attempts(sessions)] == ["reverted", "submitted"]


@pytest.mark.anyio
async def test_executor_error_reverts_the_latch(sessions, overdue_loan):
    monitor = LiquidationMonitor(sessions, FakeExecutor(ExecutorError("relay rejected", status_code=400)))
    summary = await monitor.sweep(now=overdue_loan + timedelta(days=2))
    assert summary.failed == 1
    with sessions() as s:
        assert s.get(Loan, "1").liquidation_attempted is False
    assert _attempts(sessions)[0].error == "relay rejected"


@pytest.mark.anyio
async def test_unknown_failure_keeps_the_latch(sessions, overdue_loan):
    now = overdue_loan + timedelta(days=2)
    executor = FakeExecutor(RuntimeError("connection dropped mid-flight"))
    monitor = LiquidationMonitor(sessions, executor, executor_timeout_s=5)

    summary = await monitor.sweep(now=now)
    assert summary.failed == 1
    assert _attempts(sessions)[0].outcome == "unknown"

    # no second executor call while the outcome is unknown
    await monitor.sweep(now=now + timedelta(hours=1))
    assert executor.calls == ["1"]
    stuck = monitor.unconfirmed_attempts(timedelta(seconds=5), now=now + timedelta(hours=1))
    assert [loan.loan_id for loan in stuck] == ["1"]


@pytest.mark.anyio
async def test_concurrent_sweeps_call_the_executor_once(sessions, overdue_loan):
    now = overdue_loan + timedelta(days=2)
    executor = FakeExecutor(delay=0.05)
    first = LiquidationMonitor(sessions, executor)
    second = LiquidationMonitor(sessions, executor)

    a, b = await asyncio.gather(first.sweep(now=now), second.sweep(now=now))
    assert a.liquidated + b.liquidated == 1
    assert executor.calls == ["1"]
    assert len(_attempts(sessions)) == 1


@pytest.mark.anyio
async def test_latch_is_single_writer(sessions, overdue_loan):
    monitor = LiquidationMonitor(sessions, FakeExecutor())
    now = overdue_loan + timedelta(days=2)
    assert monitor._latch("1", now) is not None
    assert monitor._latch("1", now) is None


@pytest.mark.anyio
async def test_chain_liquidation_removes_loan_from_candidates(dispatcher, sessions, chain, overdue_loan):
    chain.next_block()
    await dispatcher.apply(chain.event("CollateralLiquidated", loan_id=1, domain_token_id=7, borrower="0xborrower"))
    executor = FakeExecutor()
    summary = await LiquidationMonitor(sessions, executor).sweep(now=overdue_loan + timedelta(days=3))
    assert summary.scanned == 0
    assert executor.calls == []


@pytest.mark.anyio
async def test_scheduler_step_swallows_sweep_errors(sessions):
    class Exploding(LiquidationMonitor):
        async def sweep(self, now=None):
            raise RuntimeError("db gone")

    scheduler = LiquidationScheduler(Exploding(sessions, FakeExecutor()), interval_ms=1_000)
    assert await scheduler.step() is None


@pytest.mark.anyio
async def test_scheduler_registers_one_interval_job(sessions):
    scheduler = LiquidationScheduler(LiquidationMonitor(sessions, FakeExecutor()), interval_ms=30_000, initial_delay_ms=60_000)
    scheduler.start()
    try:
        job = scheduler.scheduler.get_job("liquidation-sweep")
        assert job is not None
        assert job.max_instances == 1
        assert job.trigger.interval == timedelta(seconds=30)
    finally:
        scheduler.shutdown()
    assert scheduler.scheduler is None


@pytest.mark.anyio
async def test_retries_stop_after_max_attempts(sessions, overdue_loan):
    now = overdue_loan + timedelta(days=2)
    executor = FakeExecutor(ExecutorError("relay rejected", status_code=400))
    monitor = LiquidationMonitor(sessions, executor, max_attempts=3)

    summaries = [await monitor.sweep(now=now + timedelta(minutes=i)) for i in range(3)]
    assert [s.failed for s in summaries] == [1, 1, 1]
    assert [s.abandoned for s in summaries] == [0, 0, 1]

    final = await monitor.sweep(now=now + timedelta(hours=1))
    assert final.scanned == 0
    assert executor.calls == ["1", "1", "1"]
    assert [loan.loan_id for loan in monitor.exhausted_attempts()] == ["1"]
    with sessions() as s:
        assert s.get(Loan, "1").liquidation_attempted is False
        journal = s.exec(select(SystemEvent).where(SystemEvent.event_type == "liquidation_abandoned")).one()
        assert journal.details == {"loan_id": "1", "attempts": 3, "last_error": "relay rejected"}


@pytest.mark.anyio
async def test_submitted_attempt_does_not_count_towards_the_cap(sessions, overdue_loan):
    monitor = LiquidationMonitor(sessions, FakeExecutor(), max_attempts=1)
    assert monitor.exhausted_attempts() == []
    assert (await monitor.sweep(now=overdue_loan + timedelta(days=2))).liquidated == 1
    assert monitor.exhausted_attempts() == []
