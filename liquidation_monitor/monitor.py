"""Liquidation monitor: finds overdue loans and asks the executor to liquidate them.

At most one executor call is ever made per loan. Before calling out, the
monitor flips ``Loan.liquidation_attempted`` with a compare-and-swap UPDATE
that must hit exactly one row; a concurrent sweep (in this process or
another) loses the swap and skips the loan. When the executor reports that
nothing was submitted, an explicit compensating transaction clears the latch
so the next sweep can try again, up to ``max_attempts`` reverted attempts per
loan; past that the loan is journaled as ``liquidation_abandoned`` and left
for an operator. An executor outcome we cannot classify leaves the latch
set; ``unconfirmed_attempts`` lists those loans for manual reconciliation.

The monitor never credits pool liquidity; that happens when the resulting
auction ends or is cancelled.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from common.audit import log_event
from common.datetime import utcnow
from integrations.backend.errors import ExecutorError
from integrations.base import LiquidationExecutor, LiquidationRequest, LiquidationResult
from lending_domain.models import Loan, LiquidationAttempt, LoanStatus
from lending_observability.metrics import (liquidation_attempts_total,
                                           liquidation_sweep_latency_seconds,
                                           liquidation_sweeps_total,
                                           liquidation_unconfirmed_attempts)
from state_store.locks import AggregateLocks, loan_key
from state_store.repositories import LoanRepository

log = logging.getLogger(__name__)

SUBMITTED = "submitted"
REVERTED = "reverted"
UNKNOWN = "unknown"
LATCH_LOST = "latch_lost"
ABANDONED = "abandoned"


@dataclass
class SweepSummary:
    scanned: int = 0
    liquidated: int = 0
    skipped: int = 0
    failed: int = 0
    abandoned: int = 0
    unconfirmed: int = 0


@dataclass(frozen=True)
class _Candidate:
    loan_id: str
    domain_token_id: str
    borrower_address: str
    threshold: datetime


class LiquidationMonitor:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        executor: LiquidationExecutor,
        *,
        locks: Optional[AggregateLocks] = None,
        executor_timeout_s: float = 60.0,
        max_attempts: Optional[int] = 5,
    ):
        self._session_factory = session_factory
        self._executor = executor
        self._locks = locks or AggregateLocks()
        self._executor_timeout_s = executor_timeout_s
        # reverted attempts after which a loan is left for an operator
        self._max_attempts = max_attempts
        self._sweep_lock = asyncio.Lock()

    async def sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        """One pass over the active, unlatched loans. Sweeps never overlap in-process."""
        async with self._sweep_lock:
            now = now or utcnow()
            started = time.perf_counter()
            summary = SweepSummary()

            with self._session_factory() as session:
                candidates = [
                    _Candidate(loan.loan_id, loan.domain_token_id, loan.borrower_address, loan.liquidation_threshold)
                    for loan in LoanRepository(session).liquidation_candidates(self._max_attempts)
                ]
            summary.scanned = len(candidates)

            for candidate in candidates:
                if now < candidate.threshold:
                    summary.skipped += 1
                    continue
                outcome = await self._liquidate(candidate, now)
                if outcome == SUBMITTED:
                    summary.liquidated += 1
                elif outcome == LATCH_LOST:
                    summary.skipped += 1
                else:
                    summary.failed += 1
                    if outcome == ABANDONED:
                        summary.abandoned += 1

            stuck = self.unconfirmed_attempts(timedelta(seconds=self._executor_timeout_s), now=now)
            for loan in stuck:
                log.warning(
                    "Loan %s latched for liquidation at %s without a confirmed transaction",
                    loan.loan_id, loan.liquidation_timestamp,
                    extra={"loan_id": loan.loan_id},
                )
            summary.unconfirmed = len(stuck)
            liquidation_unconfirmed_attempts.set(len(stuck))

            liquidation_sweeps_total.inc()
            liquidation_sweep_latency_seconds.observe(time.perf_counter() - started)
            log.info(
                "Liquidation sweep: scanned=%d liquidated=%d skipped=%d failed=%d abandoned=%d unconfirmed=%d",
                summary.scanned, summary.liquidated, summary.skipped, summary.failed, summary.abandoned,
                summary.unconfirmed,
            )
            return summary

    def unconfirmed_attempts(self, older_than: timedelta = timedelta(0), *, now: Optional[datetime] = None) -> List[Loan]:
        """Active loans latched at least *older_than* ago with no liquidation tx hash."""
        cutoff = (now or utcnow()) - older_than
        with self._session_factory() as session:
            return LoanRepository(session).unconfirmed_liquidations(latched_before=cutoff)

    # ------------------------------------------------------------------
    # One loan
    # ------------------------------------------------------------------

    async def _liquidate(self, candidate: _Candidate, now: datetime) -> str:
        loan_id = candidate.loan_id
        async with self._locks.hold([loan_key(loan_id)]):
            attempt_id = self._latch(loan_id, now)
        if attempt_id is None:
            log.info("Loan %s was latched elsewhere; skipping", loan_id, extra={"loan_id": loan_id})
            return LATCH_LOST

        request = LiquidationRequest(
            loan_id=loan_id,
            domain_token_id=candidate.domain_token_id,
            borrower_address=candidate.borrower_address,
        )
        try:
            result = await asyncio.wait_for(self._executor.liquidate(request), self._executor_timeout_s)
        except (ExecutorError, asyncio.TimeoutError) as exc:
            error = str(exc) or f"executor timed out after {self._executor_timeout_s}s"
            log.warning("Liquidation of loan %s failed: %s", loan_id, error, extra={"loan_id": loan_id})
            async with self._locks.hold([loan_key(loan_id)]):
                abandoned = self._revert(loan_id, attempt_id, error)
            return ABANDONED if abandoned else REVERTED
        except Exception as exc:
            # the transaction may or may not exist on chain; keep the latch
            log.exception("Liquidation of loan %s ended in an unknown state", loan_id, extra={"loan_id": loan_id})
            self._finish_attempt(attempt_id, UNKNOWN, error=repr(exc))
            liquidation_attempts_total.labels(outcome=UNKNOWN).inc()
            return UNKNOWN

        async with self._locks.hold([loan_key(loan_id)]):
            self._confirm(loan_id, attempt_id, result)
        liquidation_attempts_total.labels(outcome=SUBMITTED).inc()
        log.info(
            "Liquidation submitted for loan %s: tx %s", loan_id, result.get("tx_hash"),
            extra={"loan_id": loan_id},
        )
        return SUBMITTED

    def _latch(self, loan_id: str, now: datetime) -> Optional[int]:
        with self._session_factory() as session:
            stmt = (
                update(Loan)
                .where(Loan.loan_id == loan_id)
                .where(Loan.liquidation_attempted == False)  # noqa: E712
                .where(Loan.status == LoanStatus.ACTIVE.value)
                .values(liquidation_attempted=True, liquidation_timestamp=now)
            )
            if session.execute(stmt).rowcount != 1:
                session.rollback()
                return None
            attempt = LiquidationAttempt(loan_id=loan_id, started_at=now, outcome="started")
            session.add(attempt)
            session.commit()
            return attempt.id

    def _confirm(self, loan_id: str, attempt_id: int, result: LiquidationResult) -> None:
        tx_hash = result.get("tx_hash")
        with self._session_factory() as session:
            session.execute(
                update(Loan)
                .where(Loan.loan_id == loan_id)
                .where(Loan.liquidation_tx_hash.is_(None))  # type: ignore[union-attr]
                .values(liquidation_tx_hash=tx_hash)
            )
            attempt = session.get(LiquidationAttempt, attempt_id)
            if attempt is not None:
                attempt.outcome = SUBMITTED
                attempt.tx_hash = tx_hash
                attempt.auction_id = result.get("auction_id")
                attempt.finished_at = utcnow()
            session.commit()

    def _revert(self, loan_id: str, attempt_id: int, error: str) -> bool:
        """Compensating transaction: reopen the latch so a later sweep may retry.

        Returns True when this revert used up the loan's last attempt.
        """
        try:
            with self._session_factory() as session:
                reverted = session.execute(
                    update(Loan)
                    .where(Loan.loan_id == loan_id)
                    .where(Loan.liquidation_attempted == True)  # noqa: E712
                    .where(Loan.liquidation_tx_hash.is_(None))  # type: ignore[union-attr]
                    .where(Loan.status == LoanStatus.ACTIVE.value)
                    .values(liquidation_attempted=False, liquidation_timestamp=None)
                ).rowcount
                attempt = session.get(LiquidationAttempt, attempt_id)
                if attempt is not None:
                    attempt.outcome = REVERTED
                    attempt.error = error
                    attempt.finished_at = utcnow()
                log_event(
                    session,
                    event_type="liquidation_latch_reverted",
                    old_value="true",
                    new_value="false" if reverted else "true",
                    details={"loan_id": loan_id, "attempt_id": attempt_id, "error": error, "reverted": bool(reverted)},
                )
                attempts = LoanRepository(session).reverted_attempts(loan_id)
                abandoned = bool(reverted) and self._max_attempts is not None and attempts >= self._max_attempts
                if abandoned:
                    log_event(
                        session,
                        event_type="liquidation_abandoned",
                        new_value=str(attempts),
                        details={"loan_id": loan_id, "attempts": attempts, "last_error": error},
                    )
                session.commit()
        except SQLAlchemyError:
            liquidation_attempts_total.labels(outcome="compensation_failed").inc()
            log.critical(
                "Could not revert liquidation latch for loan %s; reconcile manually",
                loan_id, exc_info=True, extra={"loan_id": loan_id},
            )
            return False
        liquidation_attempts_total.labels(outcome=REVERTED).inc()
        if not reverted:
            # the chain moved the loan on while we were waiting (e.g. CollateralLiquidated)
            log.info("Latch for loan %s left in place; loan no longer active", loan_id, extra={"loan_id": loan_id})
        elif abandoned:
            log.error(
                "Giving up on liquidating loan %s after %d failed attempts", loan_id, attempts,
                extra={"loan_id": loan_id},
            )
        return abandoned

    def exhausted_attempts(self) -> List[Loan]:
        """Active loans no longer retried because they hit the attempt cap."""
        if self._max_attempts is None:
            return []
        with self._session_factory() as session:
            return LoanRepository(session).exhausted_liquidations(self._max_attempts)

    def _finish_attempt(self, attempt_id: int, outcome: str, *, error: Optional[str] = None) -> None:
        with self._session_factory() as session:
            attempt = session.get(LiquidationAttempt, attempt_id)
            if attempt is not None:
                attempt.outcome = outcome
                attempt.error = error
                attempt.finished_at = utcnow()
                session.commit()
