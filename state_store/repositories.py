"""Repository per aggregate.

Every lookup here is an indexed query on the column the caller filters by;
nothing loads a table and filters in Python. Repositories never commit: the
dispatcher and the liquidation monitor own transaction boundaries.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Type, TypeVar

from sqlalchemy import func, inspect
from sqlmodel import Session, SQLModel, select

from lending_domain.events import ChainEvent
from lending_domain.models import (OPEN_SCORING_STATUSES,
                                   OUTSTANDING_LOAN_STATUSES, Auction,
                                   BatchOperation, DomainAnalytics,
                                   IndexerCursor, LiquidationAttempt, Loan,
                                   LoanFunding, LoanRequest, LoanStatus,
                                   PaidScoreRequest, PaidScoreSubmission,
                                   Pool, PoolHistory, PoolHistoryType,
                                   ProcessedEvent, ScoringEvent, ScoringStatus,
                                   ServiceManager)

__all__ = [
    "insert_if_absent",
    "LoanRepository",
    "PoolRepository",
    "AuctionRepository",
    "ScoringRepository",
    "PaidScoringRepository",
    "LoanRequestRepository",
    "AnalyticsRepository",
    "LedgerRepository",
]

_Row = TypeVar("_Row", bound=SQLModel)


def insert_if_absent(session: Session, row: _Row) -> bool:
    """Add *row* unless a row with the same primary key exists.

    Event-log rows are keyed by ``<txHash>-<logIndex>`` so a replayed event
    maps onto the row it already produced; that case is a no-op, not an error.
    """
    model: Type[SQLModel] = type(row)
    identity = inspect(model).primary_key_from_instance(row)
    key = identity[0] if len(identity) == 1 else tuple(identity)
    if session.get(model, key) is not None:
        return False
    session.add(row)
    return True


class LoanRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, loan_id: str) -> Optional[Loan]:
        return self.session.get(Loan, loan_id)

    def add(self, loan: Loan) -> None:
        self.session.add(loan)

    def liquidation_candidates(self, max_attempts: Optional[int] = None) -> List[Loan]:
        """Active loans whose latch is still open, earliest deadline first.

        With *max_attempts*, loans that already have that many reverted
        executor attempts are left out.
        """
        stmt = (
            select(Loan)
            .where(Loan.status == LoanStatus.ACTIVE.value)
            .where(Loan.liquidation_attempted == False)  # noqa: E712
            .order_by(Loan.repayment_deadline)
        )
        if max_attempts is not None:
            stmt = stmt.where(Loan.loan_id.not_in(self._exhausted(max_attempts)))  # type: ignore[attr-defined]
        return list(self.session.exec(stmt).all())

    def reverted_attempts(self, loan_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(LiquidationAttempt)
            .where(LiquidationAttempt.loan_id == loan_id)
            .where(LiquidationAttempt.outcome == "reverted")
        )
        return self.session.exec(stmt).one()

    def exhausted_liquidations(self, max_attempts: int) -> List[Loan]:
        """Active loans the monitor stopped retrying after *max_attempts* reverts."""
        stmt = (
            select(Loan)
            .where(Loan.status == LoanStatus.ACTIVE.value)
            .where(Loan.loan_id.in_(self._exhausted(max_attempts)))  # type: ignore[attr-defined]
            .order_by(Loan.repayment_deadline)
        )
        return list(self.session.exec(stmt).all())

    @staticmethod
    def _exhausted(max_attempts: int):
        return (
            select(LiquidationAttempt.loan_id)
            .where(LiquidationAttempt.outcome == "reverted")
            .group_by(LiquidationAttempt.loan_id)
            .having(func.count() >= max_attempts)
        )

    def unconfirmed_liquidations(self, latched_before: datetime) -> List[Loan]:
        """Loans latched before *latched_before* whose executor call never confirmed."""
        stmt = (
            select(Loan)
            .where(Loan.status == LoanStatus.ACTIVE.value)
            .where(Loan.liquidation_attempted == True)  # noqa: E712
            .where(Loan.liquidation_tx_hash.is_(None))  # type: ignore[union-attr]
            .where(Loan.liquidation_timestamp <= latched_before)  # type: ignore[operator]
            .order_by(Loan.liquidation_timestamp)
        )
        return list(self.session.exec(stmt).all())

    def outstanding_for_pool(self, pool_id: str) -> List[Loan]:
        stmt = (
            select(Loan)
            .where(Loan.pool_id == pool_id)
            .where(Loan.status.in_([s.value for s in OUTSTANDING_LOAN_STATUSES]))  # type: ignore[attr-defined]
        )
        return list(self.session.exec(stmt).all())


class PoolRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, pool_id: str) -> Optional[Pool]:
        return self.session.get(Pool, pool_id)

    def add(self, pool: Pool) -> None:
        self.session.add(pool)

    def has_provider(self, pool_id: str, provider: str) -> bool:
        stmt = (
            select(PoolHistory.id)
            .where(PoolHistory.pool_id == pool_id)
            .where(PoolHistory.provider_address == provider)
            .where(
                PoolHistory.event_type.in_(  # type: ignore[attr-defined]
                    [PoolHistoryType.CREATED.value, PoolHistoryType.LIQUIDITY_ADDED.value]
                )
            )
            .limit(1)
        )
        return self.session.exec(stmt).first() is not None


class AuctionRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, auction_id: str) -> Optional[Auction]:
        return self.session.get(Auction, auction_id)

    def add(self, auction: Auction) -> None:
        self.session.add(auction)


class ScoringRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, event_id: str) -> Optional[ScoringEvent]:
        return self.session.get(ScoringEvent, event_id)

    def open_for_domain(self, domain_token_id: str) -> List[ScoringEvent]:
        """Rows for a domain still waiting on an on-chain score, newest first."""
        stmt = (
            select(ScoringEvent)
            .where(ScoringEvent.domain_token_id == domain_token_id)
            .where(ScoringEvent.status.in_([s.value for s in OPEN_SCORING_STATUSES]))  # type: ignore[attr-defined]
            .order_by(ScoringEvent.request_timestamp.desc(), ScoringEvent.id.desc())  # type: ignore[attr-defined]
        )
        return list(self.session.exec(stmt).all())

    def not_invalidated_for_domain(self, domain_token_id: str) -> List[ScoringEvent]:
        stmt = (
            select(ScoringEvent)
            .where(ScoringEvent.domain_token_id == domain_token_id)
            .where(ScoringEvent.status != ScoringStatus.INVALIDATED.value)
        )
        return list(self.session.exec(stmt).all())

    def get_batch(self, batch_id: str) -> Optional[BatchOperation]:
        return self.session.get(BatchOperation, batch_id)


class PaidScoringRepository:
    def __init__(self, session: Session):
        self.session = session

    def by_request_id(self, request_id: str) -> Optional[PaidScoreRequest]:
        stmt = select(PaidScoreRequest).where(PaidScoreRequest.request_id == request_id)
        return self.session.exec(stmt).first()

    def manager(self, address: str) -> Optional[ServiceManager]:
        return self.session.get(ServiceManager, address)

    def valid_submissions_for_domain(self, domain_token_id: str) -> List[PaidScoreSubmission]:
        stmt = (
            select(PaidScoreSubmission)
            .where(PaidScoreSubmission.domain_token_id == domain_token_id)
            .where(PaidScoreSubmission.invalidated == False)  # noqa: E712
        )
        return list(self.session.exec(stmt).all())


class LoanRequestRepository:
    def __init__(self, session: Session):
        self.session = session

    def by_request_id(self, request_id: str) -> Optional[LoanRequest]:
        stmt = select(LoanRequest).where(LoanRequest.request_id == request_id)
        return self.session.exec(stmt).first()

    def has_contributor(self, request_id: str, contributor: str) -> bool:
        stmt = (
            select(LoanFunding.id)
            .where(LoanFunding.request_id == request_id)
            .where(LoanFunding.contributor_address == contributor)
            .limit(1)
        )
        return self.session.exec(stmt).first() is not None


class AnalyticsRepository:
    def __init__(self, session: Session):
        self.session = session

    def get_or_create(self, domain_token_id: str, domain_name: str) -> DomainAnalytics:
        row = self.session.get(DomainAnalytics, domain_token_id)
        if row is None:
            row = DomainAnalytics(domain_token_id=domain_token_id, domain_name=domain_name)
            self.session.add(row)
        elif domain_name and not domain_name.startswith("domain-"):
            # a resolved name beats an earlier placeholder
            row.domain_name = domain_name
        return row


class LedgerRepository:
    """Replay guard and ordering cursor."""

    def __init__(self, session: Session, chain_id: int):
        self.session = session
        self.chain_id = chain_id

    def is_processed(self, event_id: str) -> bool:
        return self.session.get(ProcessedEvent, event_id) is not None

    def cursor(self) -> Optional[IndexerCursor]:
        return self.session.get(IndexerCursor, self.chain_id)

    def mark_processed(self, event: ChainEvent, processed_at: datetime) -> None:
        self.session.add(
            ProcessedEvent(
                id=event.event_id,
                event_name=event.name,
                block_number=event.block_number,
                log_index=event.log_index,
                processed_at=processed_at,
            )
        )
        cursor = self.cursor()
        if cursor is None:
            self.session.add(
                IndexerCursor(
                    chain_id=self.chain_id,
                    block_number=event.block_number,
                    log_index=event.log_index,
                    updated_at=processed_at,
                )
            )
        elif event.position > (cursor.block_number, cursor.log_index):
            cursor.block_number = event.block_number
            cursor.log_index = event.log_index
            cursor.updated_at = processed_at
