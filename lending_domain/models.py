"""SQLModel tables for the lending indexer.

Aggregates (Loan, Pool, Auction, LoanRequest, DomainAnalytics) are keyed by
their on-chain identifier and overwritten in place. Every fact that arrives
from the chain is also appended to a history table keyed by
``<txHash>-<logIndex>`` so the aggregates can be audited and rebuilt.

Identifiers are stored as decimal strings; ``uint256`` amounts use the
``Uint256`` column type and surface as Python ``int``.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from common.datetime import utcnow
from common.sa_types import Uint256

__all__ = [
    "ScoringStatus",
    "LoanStatus",
    "AuctionStatus",
    "LoanRequestStatus",
    "ScoringEvent",
    "PaidScoreRequest",
    "PaidScoreSubmission",
    "ServiceManager",
    "Loan",
    "LoanHistory",
    "Pool",
    "PoolHistory",
    "Auction",
    "AuctionHistory",
    "LoanRequest",
    "LoanFunding",
    "DomainAnalytics",
    "BatchOperation",
    "ProcessedEvent",
    "IndexerCursor",
    "LiquidationAttempt",
    "LOAN_TRANSITIONS",
    "scoring_status_advances",
]


def _uint(default: Optional[int] = None, *, nullable: bool = False) -> Any:
    return Field(default=default, sa_column=Column(Uint256, nullable=nullable))


# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------


class ScoringStatus(str, Enum):
    PENDING = "pending"
    BATCH_REQUESTED = "batch_requested"
    BACKEND_CALLED = "backend_called"
    FAILED = "failed"
    AWAITING_AVS_OPERATOR = "awaiting_avs_operator"
    BACKEND_COMPLETED = "backend_completed"
    COMPLETED = "completed"
    INVALIDATED = "invalidated"


# Scoring rows only move forward through these ranks. INVALIDATED is set
# explicitly by ScoreInvalidated and nothing advances past it.
_SCORING_RANK: Dict[str, int] = {
    ScoringStatus.PENDING: 0,
    ScoringStatus.BATCH_REQUESTED: 0,
    ScoringStatus.BACKEND_CALLED: 1,
    ScoringStatus.FAILED: 2,
    ScoringStatus.AWAITING_AVS_OPERATOR: 3,
    ScoringStatus.BACKEND_COMPLETED: 3,
    ScoringStatus.COMPLETED: 4,
    ScoringStatus.INVALIDATED: 5,
}

OPEN_SCORING_STATUSES = (
    ScoringStatus.PENDING,
    ScoringStatus.BATCH_REQUESTED,
    ScoringStatus.BACKEND_CALLED,
    ScoringStatus.FAILED,
    ScoringStatus.AWAITING_AVS_OPERATOR,
    ScoringStatus.BACKEND_COMPLETED,
)


def scoring_status_advances(current: str, new: str) -> bool:
    """True when moving a scoring row from *current* to *new* is forward progress."""
    return _SCORING_RANK[ScoringStatus(new)] > _SCORING_RANK[ScoringStatus(current)]


class LoanStatus(str, Enum):
    ACTIVE = "active"
    REPAID = "repaid"
    AUCTIONING = "auctioning"
    SOLD = "sold"
    LIQUIDATED = "liquidated"


LOAN_TRANSITIONS: Dict[str, frozenset] = {
    LoanStatus.ACTIVE: frozenset({LoanStatus.REPAID, LoanStatus.AUCTIONING, LoanStatus.LIQUIDATED}),
    LoanStatus.AUCTIONING: frozenset({LoanStatus.SOLD, LoanStatus.LIQUIDATED}),
    LoanStatus.REPAID: frozenset(),
    LoanStatus.SOLD: frozenset(),
    LoanStatus.LIQUIDATED: frozenset(),
}

# Loans whose principal is still out of the pool.
OUTSTANDING_LOAN_STATUSES = (LoanStatus.ACTIVE, LoanStatus.AUCTIONING)


class AuctionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    CANCELLED = "cancelled"


TERMINAL_AUCTION_STATUSES = (AuctionStatus.ENDED, AuctionStatus.CANCELLED)


class LoanRequestStatus(str, Enum):
    ACTIVE = "active"
    FUNDED = "funded"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


class LoanHistoryType(str, Enum):
    CREATED_INSTANT = "created_instant"
    CREATED_CROWDFUNDED = "created_crowdfunded"
    COLLATERAL_LOCKED = "collateral_locked"
    COLLATERAL_RELEASED = "collateral_released"
    REPAID_PARTIAL = "repaid_partial"
    REPAID_FULL = "repaid_full"
    LIQUIDATED = "liquidated"


class PoolHistoryType(str, Enum):
    CREATED = "created"
    LIQUIDITY_ADDED = "liquidity_added"
    LIQUIDITY_REMOVED = "liquidity_removed"
    UPDATED = "updated"
    LOAN_DRAWN = "loan_drawn"
    LOAN_REPAID = "loan_repaid"
    AUCTION_PROCEEDS = "auction_proceeds"
    AUCTION_CANCEL_RESTORE = "auction_cancel_restore"


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class ScoringEvent(SQLModel, table=True):
    """One scoring request (or direct on-chain submission) for a domain."""

    __tablename__ = "scoring_event"

    id: str = Field(primary_key=True)
    domain_token_id: str = Field(index=True)
    domain_name: Optional[str] = None
    requester_address: str

    # request | batch | direct
    source: str = Field(default="request")
    batch_id: Optional[str] = Field(default=None, index=True)

    status: str = Field(default=ScoringStatus.PENDING, index=True)
    ai_score: Optional[int] = None
    confidence: Optional[int] = None
    reasoning: Optional[str] = None
    submission_tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0

    request_timestamp: datetime
    backend_call_timestamp: Optional[datetime] = None
    submission_timestamp: Optional[datetime] = None
    completion_timestamp: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None

    block_number: int
    transaction_hash: str

    __table_args__ = (
        Index("ix_scoring_event_domain_status", "domain_token_id", "status"),
    )


class BatchOperation(SQLModel, table=True):
    """Batch scoring request or batch submission seen on chain."""

    __tablename__ = "batch_operation"

    id: str = Field(primary_key=True)
    operation_type: str
    requester_address: Optional[str] = None
    domain_token_ids: List[str] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False, default=[])
    )
    total_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    # processing | completed | partial | failed
    status: str = Field(default="processing")
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    block_number: int
    transaction_hash: str


class PaidScoreRequest(SQLModel, table=True):
    """Scoring request paid for in the oracle's payment token."""

    __tablename__ = "paid_score_request"

    id: str = Field(primary_key=True)
    request_id: str = Field(index=True)
    domain_token_id: str = Field(index=True)
    domain_name: str
    requester_address: str
    payment_token: str
    payment_amount: int = _uint()
    # pending | completed
    status: str = Field(default="pending")
    reward_recipient: Optional[str] = None
    request_timestamp: datetime
    completion_timestamp: Optional[datetime] = None
    block_number: int
    transaction_hash: str

    __table_args__ = (UniqueConstraint("request_id", name="paid_score_request_request_id_uniq"),)


class PaidScoreSubmission(SQLModel, table=True):
    __tablename__ = "paid_score_submission"

    id: str = Field(primary_key=True)
    request_id: str = Field(index=True)
    domain_token_id: str = Field(index=True)
    domain_name: str
    score: int
    service_manager_address: str = Field(index=True)
    reward_recipient: str
    reward_amount: int = _uint()
    # set by ScoreInvalidated for the domain
    invalidated: bool = False
    submission_timestamp: datetime
    block_number: int
    transaction_hash: str


class ServiceManager(SQLModel, table=True):
    """AVS service manager allowed to answer paid scoring requests."""

    __tablename__ = "service_manager"

    manager_address: str = Field(primary_key=True)
    is_active: bool = True
    total_scores_submitted: int = 0
    total_rewards_earned: int = _uint(0)
    registered_at: datetime
    last_activity_at: datetime
    unregistered_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Loans
# ---------------------------------------------------------------------------


class Loan(SQLModel, table=True):
    """Loan aggregate. ``current_balance == original_amount - total_repaid`` always holds."""

    __tablename__ = "loan"

    loan_id: str = Field(primary_key=True)
    request_id: Optional[str] = None
    borrower_address: str = Field(index=True)
    domain_token_id: str = Field(index=True)
    domain_name: str

    original_amount: int = _uint()
    current_balance: int = _uint()
    # principal repaid; anything above the outstanding principal is interest_paid
    total_repaid: int = _uint(0)
    interest_paid: int = _uint(0)
    total_owed: int = _uint()
    interest_rate: int = 0
    ai_score: Optional[int] = None
    pool_id: Optional[str] = Field(default=None, index=True)

    status: str = Field(default=LoanStatus.ACTIVE)
    repayment_deadline: datetime

    # single-writer latch guarding liquidation attempts
    liquidation_attempted: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    liquidation_buffer_hours: int = 24
    liquidation_timestamp: Optional[datetime] = None
    liquidation_tx_hash: Optional[str] = None

    created_at: datetime
    last_updated: datetime
    block_number: int
    transaction_hash: str

    __table_args__ = (
        Index("ix_loan_liquidation_scan", "status", "liquidation_attempted"),
    )

    @property
    def liquidation_threshold(self) -> datetime:
        return self.repayment_deadline + timedelta(hours=self.liquidation_buffer_hours)


class LoanHistory(SQLModel, table=True):
    __tablename__ = "loan_history"

    id: str = Field(primary_key=True)
    loan_id: str = Field(index=True)
    event_type: str
    borrower_address: str
    domain_token_id: str = Field(index=True)
    domain_name: str
    amount: Optional[int] = _uint(nullable=True)
    remaining_balance: Optional[int] = _uint(nullable=True)
    interest_rate: Optional[int] = None
    pool_id: Optional[str] = None
    repayment_deadline: Optional[datetime] = None
    event_timestamp: datetime
    block_number: int
    transaction_hash: str


# ---------------------------------------------------------------------------
# Pools
# ---------------------------------------------------------------------------


class Pool(SQLModel, table=True):
    """Liquidity pool. ``0 <= available_liquidity <= total_liquidity``."""

    __tablename__ = "pool"

    pool_id: str = Field(primary_key=True)
    creator_address: str
    total_liquidity: int = _uint(0)
    available_liquidity: int = _uint(0)
    min_ai_score: int = 0
    interest_rate: int = 0
    participant_count: int = 1
    status: str = Field(default="active")
    created_at: datetime
    last_updated: datetime
    block_number: int
    transaction_hash: str


class PoolHistory(SQLModel, table=True):
    __tablename__ = "pool_history"

    id: str = Field(primary_key=True)
    pool_id: str = Field(index=True)
    event_type: str
    provider_address: Optional[str] = None
    loan_id: Optional[str] = None
    liquidity_amount: Optional[int] = _uint(nullable=True)
    total_after: int = _uint()
    available_after: int = _uint()
    min_ai_score: Optional[int] = None
    interest_rate: Optional[int] = None
    event_timestamp: datetime
    block_number: int
    transaction_hash: str

    __table_args__ = (
        Index("ix_pool_history_provider", "pool_id", "provider_address"),
    )


# ---------------------------------------------------------------------------
# Auctions
# ---------------------------------------------------------------------------


class Auction(SQLModel, table=True):
    """Dutch auction of liquidated collateral. Terminal once ended/cancelled."""

    __tablename__ = "auction"

    auction_id: str = Field(primary_key=True)
    loan_id: str = Field(index=True)
    domain_token_id: str = Field(index=True)
    domain_name: str
    borrower_address: Optional[str] = None
    current_bidder_address: Optional[str] = None
    ai_score: Optional[int] = None
    loan_amount: Optional[int] = _uint(nullable=True)
    starting_price: int = _uint()
    current_price: int = _uint()
    reserve_price: int = _uint(0)
    final_price: Optional[int] = _uint(nullable=True)
    status: str = Field(default=AuctionStatus.ACTIVE, index=True)
    recovery_rate: Optional[float] = None
    started_at: datetime
    ends_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    last_updated: datetime
    block_number: int
    transaction_hash: str


class AuctionHistory(SQLModel, table=True):
    __tablename__ = "auction_history"

    id: str = Field(primary_key=True)
    auction_id: str = Field(index=True)
    event_type: str
    bidder_address: Optional[str] = None
    price: Optional[int] = _uint(nullable=True)
    reason: Optional[str] = None
    event_timestamp: datetime
    block_number: int
    transaction_hash: str


# ---------------------------------------------------------------------------
# Crowdfunded loan requests
# ---------------------------------------------------------------------------


class LoanRequest(SQLModel, table=True):
    __tablename__ = "loan_request"

    id: str = Field(primary_key=True)
    request_id: str
    borrower_address: str
    domain_token_id: str = Field(index=True)
    domain_name: str
    requested_amount: int = _uint()
    proposed_interest_rate: int = 0
    ai_score: Optional[int] = None
    campaign_deadline: datetime
    total_funded: int = _uint(0)
    contributor_count: int = 0
    status: str = Field(default=LoanRequestStatus.ACTIVE)
    created_at: datetime
    last_updated: datetime
    block_number: int
    transaction_hash: str

    __table_args__ = (UniqueConstraint("request_id", name="loan_request_request_id_uniq"),)


class LoanFunding(SQLModel, table=True):
    __tablename__ = "loan_funding"

    id: str = Field(primary_key=True)
    request_id: str
    contributor_address: str
    contribution_amount: int = _uint()
    total_funded_after: int = _uint()
    remaining_amount: Optional[int] = _uint(nullable=True)
    event_timestamp: datetime
    block_number: int
    transaction_hash: str

    __table_args__ = (
        Index("ix_loan_funding_contributor", "request_id", "contributor_address"),
    )


# ---------------------------------------------------------------------------
# Derived analytics
# ---------------------------------------------------------------------------


class DomainAnalytics(SQLModel, table=True):
    """Per-domain rollup. Derived; ``rebuild_domain_analytics`` recomputes it."""

    __tablename__ = "domain_analytics"

    domain_token_id: str = Field(primary_key=True)
    domain_name: str
    latest_ai_score: Optional[int] = None
    total_scoring_requests: int = 0
    total_loans_created: int = 0
    total_loan_volume: int = _uint(0)
    has_been_liquidated: bool = False
    first_score_timestamp: Optional[datetime] = None
    last_activity_timestamp: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Indexer bookkeeping
# ---------------------------------------------------------------------------


class ProcessedEvent(SQLModel, table=True):
    """Replay guard: one row per chain event whose effects were committed."""

    __tablename__ = "processed_event"

    id: str = Field(primary_key=True)
    event_name: str
    block_number: int
    log_index: int
    processed_at: datetime = Field(default_factory=utcnow)

    __table_args__ = (
        Index("ix_processed_event_position", "block_number", "log_index"),
    )


class IndexerCursor(SQLModel, table=True):
    """Highest ``(block_number, log_index)`` applied for a chain."""

    __tablename__ = "indexer_cursor"

    chain_id: int = Field(primary_key=True)
    block_number: int
    log_index: int
    updated_at: datetime = Field(default_factory=utcnow)


class LiquidationAttempt(SQLModel, table=True):
    """Every executor call the liquidation monitor made, with its outcome."""

    __tablename__ = "liquidation_attempt"

    id: Optional[int] = Field(default=None, primary_key=True)
    loan_id: str = Field(index=True)
    started_at: datetime
    finished_at: Optional[datetime] = None
    # started | submitted | reverted | unknown
    outcome: str = Field(default="started")
    tx_hash: Optional[str] = None
    auction_id: Optional[str] = None
    error: Optional[str] = None
