"""Typed chain events consumed by the indexer.

Decoded logs arrive as JSON objects (Kafka records or NDJSON replay files)
with an ``event`` name, the log envelope and the event arguments, e.g.::

    {"event": "LoanRepaid", "blockNumber": 812, "logIndex": 3,
     "transactionHash": "0xab..", "blockTimestamp": 1718000000,
     "loanId": "7", "borrower": "0x..", "repaymentAmount": "400",
     "isFullyRepaid": false}

``decode_event`` turns such a payload into exactly one of the classes below,
discriminated on ``event``. Both camelCase and snake_case keys are accepted;
uint256 values may be JSON numbers or decimal strings.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import (Annotated, Any, ClassVar, List, Literal, Mapping, Optional,
                    Tuple, Union, get_args)

from pydantic import (BaseModel, ConfigDict, Field, TypeAdapter, ValidationError,
                      model_validator)
from pydantic.alias_generators import to_camel

from common.datetime import from_unix

__all__ = [
    "ChainEvent",
    "AnyChainEvent",
    "EventDecodeError",
    "decode_event",
    "EVENT_TYPES",
]


class EventDecodeError(ValueError):
    """Payload is not a recognised, well-formed chain event."""


class ChainEvent(BaseModel):
    """Log envelope shared by every event."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )

    # token ids whose domain names the handler needs
    resolves_names: ClassVar[bool] = False

    block_number: int = Field(ge=0)
    log_index: int = Field(ge=0)
    transaction_hash: str
    block_timestamp: int = Field(ge=0)
    contract_address: Optional[str] = None

    @property
    def event_id(self) -> str:
        return f"{self.transaction_hash}-{self.log_index}"

    @property
    def position(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)

    @property
    def name(self) -> str:
        return getattr(self, "event")

    @property
    def occurred_at(self) -> datetime:
        return from_unix(self.block_timestamp)

    def token_ids(self) -> List[int]:
        """Domain token ids this event refers to, in payload order."""
        ids = getattr(self, "domain_token_ids", None)
        if ids is not None:
            return list(ids)
        token = getattr(self, "domain_token_id", None)
        return [token] if token is not None else []


# ---------------------------------------------------------------------------
# AI oracle
# ---------------------------------------------------------------------------


class ScoringRequested(ChainEvent):
    event: Literal["ScoringRequested"]
    resolves_names: ClassVar[bool] = True
    domain_token_id: int = Field(ge=0)
    requester: str
    timestamp: Optional[int] = None


class ScoreSubmitted(ChainEvent):
    event: Literal["ScoreSubmitted"]
    resolves_names: ClassVar[bool] = True
    domain_token_id: int = Field(ge=0)
    score: int = Field(ge=0, le=100)
    submitted_by: str
    timestamp: Optional[int] = None


class BatchScoringRequested(ChainEvent):
    event: Literal["BatchScoringRequested"]
    resolves_names: ClassVar[bool] = True
    domain_token_ids: List[int] = Field(min_length=1)
    requester: str
    timestamp: Optional[int] = None


class BatchScoresSubmitted(ChainEvent):
    event: Literal["BatchScoresSubmitted"]
    resolves_names: ClassVar[bool] = True
    domain_token_ids: List[int] = Field(min_length=1)
    scores: List[int]
    submitted_by: Optional[str] = None
    timestamp: Optional[int] = None

    @model_validator(mode="after")
    def _scores_line_up(self) -> "BatchScoresSubmitted":
        if len(self.scores) != len(self.domain_token_ids):
            raise ValueError("scores and domainTokenIds differ in length")
        if any(not 0 <= s <= 100 for s in self.scores):
            raise ValueError("scores must be within 0..100")
        return self


class ScoreInvalidated(ChainEvent):
    event: Literal["ScoreInvalidated"]
    domain_token_id: int = Field(ge=0)
    invalidated_by: str
    reason: str = ""
    timestamp: Optional[int] = None


class BackendServiceUpdated(ChainEvent):
    event: Literal["BackendServiceUpdated"]
    old_service: str
    new_service: str
    updated_by: Optional[str] = None


class EmergencyPauseToggled(ChainEvent):
    event: Literal["EmergencyPauseToggled"]
    is_paused: bool
    toggled_by: Optional[str] = None


class PaidScoringRequested(ChainEvent):
    event: Literal["PaidScoringRequested"]
    resolves_names: ClassVar[bool] = True
    request_id: int = Field(ge=0)
    domain_token_id: int = Field(ge=0)
    requester: str
    payment_token: str
    payment_amount: int = Field(ge=0)
    timestamp: Optional[int] = None


class PaidScoreSubmitted(ChainEvent):
    event: Literal["PaidScoreSubmitted"]
    resolves_names: ClassVar[bool] = True
    request_id: int = Field(ge=0)
    domain_token_id: int = Field(ge=0)
    score: int = Field(ge=0, le=100)
    service_manager: str
    reward_recipient: str
    reward_amount: int = Field(ge=0)
    timestamp: Optional[int] = None


class PaymentTokenUpdated(ChainEvent):
    event: Literal["PaymentTokenUpdated"]
    old_token: str
    new_token: str
    updated_by: Optional[str] = None


class PaidScoringFeeUpdated(ChainEvent):
    event: Literal["PaidScoringFeeUpdated"]
    old_fee: int = Field(ge=0)
    new_fee: int = Field(ge=0)
    updated_by: Optional[str] = None


class ServiceManagerRegistered(ChainEvent):
    event: Literal["ServiceManagerRegistered"]
    service_manager: str


class ServiceManagerUnregistered(ChainEvent):
    event: Literal["ServiceManagerUnregistered"]
    service_manager: str


# ---------------------------------------------------------------------------
# Loan manager
# ---------------------------------------------------------------------------


class LoanCreated(ChainEvent):
    event: Literal["LoanCreated"]
    resolves_names: ClassVar[bool] = True
    loan_id: int = Field(ge=0)
    borrower: str
    domain_token_id: int = Field(ge=0)
    principal_amount: int = Field(ge=0)
    interest_rate: int = Field(ge=0)
    duration: int = Field(default=0, ge=0)
    total_owed: int = Field(ge=0)
    due_date: int = Field(ge=0)
    pool_id: int = Field(default=0, ge=0)
    request_id: int = Field(default=0, ge=0)
    ai_score: Optional[int] = None


class CollateralLocked(ChainEvent):
    event: Literal["CollateralLocked"]
    loan_id: int = Field(ge=0)
    domain_token_id: int = Field(ge=0)
    borrower: str


class CollateralReleased(ChainEvent):
    event: Literal["CollateralReleased"]
    loan_id: int = Field(ge=0)
    domain_token_id: int = Field(ge=0)
    borrower: str


class CollateralLiquidated(ChainEvent):
    event: Literal["CollateralLiquidated"]
    loan_id: int = Field(ge=0)
    domain_token_id: int = Field(ge=0)
    borrower: str
    loan_amount: Optional[int] = None
    auction_id: Optional[int] = None
    starting_price: Optional[int] = None


class LoanRepaid(ChainEvent):
    event: Literal["LoanRepaid"]
    loan_id: int = Field(ge=0)
    borrower: str
    repayment_amount: int = Field(ge=0)
    is_fully_repaid: bool = False


# ---------------------------------------------------------------------------
# Lending pools
# ---------------------------------------------------------------------------


class PoolCreated(ChainEvent):
    event: Literal["PoolCreated"]
    pool_id: int = Field(ge=0)
    creator: str
    initial_liquidity: int = Field(ge=0)
    min_ai_score: int = 0
    interest_rate: int = 0


class LiquidityAdded(ChainEvent):
    event: Literal["LiquidityAdded"]
    pool_id: int = Field(ge=0)
    provider: str
    amount: int = Field(ge=0)


class LiquidityRemoved(ChainEvent):
    event: Literal["LiquidityRemoved"]
    pool_id: int = Field(ge=0)
    provider: str
    amount: int = Field(ge=0)


class PoolUpdated(ChainEvent):
    event: Literal["PoolUpdated"]
    pool_id: int = Field(ge=0)
    updated_by: Optional[str] = None
    new_min_ai_score: int
    new_interest_rate: int


# ---------------------------------------------------------------------------
# Dutch auction
# ---------------------------------------------------------------------------


class AuctionStarted(ChainEvent):
    event: Literal["AuctionStarted"]
    resolves_names: ClassVar[bool] = True
    auction_id: int = Field(ge=0)
    loan_id: int = Field(ge=0)
    domain_token_id: int = Field(ge=0)
    starting_price: int = Field(ge=0)
    reserve_price: int = Field(default=0, ge=0)
    start_timestamp: Optional[int] = None
    end_timestamp: Optional[int] = None


class BidPlaced(ChainEvent):
    event: Literal["BidPlaced"]
    auction_id: int = Field(ge=0)
    bidder: str
    bid_amount: int = Field(ge=0)
    current_price: Optional[int] = None


class AuctionEnded(ChainEvent):
    event: Literal["AuctionEnded"]
    auction_id: int = Field(ge=0)
    winner: Optional[str] = None
    final_price: int = Field(ge=0)
    loan_amount: Optional[int] = None


class AuctionCancelled(ChainEvent):
    event: Literal["AuctionCancelled"]
    auction_id: int = Field(ge=0)
    reason: str = ""


# ---------------------------------------------------------------------------
# Crowdfunded loan requests
# ---------------------------------------------------------------------------


class LoanRequestCreated(ChainEvent):
    event: Literal["LoanRequestCreated"]
    resolves_names: ClassVar[bool] = True
    request_id: int = Field(ge=0)
    borrower: str
    domain_token_id: int = Field(ge=0)
    requested_amount: int = Field(ge=0)
    proposed_interest_rate: int = 0
    ai_score: Optional[int] = None
    campaign_deadline: int = Field(ge=0)


class LoanRequestFunded(ChainEvent):
    event: Literal["LoanRequestFunded"]
    request_id: int = Field(ge=0)
    contributor: str
    contribution_amount: int = Field(ge=0)
    total_funded: int = Field(ge=0)
    remaining_amount: Optional[int] = None
    is_fully_funded: bool = False


class LoanRequestCancelled(ChainEvent):
    event: Literal["LoanRequestCancelled"]
    request_id: int = Field(ge=0)
    borrower: Optional[str] = None
    total_refunded: Optional[int] = None
    reason: str = ""


EVENT_CLASSES = (
    ScoringRequested,
    ScoreSubmitted,
    BatchScoringRequested,
    BatchScoresSubmitted,
    ScoreInvalidated,
    BackendServiceUpdated,
    EmergencyPauseToggled,
    PaidScoringRequested,
    PaidScoreSubmitted,
    PaymentTokenUpdated,
    PaidScoringFeeUpdated,
    ServiceManagerRegistered,
    ServiceManagerUnregistered,
    LoanCreated,
    CollateralLocked,
    CollateralReleased,
    CollateralLiquidated,
    LoanRepaid,
    PoolCreated,
    LiquidityAdded,
    LiquidityRemoved,
    PoolUpdated,
    AuctionStarted,
    BidPlaced,
    AuctionEnded,
    AuctionCancelled,
    LoanRequestCreated,
    LoanRequestFunded,
    LoanRequestCancelled,
)

AnyChainEvent = Annotated[Union[EVENT_CLASSES], Field(discriminator="event")]

_ADAPTER: TypeAdapter = TypeAdapter(AnyChainEvent)

# event name -> class
EVENT_TYPES = {get_args(cls.model_fields["event"].annotation)[0]: cls for cls in EVENT_CLASSES}


def decode_event(payload: Union[Mapping[str, Any], bytes, str]) -> ChainEvent:
    """Decode one raw payload into its concrete event class."""
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise EventDecodeError(f"invalid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise EventDecodeError(f"expected an object, got {type(payload).__name__}")
    try:
        return _ADAPTER.validate_python(dict(payload))
    except ValidationError as exc:
        raise EventDecodeError(
            f"cannot decode {payload.get('event', '<missing event>')!r}: {exc.error_count()} error(s)"
        ) from exc
