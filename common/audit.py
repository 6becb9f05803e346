"""Append-only audit journal for the indexer.

Administrative chain events (backend service rotation, emergency pause),
invariant violations and liquidation latch reverts all land in the
``system_event`` table so operators can reconstruct what the indexer saw and
why it refused to apply something.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, String
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel

from common.datetime import utcnow

__all__ = [
    "SystemEvent",
    "log_event",
    "log_event_now",
]


class SystemEvent(SQLModel, table=True):
    """Immutable audit row. Chain-sourced rows reuse the ``<txHash>-<logIndex>`` key."""

    __tablename__ = "system_event"

    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True)

    # e.g. "backend_service_updated", "invariant_violation", "liquidation_latch_reverted"
    event_type: str = Field(sa_column=Column(String, nullable=False, index=True))

    contract_address: Optional[str] = None
    triggered_by: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None

    # JSON payload with additional structured context (schema per event_type)
    details: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False, default={})
    )

    event_timestamp: datetime = Field(default_factory=utcnow, index=True)
    block_number: Optional[int] = None
    transaction_hash: Optional[str] = None


def log_event(
    session: Session,
    *,
    event_type: str,
    id: Optional[str] = None,
    triggered_by: Optional[str] = None,
    contract_address: Optional[str] = None,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    event_timestamp: Optional[datetime] = None,
    block_number: Optional[int] = None,
    transaction_hash: Optional[str] = None,
) -> SystemEvent:
    """Stage an audit row on *session*. Does **not** commit.

    The caller owns the transaction, so the audit row lands atomically with
    the state change it describes.
    """

    entry = SystemEvent(
        id=id or uuid4().hex,
        event_type=event_type,
        triggered_by=triggered_by,
        contract_address=contract_address,
        old_value=old_value,
        new_value=new_value,
        details=details or {},
        event_timestamp=event_timestamp or utcnow(),
        block_number=block_number,
        transaction_hash=transaction_hash,
    )
    session.add(entry)
    return entry


def log_event_now(engine: Engine, **kwargs: Any) -> bool:
    """Write an audit row in its own transaction.

    Used after the triggering transaction has been rolled back (invariant
    violations), where staging on the original session would be lost. When an
    explicit ``id`` is already journaled nothing is written and False is
    returned.
    """

    with Session(engine) as audit_sess:
        row_id = kwargs.get("id")
        if row_id is not None and audit_sess.get(SystemEvent, row_id) is not None:
            return False
        log_event(audit_sess, **kwargs)
        audit_sess.commit()
    return True
