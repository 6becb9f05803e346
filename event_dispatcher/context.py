"""Per-event state handed to every handler."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, List, Mapping, Optional, TypeVar

from sqlmodel import Session

from event_dispatcher.errors import UnknownAggregateError
from integrations.base import placeholder_domain_name

if TYPE_CHECKING:
    from event_dispatcher.enrichment import ScoringEnricher

_T = TypeVar("_T")

AfterCommit = Callable[[], Awaitable[None]]


class ApplyStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    REJECTED = "rejected"


@dataclass(frozen=True)
class HandlerSettings:
    liquidation_buffer_hours: int = 24


@dataclass
class ApplyContext:
    session: Session
    settings: HandlerSettings
    names: Mapping[int, str] = field(default_factory=dict)
    enricher: Optional[ScoringEnricher] = None
    # coroutines started once the event's transaction has committed
    after_commit: List[AfterCommit] = field(default_factory=list)

    def domain_name(self, token_id: int) -> str:
        return self.names.get(token_id) or placeholder_domain_name(token_id)

    def defer(self, job: AfterCommit) -> None:
        self.after_commit.append(job)


def require(row: Optional[_T], kind: str, key: str) -> _T:
    """Return *row* or raise ``UnknownAggregateError`` for a lifecycle event on a missing aggregate."""
    if row is None:
        raise UnknownAggregateError(f"{kind} {key} not found", details={"aggregate": kind, "key": key})
    return row
