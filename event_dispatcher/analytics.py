"""Domain analytics rollup.

``DomainAnalytics`` is derived state: handlers bump it incrementally as
events arrive, and ``rebuild_domain_analytics`` recomputes every row from
the scoring, paid-submission and loan-history tables. Both paths produce
the same counters, flags and latest score.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import delete
from sqlmodel import Session, select

from lending_domain.models import (DomainAnalytics, LoanHistory,
                                   LoanHistoryType, PaidScoreSubmission,
                                   ScoringEvent, ScoringStatus)
from state_store.repositories import AnalyticsRepository

log = logging.getLogger(__name__)

_CREATED_TYPES = (LoanHistoryType.CREATED_INSTANT.value, LoanHistoryType.CREATED_CROWDFUNDED.value)


def _touch(row: DomainAnalytics, ts: datetime) -> None:
    if row.last_activity_timestamp is None or ts > row.last_activity_timestamp:
        row.last_activity_timestamp = ts


def on_scoring_request(session: Session, token_id: str, domain_name: str, ts: datetime) -> None:
    row = AnalyticsRepository(session).get_or_create(token_id, domain_name)
    row.total_scoring_requests += 1
    if row.first_score_timestamp is None or ts < row.first_score_timestamp:
        row.first_score_timestamp = ts
    _touch(row, ts)


def on_score(session: Session, token_id: str, domain_name: str, score: int, ts: datetime) -> None:
    row = AnalyticsRepository(session).get_or_create(token_id, domain_name)
    row.latest_ai_score = score
    if row.first_score_timestamp is None or ts < row.first_score_timestamp:
        row.first_score_timestamp = ts
    _touch(row, ts)


def on_score_invalidated(session: Session, token_id: str, domain_name: str) -> None:
    row = AnalyticsRepository(session).get_or_create(token_id, domain_name)
    row.latest_ai_score = None


def on_loan_created(session: Session, token_id: str, domain_name: str, amount: int, ts: datetime) -> None:
    row = AnalyticsRepository(session).get_or_create(token_id, domain_name)
    row.total_loans_created += 1
    row.total_loan_volume += amount
    _touch(row, ts)


def on_liquidation(session: Session, token_id: str, domain_name: str, ts: datetime) -> None:
    row = AnalyticsRepository(session).get_or_create(token_id, domain_name)
    row.has_been_liquidated = True
    _touch(row, ts)


# ---------------------------------------------------------------------------
# Rebuild from history
# ---------------------------------------------------------------------------


def rebuild_domain_analytics(session: Session) -> int:
    """Drop and recompute every ``DomainAnalytics`` row. Returns the row count.

    Does not commit; the caller decides whether to keep the result.
    """
    session.execute(delete(DomainAnalytics))
    rows: Dict[str, DomainAnalytics] = {}
    latest_completion: Dict[str, datetime] = {}

    def _row(token_id: str, name: Optional[str]) -> DomainAnalytics:
        row = rows.get(token_id)
        if row is None:
            row = rows[token_id] = DomainAnalytics(
                domain_token_id=token_id, domain_name=name or f"domain-{token_id}"
            )
        elif name and not name.startswith("domain-"):
            row.domain_name = name
        return row

    for ev in session.exec(select(ScoringEvent).order_by(ScoringEvent.request_timestamp)):
        row = _row(ev.domain_token_id, ev.domain_name)
        if ev.source != "direct":
            row.total_scoring_requests += 1
        if row.first_score_timestamp is None or ev.request_timestamp < row.first_score_timestamp:
            row.first_score_timestamp = ev.request_timestamp
        _touch(row, ev.request_timestamp)
        if ev.completion_timestamp is not None:
            _touch(row, ev.completion_timestamp)
            if ev.status == ScoringStatus.COMPLETED.value and ev.ai_score is not None:
                prev = latest_completion.get(ev.domain_token_id)
                if prev is None or ev.completion_timestamp >= prev:
                    latest_completion[ev.domain_token_id] = ev.completion_timestamp
                    row.latest_ai_score = ev.ai_score

    paid = session.exec(select(PaidScoreSubmission).order_by(PaidScoreSubmission.submission_timestamp))
    for sub in paid:
        row = _row(sub.domain_token_id, sub.domain_name)
        ts = sub.submission_timestamp
        if row.first_score_timestamp is None or ts < row.first_score_timestamp:
            row.first_score_timestamp = ts
        _touch(row, ts)
        if not sub.invalidated:
            prev = latest_completion.get(sub.domain_token_id)
            if prev is None or ts >= prev:
                latest_completion[sub.domain_token_id] = ts
                row.latest_ai_score = sub.score

    history = session.exec(select(LoanHistory).order_by(LoanHistory.event_timestamp))
    for entry in history:
        if entry.event_type in _CREATED_TYPES:
            row = _row(entry.domain_token_id, entry.domain_name)
            row.total_loans_created += 1
            row.total_loan_volume += entry.amount or 0
            _touch(row, entry.event_timestamp)
        elif entry.event_type == LoanHistoryType.LIQUIDATED.value:
            row = _row(entry.domain_token_id, entry.domain_name)
            row.has_been_liquidated = True
            _touch(row, entry.event_timestamp)

    for row in rows.values():
        session.add(row)
    log.info("Rebuilt domain analytics for %d domains", len(rows))
    return len(rows)
