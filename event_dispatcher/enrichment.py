"""Off-chain scoring of freshly requested domains.

A ``ScoringRequested`` (or each item of a ``BatchScoringRequested``) commits a
``pending``/``batch_requested`` row first. ``ScoringEnricher.enrich`` then runs
as a background task: it asks the scoring bridge for a score, optionally
submits it on chain through the backend, and records the outcome.

The row is only ever moved forward (see ``scoring_status_advances``), so an
on-chain ``ScoreSubmitted`` that lands while the bridge call is in flight is
never overwritten by the slower off-chain result.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional

from sqlmodel import Session

from common.datetime import utcnow
from integrations.backend.errors import BackendError
from integrations.base import DomainScore, ScoreSubmitter, ScoringBridge
from lending_domain.models import (BatchOperation, ScoringEvent, ScoringStatus,
                                   scoring_status_advances)
from lending_observability.metrics import scoring_fallbacks_total
from state_store.locks import AggregateLocks, domain_key
from state_store.repositories import ScoringRepository

log = logging.getLogger(__name__)

_STARTABLE = (ScoringStatus.PENDING.value, ScoringStatus.BATCH_REQUESTED.value)


class ScoringEnricher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        locks: AggregateLocks,
        scorer: ScoringBridge,
        submitter: Optional[ScoreSubmitter] = None,
        *,
        auto_submit: bool = False,
    ):
        self._session_factory = session_factory
        self._locks = locks
        self._scorer = scorer
        self._submitter = submitter
        self._auto_submit = auto_submit and submitter is not None

    async def enrich(self, scoring_id: str) -> Optional[str]:
        """Score one row. Returns the status written, or None when nothing changed."""
        with self._session_factory() as session:
            row = ScoringRepository(session).get(scoring_id)
            if row is None:
                log.warning("Scoring row %s vanished before enrichment", scoring_id)
                return None
            token_id = row.domain_token_id

        async with self._locks.hold([domain_key(token_id)]):
            with self._session_factory() as session:
                row = ScoringRepository(session).get(scoring_id)
                if row is None or row.status not in _STARTABLE:
                    return None
                row.status = ScoringStatus.BACKEND_CALLED.value
                row.backend_call_timestamp = utcnow()
                session.commit()
                domain_name = row.domain_name or f"domain-{token_id}"

        score = await self._scorer.score_domain(domain_name)
        tx_hash: Optional[str] = None
        error: Optional[str] = None
        if score.is_fallback:
            scoring_fallbacks_total.inc()
            status = ScoringStatus.FAILED
            error = score.error or score.reasoning
            log.warning(
                "Scoring bridge fell back for %s: %s", domain_name, error,
                extra={"domain_token_id": token_id},
            )
        elif self._auto_submit:
            status = ScoringStatus.BACKEND_COMPLETED
            tx_hash, error = await self._submit(int(token_id), domain_name, score)
        else:
            status = ScoringStatus.AWAITING_AVS_OPERATOR

        async with self._locks.hold([domain_key(token_id)]):
            with self._session_factory() as session:
                row = ScoringRepository(session).get(scoring_id)
                if row is None:
                    return None
                written = self._record(session, row, status, score, tx_hash, error)
                session.commit()
        return written

    async def _submit(self, token_id: int, domain_name: str, score: DomainScore):
        assert self._submitter is not None
        try:
            result = await self._submitter.submit_score(token_id, domain_name, score)
        except BackendError as exc:
            log.warning(
                "Score submission for %s failed: %s", domain_name, exc,
                extra={"domain_token_id": str(token_id)},
            )
            return None, str(exc)
        return result.get("tx_hash"), None

    def _record(
        self,
        session: Session,
        row: ScoringEvent,
        status: ScoringStatus,
        score: DomainScore,
        tx_hash: Optional[str],
        error: Optional[str],
    ) -> Optional[str]:
        now = utcnow()
        advanced = scoring_status_advances(row.status, status.value)
        if advanced:
            row.status = status.value
            row.ai_score = score.score
            row.confidence = score.confidence
            row.reasoning = score.reasoning
            row.error_message = error
            if tx_hash:
                row.submission_tx_hash = tx_hash
                row.submission_timestamp = now
            if row.backend_call_timestamp is not None:
                row.processing_duration_ms = int((now - row.backend_call_timestamp).total_seconds() * 1000)
        else:
            log.info("Scoring row %s already %s; dropping off-chain result", row.id, row.status)

        if row.batch_id:
            batch = ScoringRepository(session).get_batch(row.batch_id)
            if batch is not None:
                _count_batch_item(batch, failed=advanced and status is ScoringStatus.FAILED, now=now)
        return status.value if advanced else None


def _count_batch_item(batch: BatchOperation, *, failed: bool, now) -> None:
    if failed:
        batch.failed_items += 1
    else:
        batch.completed_items += 1
    if batch.completed_items + batch.failed_items >= batch.total_items:
        if batch.failed_items == 0:
            batch.status = "completed"
        elif batch.completed_items == 0:
            batch.status = "failed"
        else:
            batch.status = "partial"
        batch.completed_at = now
