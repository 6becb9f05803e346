"""Event dispatcher: applies decoded chain events to the State Store.

Each event runs in exactly one transaction that covers the handler's writes,
the ``ProcessedEvent`` replay marker and the cursor bump. A replayed event is
reported as ``DUPLICATE`` and writes nothing. An ``ApplyError`` rolls the
transaction back, is journaled as an ``invariant_violation`` in a separate
transaction and re-raised; ``apply_all`` reports it and moves on. The journal
row is keyed by the event, so replaying a rejected event adds nothing and is
also reported as ``DUPLICATE``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import (Awaitable, Callable, Dict, Iterable, List, Mapping,
                    Optional, Set, Tuple)

from sqlalchemy.engine import Engine
from sqlmodel import Session

from common.audit import SystemEvent, log_event_now
from common.datetime import utcnow
from event_dispatcher.context import (AfterCommit, ApplyContext, ApplyStatus,
                                      HandlerSettings)
from event_dispatcher.enrichment import ScoringEnricher
from event_dispatcher.errors import ApplyError, OrderingError
from event_dispatcher.registry import HANDLERS, Handler, aggregate_keys
from integrations.base import (DomainResolver, ScoreSubmitter, ScoringBridge,
                               placeholder_domain_name)
from lending_domain.events import ChainEvent
from lending_observability.metrics import (event_apply_latency_seconds,
                                           events_applied_total,
                                           invariant_violations_total)
from state_store.locks import AggregateLocks
from state_store.repositories import LedgerRepository

log = logging.getLogger(__name__)


def rejection_id(event: ChainEvent) -> str:
    """Journal key of the ``invariant_violation`` row for a rejected event."""
    return f"{event.event_id}-rejected"


class EventDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        engine: Engine,
        *,
        resolver: Optional[DomainResolver] = None,
        scorer: Optional[ScoringBridge] = None,
        submitter: Optional[ScoreSubmitter] = None,
        locks: Optional[AggregateLocks] = None,
        settings: Optional[HandlerSettings] = None,
        auto_submit: bool = False,
        chain_id: int = 97476,
        resolve_timeout_s: float = 10.0,
    ):
        self._session_factory = session_factory
        self._engine = engine
        self._resolver = resolver
        self._locks = locks or AggregateLocks()
        self._settings = settings or HandlerSettings()
        self._chain_id = chain_id
        self._resolve_timeout_s = resolve_timeout_s
        self._enricher = (
            ScoringEnricher(session_factory, self._locks, scorer, submitter, auto_submit=auto_submit)
            if scorer is not None
            else None
        )
        self._apply_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def locks(self) -> AggregateLocks:
        return self._locks

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def apply(self, event: ChainEvent, *, names: Optional[Mapping[int, str]] = None) -> ApplyStatus:
        """Apply one event. Raises ``ApplyError`` after journaling it."""
        handler = HANDLERS[event.name]
        started = time.perf_counter()
        if names is None:
            names = await self._resolve(event.token_ids() if event.resolves_names else [])
        try:
            async with self._apply_lock:
                with self._session_factory() as session:
                    keys = aggregate_keys(session, event)
                async with self._locks.hold(keys):
                    status, jobs = self._apply_in_transaction(event, handler, names)
        except ApplyError as exc:
            self._report_violation(event, exc)
            events_applied_total.labels(event=event.name, outcome=ApplyStatus.REJECTED.value).inc()
            raise
        finally:
            event_apply_latency_seconds.labels(event=event.name).observe(time.perf_counter() - started)

        events_applied_total.labels(event=event.name, outcome=status.value).inc()
        log.debug(
            "%s %s -> %s", event.name, event.event_id, status.value,
            extra={"event_id": event.event_id, "event": event.name, "block_number": event.block_number},
        )
        for job in jobs:
            self._spawn(job)
        return status

    async def apply_all(self, events: Iterable[ChainEvent]) -> List[Tuple[ChainEvent, ApplyStatus]]:
        """Apply a batch in chain order, pre-resolving domain names concurrently.

        A rejected event is reported (``REJECTED``) and the batch continues.
        """
        ordered = sorted(events, key=lambda e: e.position)
        tokens = {t for e in ordered if e.resolves_names for t in e.token_ids()}
        names = await self._resolve(tokens)

        results: List[Tuple[ChainEvent, ApplyStatus]] = []
        for event in ordered:
            try:
                status = await self.apply(event, names=names)
            except ApplyError:
                status = ApplyStatus.REJECTED
            results.append((event, status))
        return results

    async def drain(self) -> None:
        """Wait for background scoring tasks started by committed events."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_in_transaction(
        self, event: ChainEvent, handler: Handler, names: Mapping[int, str]
    ) -> Tuple[ApplyStatus, List[AfterCommit]]:
        with self._session_factory() as session:
            ledger = LedgerRepository(session, self._chain_id)
            if ledger.is_processed(event.event_id):
                return ApplyStatus.DUPLICATE, []

            cursor = ledger.cursor()
            if cursor is not None and event.position <= (cursor.block_number, cursor.log_index):
                if session.get(SystemEvent, rejection_id(event)) is not None:
                    # rejected on an earlier pass; the journal row already says why
                    return ApplyStatus.DUPLICATE, []
                raise OrderingError(
                    f"{event.name} {event.event_id} at {event.position} is behind cursor "
                    f"({cursor.block_number}, {cursor.log_index})",
                    details={"cursor_block": cursor.block_number, "cursor_log_index": cursor.log_index},
                )

            ctx = ApplyContext(session=session, settings=self._settings, names=names, enricher=self._enricher)
            try:
                status = handler(ctx, event)
                ledger.mark_processed(event, utcnow())
                session.commit()
            except Exception:
                session.rollback()
                raise
            return status, ctx.after_commit

    def _report_violation(self, event: ChainEvent, exc: ApplyError) -> None:
        invariant_violations_total.labels(kind=exc.kind).inc()
        log.error(
            "Rejected %s %s (%s): %s", event.name, event.event_id, exc.kind, exc,
            extra={"event_id": event.event_id, "event": event.name, "block_number": event.block_number},
        )
        log_event_now(
            self._engine,
            id=rejection_id(event),
            event_type="invariant_violation",
            contract_address=event.contract_address,
            details={
                "kind": exc.kind,
                "event": event.name,
                "event_id": event.event_id,
                "message": str(exc),
                **exc.details,
            },
            block_number=event.block_number,
            transaction_hash=event.transaction_hash,
        )

    async def _resolve(self, tokens: Iterable[int]) -> Dict[int, str]:
        unique = sorted(set(tokens))
        if not unique or self._resolver is None:
            return {}
        resolved = await asyncio.gather(*(self._resolve_one(t) for t in unique))
        return dict(zip(unique, resolved))

    async def _resolve_one(self, token_id: int) -> str:
        assert self._resolver is not None
        try:
            return await asyncio.wait_for(self._resolver.resolve_domain_name(token_id), self._resolve_timeout_s)
        except asyncio.TimeoutError:
            log.warning("Resolving token %s timed out; using placeholder", token_id)
            return placeholder_domain_name(token_id)

    def _spawn(self, job: Callable[[], Awaitable[object]]) -> None:
        task = asyncio.ensure_future(job())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Background scoring task failed", exc_info=task.exception())
