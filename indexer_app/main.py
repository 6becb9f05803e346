"""Composition root for the lending indexer.

    python -m indexer_app.main consume             # Kafka -> dispatcher, plus liquidation sweeps
    python -m indexer_app.main replay events.ndjson
    python -m indexer_app.main sweep-once [--as-of 2025-06-01T00:00:00Z]
    python -m indexer_app.main rebuild-analytics
    python -m indexer_app.main unconfirmed --older-than-minutes 30
    python -m indexer_app.main unconfirmed --exhausted
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.engine import Engine

from common.datetime import parse_iso8601
from common.logging import configure_logging
from common.settings import ConfigError, IndexerSettings
from event_dispatcher.analytics import rebuild_domain_analytics
from event_dispatcher.consumer import consume
from event_dispatcher.context import ApplyStatus, HandlerSettings
from event_dispatcher.dispatcher import EventDispatcher
from event_dispatcher.replay import load_ndjson
from integrations.backend import BackendHTTP, ContractsClient, ScoringClient
from integrations.doma import DomaResolver
from lending_observability.metrics import maybe_start_http_server
from liquidation_monitor import LiquidationMonitor, LiquidationScheduler
from state_store import AggregateLocks, create_db_engine, init_db, session_factory

log = logging.getLogger("indexer_app")

SERVICE_NAME = "lending-indexer"


@dataclass
class Indexer:
    settings: IndexerSettings
    engine: Engine
    http: BackendHTTP
    dispatcher: EventDispatcher
    monitor: LiquidationMonitor

    async def aclose(self) -> None:
        await self.dispatcher.drain()
        await self.http.aclose()
        self.engine.dispose()


def build_indexer(settings: IndexerSettings) -> Indexer:
    engine = create_db_engine(settings.db_url)
    init_db(engine)
    sessions = session_factory(engine)
    locks = AggregateLocks()

    http = BackendHTTP(base_url=settings.backend_api_url, timeout=settings.backend_timeout_s)
    contracts = ContractsClient(http)
    resolver = DomaResolver.from_rpc(
        settings.doma_rpc_url, settings.contracts.ownership_token, timeout=settings.resolver_timeout_s
    )
    dispatcher = EventDispatcher(
        sessions,
        engine,
        resolver=resolver,
        scorer=ScoringClient(http, timeout=settings.backend_timeout_s),
        submitter=contracts,
        locks=locks,
        settings=HandlerSettings(liquidation_buffer_hours=settings.liquidation_buffer_hours),
        auto_submit=settings.auto_score_submission,
        chain_id=settings.chain_id,
        resolve_timeout_s=settings.resolver_timeout_s,
    )
    monitor = LiquidationMonitor(
        sessions,
        contracts,
        locks=locks,
        executor_timeout_s=settings.executor_timeout_s,
        max_attempts=settings.liquidation_max_attempts,
    )
    return Indexer(settings=settings, engine=engine, http=http, dispatcher=dispatcher, monitor=monitor)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


async def _consume(indexer: Indexer) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover - Windows
            pass

    scheduler: Optional[LiquidationScheduler] = None
    if indexer.settings.liquidation_enabled:
        scheduler = LiquidationScheduler(
            indexer.monitor,
            interval_ms=indexer.settings.liquidation_check_interval_ms,
            initial_delay_ms=indexer.settings.liquidation_initial_delay_ms,
        )
        scheduler.start()
    else:
        log.info("Liquidation monitor disabled")

    try:
        await consume(indexer.dispatcher, indexer.settings, stop)
    finally:
        if scheduler is not None:
            scheduler.shutdown()
    return 0


async def _replay(indexer: Indexer, path: str) -> int:
    events = load_ndjson(path)
    results = await indexer.dispatcher.apply_all(events)
    await indexer.dispatcher.drain()
    counts = {status: 0 for status in ApplyStatus}
    for _, status in results:
        counts[status] += 1
    log.info(
        "Replayed %d events: %s", len(results),
        ", ".join(f"{status.value}={n}" for status, n in counts.items()),
    )
    return 1 if counts[ApplyStatus.REJECTED] else 0


async def _sweep_once(indexer: Indexer, as_of: Optional[str] = None) -> int:
    summary = await indexer.monitor.sweep(now=parse_iso8601(as_of) if as_of else None)
    return 1 if summary.failed else 0


def _rebuild_analytics(indexer: Indexer) -> int:
    with session_factory(indexer.engine)() as session:
        rebuild_domain_analytics(session)
        session.commit()
    return 0


def _unconfirmed(indexer: Indexer, older_than_minutes: int, exhausted: bool = False) -> int:
    if exhausted:
        loans = indexer.monitor.exhausted_attempts()
    else:
        loans = indexer.monitor.unconfirmed_attempts(timedelta(minutes=older_than_minutes))
    for loan in loans:
        print(f"{loan.loan_id}\t{loan.domain_token_id}\t{loan.borrower_address}\t{loan.liquidation_timestamp}")
    return 0


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lending-indexer", description=__doc__.splitlines()[0])
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("consume", help="consume chain events from Kafka and run liquidation sweeps")
    replay = sub.add_parser("replay", help="apply an NDJSON file of decoded chain events")
    replay.add_argument("path")
    sweep = sub.add_parser("sweep-once", help="run a single liquidation sweep")
    sweep.add_argument("--as-of", help="ISO-8601 instant to evaluate deadlines against (default: now)")
    sub.add_parser("rebuild-analytics", help="recompute domain analytics from history tables")
    unconfirmed = sub.add_parser("unconfirmed", help="list latched liquidations without a tx hash")
    unconfirmed.add_argument("--older-than-minutes", type=int, default=0)
    unconfirmed.add_argument(
        "--exhausted", action="store_true", help="list loans abandoned after too many failed attempts instead"
    )
    return parser


async def _run(args: argparse.Namespace, indexer: Indexer) -> int:
    try:
        if args.command == "consume":
            return await _consume(indexer)
        if args.command == "replay":
            return await _replay(indexer, args.path)
        if args.command == "sweep-once":
            return await _sweep_once(indexer, args.as_of)
        if args.command == "rebuild-analytics":
            return _rebuild_analytics(indexer)
        return _unconfirmed(indexer, args.older_than_minutes, args.exhausted)
    finally:
        await indexer.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    args = _parser().parse_args(argv)
    try:
        settings = IndexerSettings.from_env()
    except ConfigError as exc:
        configure_logging(service_name=SERVICE_NAME)
        log.error("Invalid configuration: %s", exc)
        return 2

    configure_logging(settings.log_format, service_name=SERVICE_NAME, level=settings.log_level)
    maybe_start_http_server()
    return asyncio.run(_run(args, build_indexer(settings)))


if __name__ == "__main__":
    raise SystemExit(main())
