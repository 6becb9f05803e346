"""Kafka ingestion: decoded chain logs -> ``EventDispatcher``.

Records are JSON objects in the shape ``decode_event`` accepts. Each fetched
batch is decoded and handed to ``apply_all`` in one call, so its domain names
resolve concurrently. Anything that does not decode is logged, counted and
skipped. Offsets are committed by hand after the batch is applied.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, List, Optional

from aiokafka import AIOKafkaConsumer

from common.settings import IndexerSettings
from event_dispatcher.dispatcher import EventDispatcher
from lending_domain.events import ChainEvent, EventDecodeError, decode_event
from lending_observability.metrics import event_decode_failures_total

log = logging.getLogger(__name__)


@asynccontextmanager
async def kafka_consumer(
    settings: IndexerSettings, *, max_retries: int = 12, delay: float = 5.0
) -> AsyncIterator[AIOKafkaConsumer]:
    consumer = AIOKafkaConsumer(
        settings.kafka_topic,
        bootstrap_servers=settings.kafka_bootstrap,
        group_id=settings.kafka_group_id,
        enable_auto_commit=False,
        auto_offset_reset=settings.kafka_auto_offset_reset,
    )
    for attempt in range(max_retries):
        try:
            await consumer.start()
            log.info(
                "Consumer started bootstrap=%s topic=%s group_id=%s auto_offset_reset=%s",
                settings.kafka_bootstrap,
                settings.kafka_topic,
                settings.kafka_group_id,
                settings.kafka_auto_offset_reset,
            )
            break
        except Exception as e:
            log.warning("Kafka not available yet (attempt %s/%s): %s", attempt + 1, max_retries, e)
            await asyncio.sleep(delay)
    else:
        raise RuntimeError(f"Could not connect to Kafka after {max_retries} attempts.")
    try:
        yield consumer
    finally:
        await consumer.stop()
        log.info("Consumer stopped")


def decode_records(values: Iterable[Optional[bytes]]) -> List[ChainEvent]:
    """Decode raw record values, logging, counting and skipping anything undecodable."""
    events: List[ChainEvent] = []
    for value in values:
        try:
            events.append(decode_event(value or b""))
        except EventDecodeError as exc:
            event_decode_failures_total.inc()
            log.warning("Skipping undecodable record: %s", exc)
    return events


async def handle_batch(dispatcher: EventDispatcher, values: Iterable[Optional[bytes]]) -> int:
    """Apply one fetched batch with a single ``apply_all``. Returns how many records decoded."""
    events = decode_records(values)
    if events:
        await dispatcher.apply_all(events)
    return len(events)


async def consume_batches(consumer: AIOKafkaConsumer, dispatcher: EventDispatcher, stop: asyncio.Event) -> None:
    while not stop.is_set():
        batches = await consumer.getmany(timeout_ms=1000)
        values = [record.value for records in batches.values() for record in records]
        if not values:
            continue
        decoded = await handle_batch(dispatcher, values)
        # offsets move only once every record of the batch has been applied or skipped
        await consumer.commit()
        log.debug("Consumed %d records (%d decoded) from %d partitions", len(values), decoded, len(batches))


async def consume(dispatcher: EventDispatcher, settings: IndexerSettings, stop: asyncio.Event) -> None:
    async with kafka_consumer(settings) as consumer:
        log.info("Waiting for chain events on %s", settings.kafka_topic)
        await consume_batches(consumer, dispatcher, stop)
    await dispatcher.drain()
