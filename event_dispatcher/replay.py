"""Re-indexing from an NDJSON dump of decoded chain logs."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Union

from lending_domain.events import ChainEvent, EventDecodeError, decode_event
from lending_observability.metrics import event_decode_failures_total

log = logging.getLogger(__name__)


def load_ndjson(path: Union[str, Path]) -> List[ChainEvent]:
    """Decode one event per non-blank line; undecodable lines are logged and skipped."""
    events: List[ChainEvent] = []
    with open(path, "r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(decode_event(line))
            except EventDecodeError as exc:
                event_decode_failures_total.inc()
                log.warning("%s:%d skipped: %s", path, lineno, exc)
    log.info("Loaded %d events from %s", len(events), path)
    return events
