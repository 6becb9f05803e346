"""Datetime helpers shared by the indexer and the liquidation monitor.

All persisted timestamps are *naive* UTC, matching what SQLite hands back:
    utcnow()          -> current time, naive UTC
    from_unix(ts)     -> chain block timestamp (seconds) to naive UTC
    parse_iso8601(s)  -> ISO-8601 string or datetime to naive UTC

Keeping the conversions here gives one spot to patch if behaviour changes.
"""
from __future__ import annotations

import datetime as _dt
from typing import Union

from dateutil.parser import isoparse as _isoparse

__all__ = ["utcnow", "from_unix", "parse_iso8601", "to_naive_utc"]


def _ensure_utc(dt: _dt.datetime) -> _dt.datetime:
    """Return *dt* converted to UTC and TZ-aware."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        # naive → assume already UTC
        return dt.replace(tzinfo=_dt.timezone.utc)
    return dt.astimezone(_dt.timezone.utc)


def to_naive_utc(dt: _dt.datetime) -> _dt.datetime:
    return _ensure_utc(dt).replace(tzinfo=None)


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)


def from_unix(seconds: Union[int, float]) -> _dt.datetime:
    """Convert a unix timestamp in seconds (block time, deadlines) to naive UTC."""
    return _dt.datetime.fromtimestamp(int(seconds), tz=_dt.timezone.utc).replace(tzinfo=None)


def parse_iso8601(value: Union[str, _dt.datetime]) -> _dt.datetime:
    """Parse *value* into a naive UTC datetime.

    Accepts ISO-8601 strings (trailing "Z", explicit offsets, fractional
    seconds) or datetime objects.
    """
    if isinstance(value, _dt.datetime):
        return to_naive_utc(value)

    if not isinstance(value, str):
        raise TypeError("parse_iso8601 expects str or datetime, got " + type(value).__name__)

    try:
        dt = _isoparse(value)
    except ValueError as exc:
        raise ValueError(f"invalid ISO-8601 datetime: {value}") from exc

    return to_naive_utc(dt)
