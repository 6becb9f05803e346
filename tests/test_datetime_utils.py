import datetime as _dt

import pytest

from common.datetime import from_unix, parse_iso8601, to_naive_utc
from lending_domain.models import IndexerCursor


@pytest.mark.parametrize(
    "s,expected",
    [
        ("2025-08-27T12:00:00Z", _dt.datetime(2025, 8, 27, 12, 0, 0)),
        ("2025-08-27T12:00:00+00:00", _dt.datetime(2025, 8, 27, 12, 0, 0)),
        ("2025-08-27T07:00:00-05:00", _dt.datetime(2025, 8, 27, 12, 0, 0)),
        ("2025-08-27T12:00:00.123456Z", _dt.datetime(2025, 8, 27, 12, 0, 0, 123456)),
    ],
)
def test_parse_iso8601_returns_naive_utc(s, expected):
    parsed = parse_iso8601(s)
    assert parsed == expected
    assert parsed.tzinfo is None


def test_parse_iso8601_rejects_garbage():
    with pytest.raises(ValueError):
        parse_iso8601("yesterday-ish")
    with pytest.raises(TypeError):
        parse_iso8601(1_700_000_000)


def test_from_unix_is_naive_utc():
    assert from_unix(0) == _dt.datetime(1970, 1, 1)
    assert from_unix(1_718_000_000.9) == _dt.datetime(2024, 6, 10, 6, 13, 20)


def test_to_naive_utc_converts_offsets():
    aware = _dt.datetime(2025, 1, 1, 2, 0, tzinfo=_dt.timezone(_dt.timedelta(hours=2)))
    assert to_naive_utc(aware) == _dt.datetime(2025, 1, 1, 0, 0)


def test_naive_datetimes_survive_the_state_store(sessions):
    stamp = from_unix(1_700_000_000)
    with sessions() as s:
        s.add(IndexerCursor(chain_id=1, block_number=5, log_index=0, updated_at=stamp))
        s.commit()
    with sessions() as s:
        stored = s.get(IndexerCursor, 1).updated_at
    assert stored.tzinfo is None
    assert stored == stamp
