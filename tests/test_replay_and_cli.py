import json
import logging

import pytest
from sqlmodel import select

from common.logging import JsonFormatter
from event_dispatcher.replay import load_ndjson
from indexer_app.main import main
from lending_domain.models import Pool
from state_store import create_db_engine, session_factory


def _line(**payload):
    base = {"blockNumber": 1, "logIndex": 0, "transactionHash": "0xaa", "blockTimestamp": 1_700_000_000}
    return json.dumps({**base, **payload})


@pytest.fixture
def ndjson(tmp_path):
    path = tmp_path / "events.ndjson"
    path.write_text(
        "\n".join(
            [
                _line(event="PoolCreated", poolId=1, creator="0xc", initialLiquidity="1000"),
                "",
                "{broken",
                _line(event="NotAnEvent"),
                _line(event="LiquidityAdded", logIndex=1, poolId=1, provider="0xlp", amount=250),
            ]
        )
        + "\n"
    )
    return path


def test_load_ndjson_skips_undecodable_lines(ndjson, caplog):
    with caplog.at_level(logging.WARNING):
        events = load_ndjson(ndjson)
    assert [e.name for e in events] == ["PoolCreated", "LiquidityAdded"]
    assert sum("skipped" in r.getMessage() for r in caplog.records) == 2


def test_replay_command_applies_file(ndjson, tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path / 'indexer.db'}"
    monkeypatch.setenv("INDEXER_DB_URL", db_url)
    monkeypatch.delenv("METRICS_HTTP_SERVER", raising=False)

    assert main(["replay", str(ndjson)]) == 0
    # replaying again is a no-op
    assert main(["replay", str(ndjson)]) == 0

    engine = create_db_engine(db_url)
    with session_factory(engine)() as s:
        (pool,) = s.exec(select(Pool)).all()
        assert (pool.total_liquidity, pool.available_liquidity, pool.participant_count) == (1_250, 1_250, 2)
    engine.dispose()


def test_invalid_configuration_exits_with_2(monkeypatch):
    monkeypatch.setenv("LIQUIDATION_CHECK_INTERVAL_MS", "5")
    assert main(["sweep-once"]) == 2


def test_json_log_lines_carry_context():
    record = logging.LogRecord("event_dispatcher", logging.ERROR, __file__, 1, "Rejected %s", ("LoanRepaid",), None)
    record.event_id = "0xabc-3"
    record.loan_id = "7"
    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "Rejected LoanRepaid"
    assert (payload["event_id"], payload["loan_id"], payload["level"]) == ("0xabc-3", "7", "ERROR")
