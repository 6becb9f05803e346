import json
from datetime import datetime

import pytest

from event_dispatcher.registry import HANDLERS
from lending_domain.events import (EVENT_TYPES, BatchScoresSubmitted,
                                   EventDecodeError, LoanRepaid, decode_event)


def _envelope(**fields):
    return {
        "blockNumber": 812,
        "logIndex": 3,
        "transactionHash": "0xabc",
        "blockTimestamp": 1_718_000_000,
        **fields,
    }


def test_decodes_camel_case_payload_with_string_amounts():
    raw = json.dumps(
        _envelope(event="LoanRepaid", loanId="7", borrower="0xb0b", repaymentAmount="400", isFullyRepaid=False)
    )
    event = decode_event(raw)
    assert isinstance(event, LoanRepaid)
    assert event.loan_id == 7
    assert event.repayment_amount == 400
    assert event.event_id == "0xabc-3"
    assert event.position == (812, 3)
    assert event.name == "LoanRepaid"
    assert event.occurred_at == datetime(2024, 6, 10, 6, 13, 20)


def test_accepts_snake_case_keys_and_uint256_range():
    big = 2**200
    event = decode_event(
        {
            "event": "LiquidityAdded",
            "block_number": 1,
            "log_index": 0,
            "transaction_hash": "0x1",
            "block_timestamp": 0,
            "pool_id": 3,
            "provider": "0xp",
            "amount": str(big),
        }
    )
    assert event.amount == big


def test_unknown_event_name_is_rejected():
    with pytest.raises(EventDecodeError):
        decode_event(_envelope(event="SomethingElse"))


def test_invalid_json_and_non_objects_are_rejected():
    with pytest.raises(EventDecodeError):
        decode_event(b"{not json")
    with pytest.raises(EventDecodeError):
        decode_event("[1, 2]")


def test_missing_required_field_is_rejected():
    with pytest.raises(EventDecodeError):
        decode_event(_envelope(event="LoanRepaid", loanId=1, borrower="0xb0b"))


def test_batch_scores_must_line_up_with_tokens():
    ok = decode_event(_envelope(event="BatchScoresSubmitted", domainTokenIds=[1, 2], scores=[10, 90]))
    assert isinstance(ok, BatchScoresSubmitted)
    assert ok.token_ids() == [1, 2]

    with pytest.raises(EventDecodeError):
        decode_event(_envelope(event="BatchScoresSubmitted", domainTokenIds=[1, 2], scores=[10]))
    with pytest.raises(EventDecodeError):
        decode_event(_envelope(event="BatchScoresSubmitted", domainTokenIds=[1], scores=[101]))


def test_every_event_class_is_registered_once():
    assert len(EVENT_TYPES) == 29
    assert set(EVENT_TYPES) == set(HANDLERS)
    assert EVENT_TYPES["AuctionEnded"].__name__ == "AuctionEnded"
