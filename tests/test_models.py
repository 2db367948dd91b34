from decimal import Decimal

import pytest

from holder_drop.errors import InvalidAddressError, InvalidAmountError, StatusRegressionError
from holder_drop.models import (
    AllocationEntry,
    DistributionMode,
    DistributionRecord,
    DistributionRequest,
    DistributionResult,
    ResultStatus,
    to_raw_amount,
    to_ui_amount,
)

from .conftest import ADDRESSES, MINT, SOURCE


def request_with(entries, total=None, batch_size=2):
    return DistributionRequest(
        mint=MINT,
        source=SOURCE,
        total_amount=total if total is not None else sum(e.amount for e in entries) or 1,
        mode=DistributionMode.EQUAL,
        batch_size=batch_size,
        entries=tuple(entries),
    )


def test_raw_amount_rounds_down():
    assert to_raw_amount(Decimal("1.2345678"), 6) == 1234567
    assert to_raw_amount(Decimal("0.0000001"), 6) == 0
    assert to_ui_amount(1234567, 6) == Decimal("1.234567")


def test_request_rejects_duplicates_and_overallocation():
    entry = AllocationEntry(ADDRESSES[0], 5)
    with pytest.raises(InvalidAddressError):
        request_with([entry, entry])
    with pytest.raises(InvalidAmountError):
        request_with([entry], total=4)
    with pytest.raises(InvalidAmountError):
        request_with([AllocationEntry(ADDRESSES[0], 0)], total=1)
    with pytest.raises(InvalidAmountError):
        request_with([entry], batch_size=0)


def test_request_round_trips_through_dict():
    request = request_with([AllocationEntry(ADDRESSES[0], 5), AllocationEntry(ADDRESSES[1], 6)], total=12)
    assert DistributionRequest.from_dict(request.to_dict()) == request


def test_terminal_result_cannot_move():
    result = DistributionResult(recipient=ADDRESSES[0], amount=1).advance(ResultStatus.CONFIRMED)
    with pytest.raises(StatusRegressionError):
        result.advance(ResultStatus.RETRY_PENDING)
    assert result.advance(ResultStatus.CONFIRMED, transaction_id="sig").transaction_id == "sig"


def test_record_summary():
    request = request_with([AllocationEntry(ADDRESSES[i], 10) for i in range(3)])
    record = DistributionRecord.new(request)
    record.results[ADDRESSES[0]] = record.results[ADDRESSES[0]].advance(ResultStatus.CONFIRMED)
    record.results[ADDRESSES[1]] = record.results[ADDRESSES[1]].advance(ResultStatus.FAILED)

    summary = record.to_dict()["summary"]
    assert summary == {"confirmed": 1, "failed": 1, "unresolved": 1, "confirmed_amount": 10}
    assert not record.is_terminal
