import threading
from datetime import timedelta

import pytest

from holder_drop.errors import DuplicateRequestError, NotFoundError, StatusRegressionError
from holder_drop.ledger import FileLedger
from holder_drop.models import (
    AllocationEntry,
    DistributionMode,
    DistributionRequest,
    DistributionResult,
    ResultStatus,
    utc_now,
)

from .conftest import ADDRESSES, MINT, SOURCE


def make_request(count=3, mint=MINT, **kwargs):
    entries = tuple(AllocationEntry(ADDRESSES[i], 10 * (i + 1)) for i in range(count))
    return DistributionRequest(
        mint=mint,
        source=SOURCE,
        total_amount=sum(e.amount for e in entries),
        mode=DistributionMode.PROPORTIONAL,
        batch_size=2,
        entries=entries,
        **kwargs,
    )


def ledger_result(request, index):
    return DistributionResult.pending_for(request.entries[index])


def test_record_starts_all_pending(ledger):
    request = make_request()
    ledger.record(request)
    record = ledger.get(request.id)

    assert record.request == request
    assert [r.status for r in record.ordered_results()] == [ResultStatus.PENDING] * 3
    assert not record.is_finalized


def test_duplicate_record_rejected(ledger):
    request = make_request()
    ledger.record(request)
    with pytest.raises(DuplicateRequestError):
        ledger.record(request)


def test_update_unknown_request(ledger):
    request = make_request()
    result = ledger_result(request, 0)
    with pytest.raises(NotFoundError):
        ledger.update_result(request.id, result)


def test_terminal_results_cannot_regress(ledger):
    request = make_request()
    ledger.record(request)
    confirmed = ledger_result(request, 0).advance(ResultStatus.CONFIRMED, transaction_id="sig")
    ledger.update_result(request.id, confirmed)

    with pytest.raises(StatusRegressionError):
        ledger.update_result(request.id, DistributionResult(
            recipient=confirmed.recipient, amount=confirmed.amount, status=ResultStatus.PENDING))
    assert ledger.get(request.id).results[confirmed.recipient].status == ResultStatus.CONFIRMED


def test_replay_from_disk(tmp_path):
    request = make_request()
    first = FileLedger(tmp_path)
    first.record(request)
    first.update_result(request.id, ledger_result(request, 0).advance(ResultStatus.SUBMITTING, attempts=1))
    first.update_result(request.id, ledger_result(request, 0).advance(
        ResultStatus.AWAITING_CONFIRMATION, attempts=1, transaction_id="sig-1"))

    record = FileLedger(tmp_path).get(request.id)
    result = record.results[ADDRESSES[0]]
    assert result.status == ResultStatus.AWAITING_CONFIRMATION
    assert result.transaction_id == "sig-1"
    assert result.attempts == 1


def test_torn_last_line_is_ignored(tmp_path):
    request = make_request()
    FileLedger(tmp_path).record(request)
    with open(tmp_path / f"{request.id}.jsonl", "a") as f:
        f.write('{"event": "result", "res')

    assert FileLedger(tmp_path).get(request.id).request == request


def test_finalize_requires_terminal_results(ledger):
    request = make_request(count=1)
    ledger.record(request)
    assert ledger.finalize(request.id) is False

    ledger.update_result(request.id, ledger_result(request, 0).advance(ResultStatus.FAILED, error="boom"))
    assert ledger.finalize(request.id) is True
    completed_at = ledger.get(request.id).completed_at
    assert ledger.finalize(request.id) is True
    assert ledger.get(request.id).completed_at == completed_at


def test_finalize_aborted(ledger):
    request = make_request()
    ledger.record(request)
    assert ledger.finalize(request.id, aborted=True)
    record = ledger.get(request.id)
    assert record.aborted and record.is_finalized


def test_finalized_records_leave_memory(ledger):
    request = make_request(count=1)
    ledger.record(request)
    ledger.update_result(request.id, ledger_result(request, 0).advance(ResultStatus.CONFIRMED))
    assert ledger.finalize(request.id)

    assert request.id not in ledger._open
    record = ledger.get(request.id)
    assert record.is_finalized and record.confirmed_count == 1
    assert request.id not in ledger._open

    with pytest.raises(DuplicateRequestError):
        ledger.record(request)
    with pytest.raises(StatusRegressionError):
        ledger.update_result(request.id, ledger_result(request, 0).advance(ResultStatus.FAILED))


def test_concurrent_updates_keep_every_recipient(ledger):
    request = make_request(count=20)
    ledger.record(request)

    def confirm(index):
        ledger.update_result(request.id, ledger_result(request, index).advance(ResultStatus.CONFIRMED))

    threads = [threading.Thread(target=confirm, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert ledger.get(request.id).confirmed_count == 20


def test_query_filters(ledger):
    old = make_request(created_at=utc_now() - timedelta(days=10))
    other_mint = make_request(mint=ADDRESSES[50], created_at=utc_now() - timedelta(hours=1))
    recent = make_request()
    for request in (old, other_mint, recent):
        ledger.record(request)
    ledger.update_result(recent.id, ledger_result(recent, 0).advance(ResultStatus.FAILED))

    assert [r.request.id for r in ledger.query()] == [old.id, other_mint.id, recent.id]
    assert [r.request.id for r in ledger.query(start=utc_now() - timedelta(days=1))] == [other_mint.id, recent.id]
    assert [r.request.id for r in ledger.query(mint=ADDRESSES[50])] == [other_mint.id]
    assert [r.request.id for r in ledger.query(status=ResultStatus.FAILED)] == [recent.id]


def test_get_missing_returns_none(ledger):
    assert ledger.get("does-not-exist") is None
