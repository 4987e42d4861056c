from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from gift_ledger import outbound
from gift_ledger.config import get_settings
from gift_ledger.errors import LedgerValidationError
from gift_ledger.outbound import PLEDGE_CREATE, OutboundTransactionQueue, TransactionStatus
from gift_ledger.store import GiftLedgerStore


def _build_queue(tmp_path) -> OutboundTransactionQueue:  # type: ignore[no-untyped-def]
    db_path = tmp_path / "gift_ledger_test.db"
    GiftLedgerStore(db_path).init_db()
    return OutboundTransactionQueue(db_path)


def _enqueue(queue: OutboundTransactionQueue, workflow_id: uuid.UUID, **overrides) -> int:  # type: ignore[no-untyped-def]
    values = {
        "workflow_id": workflow_id,
        "constituent_id": 101,
        "amount": Decimal("50.00"),
        "pledge_date": date(2025, 5, 1),
        "fund_id": "7",
        "comments": "Radio pledge",
        "request_json": '{"amount": "50.00"}',
        "client_machine": "FRONTDESK-1",
        "client_user": "jdoe",
    }
    values.update(overrides)
    return queue.enqueue_or_update_pending_pledge_create(**values)


def test_enqueue_records_pending_row_with_local_time(tmp_path) -> None:  # type: ignore[no-untyped-def]
    queue = _build_queue(tmp_path)
    workflow_id = uuid.uuid4()

    transaction_id = _enqueue(queue, workflow_id)

    row = queue.get(transaction_id)
    assert row["workflow_id"] == str(workflow_id)
    assert row["transaction_type"] == PLEDGE_CREATE
    assert row["transaction_status"] == "Pending"
    assert row["processing_attempt_count"] == 0
    assert row["amount_cents"] == 5000
    assert row["pledge_date"] == "2025-05-01"
    assert row["client_user"] == "jdoe"
    assert row["enqueued_at_utc"]
    assert row["enqueued_at_local"]
    assert row["enqueued_local_tz"]
    assert isinstance(row["enqueued_local_utc_offset_minutes"], int)


def test_enqueue_defaults_blank_client_identity(tmp_path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    queue = _build_queue(tmp_path)
    settings = get_settings()
    monkeypatch.setattr(settings, "client_machine", "KIOSK-9")
    monkeypatch.setattr(settings, "client_user", "volunteer")

    transaction_id = _enqueue(queue, uuid.uuid4(), client_machine="  ", client_user=None)

    row = queue.get(transaction_id)
    assert row["client_machine_name"] == "KIOSK-9"
    assert row["client_user"] == "volunteer"


@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"workflow_id": uuid.UUID(int=0)}, "workflow_id"),
        ({"constituent_id": 0}, "constituent_id"),
        ({"amount": Decimal("0")}, "amount"),
        ({"amount": Decimal("1.999")}, "amount"),
        ({"fund_id": "  "}, "fund_id"),
        ({"request_json": ""}, "request_json"),
    ],
)
def test_enqueue_validates_input(tmp_path, overrides, field) -> None:  # type: ignore[no-untyped-def]
    queue = _build_queue(tmp_path)
    values = dict(overrides)
    workflow_id = values.pop("workflow_id", uuid.uuid4())

    with pytest.raises(LedgerValidationError) as excinfo:
        _enqueue(queue, workflow_id, **values)

    assert excinfo.value.field == field
    assert queue.list_recent() == []


def test_re_enqueue_resets_row_to_pending(tmp_path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    queue = _build_queue(tmp_path)
    clock = {
        "utc": datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc),
        "local": ("2025-01-01 04:00:00", "CST", -360),
    }
    monkeypatch.setattr(outbound, "utc_now", lambda: clock["utc"])
    monkeypatch.setattr(outbound, "_local_now", lambda: clock["local"])
    workflow_id = uuid.uuid4()
    transaction_id = _enqueue(queue, workflow_id)

    claimed = queue.claim_pending_batch(batch_size=5)
    assert [row["id"] for row in claimed] == [transaction_id]
    assert queue.mark_failed(transaction_id, "Remote API timeout")
    failed = queue.get(transaction_id)
    assert failed["transaction_status"] == "Failed"
    assert failed["processing_attempt_count"] == 1
    assert failed["last_processing_error_message"] == "Remote API timeout"
    assert failed["enqueued_at_utc"] == "2025-01-01 10:00:00"

    clock["utc"] = datetime(2025, 1, 2, 9, 30, tzinfo=timezone.utc)
    clock["local"] = ("2025-01-02 10:30:00", "CET", 60)
    again = _enqueue(
        queue,
        workflow_id,
        amount=Decimal("75.00"),
        request_json='{"amount": "75.00"}',
    )

    assert again == transaction_id
    row = queue.get(transaction_id)
    assert row["transaction_status"] == "Pending"
    assert row["processing_attempt_count"] == 0
    assert row["amount_cents"] == 7500
    assert row["request_json"] == '{"amount": "75.00"}'
    assert row["last_processing_error_message"] is None
    assert row["processing_started_at_utc"] is None
    assert row["processing_completed_at_utc"] is None
    assert row["processed_gift_id"] is None
    assert row["updated_at_utc"] == "2025-01-02 09:30:00"
    assert row["enqueued_at_utc"] == "2025-01-02 09:30:00"
    assert row["enqueued_at_local"] == "2025-01-02 10:30:00"
    assert row["enqueued_local_tz"] == "CET"
    assert row["enqueued_local_utc_offset_minutes"] == 60
    assert len(queue.list_recent()) == 1


def test_re_enqueued_row_moves_behind_newer_pending_rows(tmp_path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    queue = _build_queue(tmp_path)
    clock = {"utc": datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)}
    monkeypatch.setattr(outbound, "utc_now", lambda: clock["utc"])
    first_workflow = uuid.uuid4()
    first = _enqueue(queue, first_workflow)
    clock["utc"] = datetime(2025, 1, 1, 11, 0, tzinfo=timezone.utc)
    second = _enqueue(queue, uuid.uuid4())
    clock["utc"] = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    _enqueue(queue, first_workflow, request_json='{"amount": "60.00"}')

    claimed = queue.claim_pending_batch(batch_size=2)

    assert [row["id"] for row in claimed] == [second, first]


def test_claim_pending_batch_takes_oldest_first(tmp_path) -> None:  # type: ignore[no-untyped-def]
    queue = _build_queue(tmp_path)
    ids = [_enqueue(queue, uuid.uuid4()) for _ in range(3)]

    first = queue.claim_pending_batch(batch_size=2)
    second = queue.claim_pending_batch(batch_size=2)

    assert [row["id"] for row in first] == ids[:2]
    assert [row["id"] for row in second] == ids[2:]
    assert all(row["transaction_status"] == "Processing" for row in first + second)
    assert queue.claim_pending_batch(batch_size=2) == []


def test_mark_succeeded_and_status_counts(tmp_path) -> None:  # type: ignore[no-untyped-def]
    queue = _build_queue(tmp_path)
    workflow_id = uuid.uuid4()
    transaction_id = _enqueue(queue, workflow_id)
    _enqueue(queue, uuid.uuid4())

    assert queue.mark_processing(transaction_id)
    assert not queue.mark_processing(transaction_id)
    assert queue.mark_succeeded(transaction_id, "G-500")
    assert not queue.mark_succeeded(9999, "G-1")

    row = queue.get_by_workflow(workflow_id)
    assert row["transaction_status"] == "Succeeded"
    assert row["processed_gift_id"] == "G-500"
    assert row["processing_completed_at_utc"] is not None

    assert queue.status_counts() == {"Pending": 1, "Processing": 0, "Succeeded": 1, "Failed": 0}
    assert [r["id"] for r in queue.list_recent(status=TransactionStatus.SUCCEEDED)] == [transaction_id]


def test_stale_processing_rows_return_to_pending_until_attempt_cap(tmp_path) -> None:  # type: ignore[no-untyped-def]
    queue = _build_queue(tmp_path)
    transaction_id = _enqueue(queue, uuid.uuid4())
    queue.claim_pending_batch(batch_size=1)

    assert queue.reset_stale_processing(stale_after=timedelta(minutes=30)) == 0
    assert queue.reset_stale_processing(stale_after=timedelta(seconds=-5)) == 1
    assert queue.get(transaction_id)["transaction_status"] == "Pending"

    assert queue.claim_pending_batch(batch_size=1, max_attempts=1) == []
    reclaimed = queue.claim_pending_batch(batch_size=1, max_attempts=2)
    assert [row["processing_attempt_count"] for row in reclaimed] == [2]
