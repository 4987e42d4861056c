from __future__ import annotations

import threading
from datetime import date
from decimal import Decimal

import pytest

from gift_ledger.errors import BookingConflictError, LedgerValidationError
from gift_ledger.models import (
    Actor,
    ConstituentSnapshot,
    DayPart,
    GiftDraft,
    SponsorshipDraft,
    WorkflowContext,
)
from gift_ledger.sponsorship import (
    MSG_BOOKED_DATE,
    MSG_BOOKED_FULL,
    MSG_BOOKED_SLOT,
    check_booking_rules,
    locked_day_parts,
    parse_campaign_record_id,
    parse_day_part,
    required_amount_for,
    resolve_day_part,
)
from gift_ledger.store import GiftLedgerStore

SPONSORED = date(2025, 6, 1)


def _build_store(tmp_path) -> GiftLedgerStore:  # type: ignore[no-untyped-def]
    db_path = tmp_path / "gift_ledger_test.db"
    store = GiftLedgerStore(db_path, lock_timeout_seconds=10)
    store.init_db()
    return store


def _sponsored_context(slot: str, constituent_id: int = 101, sponsored_date: date = SPONSORED) -> WorkflowContext:
    return WorkflowContext.start(
        search_text=None,
        constituent=ConstituentSnapshot(constituent_id=constituent_id, full_name=f"Donor {constituent_id}"),
        gift=GiftDraft(
            amount=Decimal("250.00"),
            fund_id="7",
            campaign_id="1",
            sponsorship=SponsorshipDraft(is_enabled=True, sponsored_date=sponsored_date, slot=slot),
        ),
    )


@pytest.mark.parametrize(
    ("label", "expected"),
    [
        ("Full day", DayPart.FULL),
        ("FULL", DayPart.FULL),
        ("Half-day AM", DayPart.AM),
        ("am", DayPart.AM),
        ("Half-day PM", DayPart.PM),
        ("  pm  ", DayPart.PM),
    ],
)
def test_parse_day_part_maps_labels(label: str, expected: DayPart) -> None:
    assert parse_day_part(label) is expected


@pytest.mark.parametrize("label", [None, "", "   ", "Evening"])
def test_parse_day_part_rejects_unknown_labels(label: str | None) -> None:
    with pytest.raises(LedgerValidationError):
        parse_day_part(label)


def test_explicit_day_part_overrides_label() -> None:
    draft = SponsorshipDraft(is_enabled=True, sponsored_date=SPONSORED, slot="Sample tier", day_part=DayPart.PM)
    assert resolve_day_part(draft) is DayPart.PM


def test_parse_campaign_record_id() -> None:
    assert parse_campaign_record_id(" 12 ") == 12
    for bad in (None, "", "x1", "0", "-3"):
        with pytest.raises(LedgerValidationError):
            parse_campaign_record_id(bad)


def test_required_amount_prefers_threshold_and_never_goes_negative() -> None:
    gift = GiftDraft(amount=Decimal("250.00"))
    assert required_amount_for(gift) == Decimal("250.00")

    gift.sponsorship = SponsorshipDraft(threshold_amount=Decimal("500.00"))
    assert required_amount_for(gift) == Decimal("500.00")

    gift.sponsorship = SponsorshipDraft(threshold_amount=Decimal("-1.00"))
    assert required_amount_for(gift) == Decimal("0")


@pytest.mark.parametrize(
    ("existing", "requested", "message"),
    [
        (("FULL",), DayPart.AM, MSG_BOOKED_FULL),
        (("FULL",), DayPart.FULL, MSG_BOOKED_FULL),
        (("AM",), DayPart.FULL, MSG_BOOKED_DATE),
        (("PM",), DayPart.FULL, MSG_BOOKED_DATE),
        (("AM",), DayPart.AM, MSG_BOOKED_SLOT),
        (("AM", "PM"), DayPart.PM, MSG_BOOKED_SLOT),
    ],
)
def test_check_booking_rules_conflicts(existing: tuple[str, ...], requested: DayPart, message: str) -> None:
    with pytest.raises(BookingConflictError) as excinfo:
        check_booking_rules(existing, requested, 1, SPONSORED)

    assert str(excinfo.value) == message
    assert excinfo.value.requested == requested.value


@pytest.mark.parametrize(
    ("existing", "requested"),
    [((), DayPart.FULL), ((), DayPart.AM), (("AM",), DayPart.PM), (("pm ",), DayPart.AM)],
)
def test_check_booking_rules_allows_open_slots(existing: tuple[str, ...], requested: DayPart) -> None:
    check_booking_rules(existing, requested, 1, SPONSORED)


def test_locked_read_requires_open_transaction(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    connection = store._connect()
    try:
        with pytest.raises(RuntimeError):
            locked_day_parts(connection, 1, SPONSORED)
    finally:
        connection.close()


def test_worked_example_full_day_then_half_day_after_delete(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    full_day = _sponsored_context("Full day", constituent_id=101)
    store.save(full_day)

    morning = _sponsored_context("Half-day AM", constituent_id=202)
    with pytest.raises(BookingConflictError) as excinfo:
        store.save(morning)
    assert str(excinfo.value) == "That sponsorship date is already booked (FULL)."
    assert store.get_workflow(morning.workflow_id) is None
    assert store.list_fully_booked_dates(1, SPONSORED, SPONSORED) == [SPONSORED]

    store.mark_deleted(full_day.workflow_id, Actor(user="admin", machine="OFFICE"), "Donor cancelled")
    store.save(morning)

    assert store.list_reserved_day_parts(1, SPONSORED) == ["AM"]
    assert store.list_fully_booked_dates(1, SPONSORED, SPONSORED) == []
    active = store.list_reservations(campaign_id=1)
    assert [(row["day_part"], row["constituent_id"]) for row in active] == [("AM", 202)]
    assert len(store.list_reservations(campaign_id=1, include_cancelled=True)) == 2


def test_slot_sequences_only_reach_allowed_states(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)

    store.save(_sponsored_context("Half-day AM"))
    with pytest.raises(BookingConflictError) as duplicate_am:
        store.save(_sponsored_context("Half-day AM"))
    assert str(duplicate_am.value) == MSG_BOOKED_SLOT

    store.save(_sponsored_context("Half-day PM"))
    assert store.list_reserved_day_parts(1, SPONSORED) == ["AM", "PM"]
    assert store.list_fully_booked_dates(1, SPONSORED, SPONSORED) == [SPONSORED]

    with pytest.raises(BookingConflictError) as full_over_halves:
        store.save(_sponsored_context("Full day"))
    assert str(full_over_halves.value) == MSG_BOOKED_DATE

    other_day = date(2025, 6, 2)
    store.save(_sponsored_context("Full day", sponsored_date=other_day))
    for slot in ("Full day", "Half-day AM", "Half-day PM"):
        with pytest.raises(BookingConflictError):
            store.save(_sponsored_context(slot, sponsored_date=other_day))
    assert store.list_reserved_day_parts(1, other_day) == ["FULL"]


def test_resaving_a_workflow_keeps_its_own_slot(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    context = _sponsored_context("Full day")
    store.save(context)

    context.gift.sponsorship.slot = "Half-day PM"
    store.save(context)

    assert store.list_reserved_day_parts(1, SPONSORED) == ["PM"]
    store.save(_sponsored_context("Half-day AM", constituent_id=202))
    assert store.list_reserved_day_parts(1, SPONSORED) == ["AM", "PM"]


def test_fully_booked_dates_swap_reversed_range(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = _build_store(tmp_path)
    store.save(_sponsored_context("Full day", sponsored_date=date(2025, 6, 3)))
    store.save(_sponsored_context("Half-day AM", sponsored_date=date(2025, 6, 4)))

    booked = store.list_fully_booked_dates(1, date(2025, 6, 30), date(2025, 6, 1))

    assert booked == [date(2025, 6, 3)]
    assert store.list_fully_booked_dates(2, date(2025, 6, 1), date(2025, 6, 30)) == []
    assert store.list_fully_booked_dates(None, date(2025, 6, 1), date(2025, 6, 30)) == [date(2025, 6, 3)]


def test_concurrent_full_day_bookings_admit_exactly_one(tmp_path) -> None:  # type: ignore[no-untyped-def]
    db_path = tmp_path / "gift_ledger_race.db"
    GiftLedgerStore(db_path).init_db()

    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def book(constituent_id: int) -> None:
        store = GiftLedgerStore(db_path, lock_timeout_seconds=30)
        context = _sponsored_context("Full day", constituent_id=constituent_id)
        barrier.wait()
        try:
            store.save(context)
            result = "booked"
        except BookingConflictError as exc:
            result = str(exc)
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=book, args=(constituent_id,)) for constituent_id in (101, 202)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert sorted(outcomes) == sorted(["booked", MSG_BOOKED_FULL])
    assert GiftLedgerStore(db_path).list_reserved_day_parts(1, SPONSORED) == ["FULL"]
