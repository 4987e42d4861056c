"""Sponsorship slot allocation.

A sponsorship day is split into day-parts. FULL is exclusive for the whole
date; AM and PM can both be booked but each only once. For one campaign and
date, the non-cancelled reservations are always one of ``{}``, ``{FULL}``,
``{AM}``, ``{PM}`` or ``{AM, PM}``.

Every function here runs on a connection that already holds the ledger's
``BEGIN IMMEDIATE`` transaction. SQLite grants that transaction the database
write lock before the first read, so the read of existing reservations below
blocks any concurrent read-then-insert for the same date until we commit or
roll back. The partial unique index on active slots backs this up.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import date
from decimal import Decimal
from typing import Iterable

from .errors import BookingConflictError, LedgerValidationError, raise_if_cancelled
from .models import DayPart, GiftDraft, SponsorshipDraft, cents_from_amount, to_db_timestamp, utc_now

logger = logging.getLogger(__name__)

MSG_BOOKED_FULL = "That sponsorship date is already booked (FULL)."
MSG_BOOKED_DATE = "That sponsorship date is already booked."
MSG_BOOKED_SLOT = "That sponsorship date/time is already booked."


def parse_day_part(slot_label: str | None) -> DayPart:
    """Map a free-text slot label such as "Half-day AM" to its day-part."""
    label = (slot_label or "").strip().lower()
    if not label:
        raise LedgerValidationError("A sponsorship slot is required.", field="slot")
    if "full" in label:
        return DayPart.FULL
    if "am" in label:
        return DayPart.AM
    if "pm" in label:
        return DayPart.PM
    raise LedgerValidationError(
        f"Unable to determine the sponsorship day-part from slot {slot_label!r}.",
        field="slot",
    )


def resolve_day_part(sponsorship: SponsorshipDraft) -> DayPart:
    if sponsorship.day_part is not None:
        return DayPart(sponsorship.day_part)
    return parse_day_part(sponsorship.slot)


def parse_campaign_record_id(campaign_id: str | int | None) -> int:
    raw = str(campaign_id if campaign_id is not None else "").strip()
    try:
        record_id = int(raw)
    except ValueError:
        record_id = 0
    if record_id <= 0:
        raise LedgerValidationError(
            "Unable to determine the campaign record id for the sponsorship reservation.",
            field="campaign_id",
        )
    return record_id


def required_amount_for(gift: GiftDraft) -> Decimal:
    threshold = gift.sponsorship.threshold_amount
    required = threshold if threshold is not None else gift.amount
    return max(Decimal(required), Decimal("0"))


def check_booking_rules(
    existing: Iterable[str],
    requested: DayPart,
    campaign_id: int,
    sponsored_date: date,
) -> None:
    booked = tuple(sorted({str(part).strip().upper() for part in existing if part}))

    if DayPart.FULL.value in booked:
        raise BookingConflictError(MSG_BOOKED_FULL, campaign_id, sponsored_date, requested.value, booked)
    if requested is DayPart.FULL:
        if booked:
            raise BookingConflictError(MSG_BOOKED_DATE, campaign_id, sponsored_date, requested.value, booked)
        return
    if requested.value in booked:
        raise BookingConflictError(MSG_BOOKED_SLOT, campaign_id, sponsored_date, requested.value, booked)


def locked_day_parts(
    connection: sqlite3.Connection,
    campaign_id: int,
    sponsored_date: date,
) -> tuple[str, ...]:
    if not connection.in_transaction:
        raise RuntimeError("Reservations must be read inside an open ledger transaction.")
    rows = connection.execute(
        """
        SELECT DISTINCT UPPER(TRIM(day_part)) AS day_part
        FROM sponsorship_reservations
        WHERE is_cancelled = 0
          AND campaign_id = ?
          AND sponsored_date = ?
        """,
        (campaign_id, sponsored_date.isoformat()),
    ).fetchall()
    return tuple(row["day_part"] for row in rows if row["day_part"])


def reserve_slot(
    connection: sqlite3.Connection,
    campaign_id: int,
    sponsored_date: date,
    slot_label: str | None,
    gift_line_id: int,
    required_amount: Decimal,
    constituent_id: int,
    day_part: DayPart | None = None,
    cancel: threading.Event | None = None,
) -> int:
    requested = day_part if day_part is not None else parse_day_part(slot_label)

    raise_if_cancelled(cancel)
    existing = locked_day_parts(connection, campaign_id, sponsored_date)
    try:
        check_booking_rules(existing, requested, campaign_id, sponsored_date)
    except BookingConflictError:
        logger.warning(
            "Sponsorship conflict campaign=%s date=%s requested=%s existing=%s",
            campaign_id,
            sponsored_date,
            requested.value,
            existing,
        )
        raise

    required_cents = max(cents_from_amount(required_amount), 0)
    tier = (slot_label or "").strip() or None

    raise_if_cancelled(cancel)
    try:
        cursor = connection.execute(
            """
            INSERT INTO sponsorship_reservations (
                campaign_id,
                constituent_id,
                gift_line_id,
                sponsored_date,
                day_part,
                sponsor_tier,
                required_amount_cents,
                is_cancelled,
                created_at_utc
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                campaign_id,
                constituent_id,
                gift_line_id,
                sponsored_date.isoformat(),
                requested.value,
                tier,
                required_cents,
                to_db_timestamp(utc_now()),
            ),
        )
    except sqlite3.IntegrityError as exc:
        if "unique" not in str(exc).lower():
            raise
        raise BookingConflictError(
            MSG_BOOKED_SLOT, campaign_id, sponsored_date, requested.value, existing
        ) from exc

    reservation_id = cursor.lastrowid
    if reservation_id is None:
        raise RuntimeError("Insert did not return a row id.")
    logger.info(
        "Reserved %s on %s for campaign %s (gift line %s)",
        requested.value,
        sponsored_date,
        campaign_id,
        gift_line_id,
    )
    return reservation_id


def release_slots_for_gift(
    connection: sqlite3.Connection,
    gift_line_id: int,
    cancelled_by: str,
    reason: str | None,
    cancel: threading.Event | None = None,
) -> int:
    """Cancel the active reservations held by a gift line, keeping their rows."""
    raise_if_cancelled(cancel)
    cursor = connection.execute(
        """
        UPDATE sponsorship_reservations
        SET is_cancelled = 1,
            cancelled_at_utc = ?,
            cancelled_by = ?,
            cancelled_reason = ?
        WHERE gift_line_id = ?
          AND is_cancelled = 0
        """,
        (
            to_db_timestamp(utc_now()),
            cancelled_by,
            (reason or "").strip() or None,
            gift_line_id,
        ),
    )
    if cursor.rowcount:
        logger.info("Released %s reservation(s) held by gift line %s", cursor.rowcount, gift_line_id)
    return cursor.rowcount


def drop_reservations_for_workflow(
    connection: sqlite3.Connection,
    workflow_id: str,
    cancel: threading.Event | None = None,
) -> int:
    """Remove the reservations of a workflow's gift lines before they are replaced."""
    raise_if_cancelled(cancel)
    cursor = connection.execute(
        """
        DELETE FROM sponsorship_reservations
        WHERE gift_line_id IN (
            SELECT g.id
            FROM gift_workflow_gifts g
            WHERE g.workflow_id = ?
        )
        """,
        (workflow_id,),
    )
    return cursor.rowcount
