"""Outbound transaction queue for remote pledge creation.

One row per (workflow, transaction type). A worker claims pending rows,
posts them to the Remote Gift API and marks each one succeeded or failed.
Enqueuing the same workflow again rewrites the payload and puts the row
back to ``Pending`` with a clean processing history.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum

from .config import get_settings
from .errors import LedgerValidationError, raise_if_cancelled
from .models import cents_from_amount, to_currency, to_db_timestamp, utc_now
from .store import ConnectionFactory, workflow_key

logger = logging.getLogger(__name__)

PLEDGE_CREATE = "PledgeCreate"


class TransactionStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


def _local_now() -> tuple[str, str, int]:
    now_local = datetime.now().astimezone()
    offset = now_local.utcoffset() or timedelta(0)
    return (
        now_local.replace(microsecond=0, tzinfo=None).isoformat(sep=" "),
        now_local.tzname() or "UTC",
        int(offset.total_seconds() // 60),
    )


class OutboundTransactionQueue(ConnectionFactory):
    REQUIRED_TABLES = ("outbound_transactions",)

    def enqueue_or_update_pending_pledge_create(
        self,
        workflow_id: uuid.UUID | str,
        constituent_id: int,
        amount: Decimal | int | str,
        pledge_date: date,
        fund_id: str,
        comments: str | None,
        request_json: str,
        client_machine: str | None = None,
        client_user: str | None = None,
        status_note: str | None = None,
        cancel: threading.Event | None = None,
    ) -> int:
        """Insert or reset the pledge-create row for a workflow and return its id."""
        key = workflow_key(workflow_id)
        if constituent_id <= 0:
            raise LedgerValidationError("A valid constituent id is required.", field="constituent_id")
        clean_amount = to_currency(amount)
        if clean_amount <= 0:
            raise LedgerValidationError("Amount must be greater than zero.", field="amount")
        if not (fund_id or "").strip():
            raise LedgerValidationError("Fund id is required.", field="fund_id")
        if not (request_json or "").strip():
            raise LedgerValidationError("Request JSON is required.", field="request_json")
        if pledge_date is None:
            raise LedgerValidationError("Pledge date is required.", field="pledge_date")

        settings = get_settings()
        machine = (client_machine or "").strip() or settings.client_machine
        user = (client_user or "").strip() or settings.client_user
        now_utc = to_db_timestamp(utc_now())
        local_stamp, local_tz, offset_minutes = _local_now()

        with self._transaction(self.REQUIRED_TABLES, cancel) as connection:
            connection.execute(
                """
                INSERT INTO outbound_transactions (
                    workflow_id,
                    transaction_type,
                    transaction_status,
                    status_note,
                    enqueued_at_utc,
                    enqueued_at_local,
                    enqueued_local_tz,
                    enqueued_local_utc_offset_minutes,
                    client_machine_name,
                    client_user,
                    constituent_id,
                    amount_cents,
                    pledge_date,
                    fund_id,
                    comments,
                    request_json,
                    processing_attempt_count
                )
                VALUES (?, ?, 'Pending', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                ON CONFLICT (workflow_id, transaction_type) DO UPDATE SET
                    transaction_status = 'Pending',
                    status_note = excluded.status_note,
                    enqueued_at_utc = excluded.enqueued_at_utc,
                    enqueued_at_local = excluded.enqueued_at_local,
                    enqueued_local_tz = excluded.enqueued_local_tz,
                    enqueued_local_utc_offset_minutes = excluded.enqueued_local_utc_offset_minutes,
                    client_machine_name = excluded.client_machine_name,
                    client_user = excluded.client_user,
                    constituent_id = excluded.constituent_id,
                    amount_cents = excluded.amount_cents,
                    pledge_date = excluded.pledge_date,
                    fund_id = excluded.fund_id,
                    comments = excluded.comments,
                    request_json = excluded.request_json,
                    processing_attempt_count = 0,
                    processing_started_at_utc = NULL,
                    processing_started_at_local = NULL,
                    processing_completed_at_utc = NULL,
                    processing_completed_at_local = NULL,
                    last_processing_attempt_at_utc = NULL,
                    last_processing_attempt_at_local = NULL,
                    last_processing_error_message = NULL,
                    processed_gift_id = NULL,
                    updated_at_utc = excluded.enqueued_at_utc,
                    updated_at_local = excluded.enqueued_at_local,
                    updated_local_tz = excluded.enqueued_local_tz,
                    updated_local_utc_offset_minutes = excluded.enqueued_local_utc_offset_minutes
                """,
                (
                    key,
                    PLEDGE_CREATE,
                    (status_note or "").strip() or None,
                    now_utc,
                    local_stamp,
                    local_tz,
                    offset_minutes,
                    machine,
                    user,
                    constituent_id,
                    cents_from_amount(clean_amount),
                    pledge_date.isoformat(),
                    fund_id.strip(),
                    (comments or "").strip() or None,
                    request_json,
                ),
            )
            row = connection.execute(
                "SELECT id FROM outbound_transactions WHERE workflow_id = ? AND transaction_type = ?",
                (key, PLEDGE_CREATE),
            ).fetchone()

        transaction_id = int(row["id"])
        logger.info("Queued %s for workflow %s as transaction %s", PLEDGE_CREATE, key, transaction_id)
        return transaction_id

    # ---------------------------------------------------------- worker side

    def _set_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        assignments: str,
        parameters: tuple[object, ...],
        only_from: tuple[TransactionStatus, ...] = (),
        cancel: threading.Event | None = None,
    ) -> bool:
        local_stamp, local_tz, offset_minutes = _local_now()
        guard = ""
        guard_parameters: tuple[object, ...] = ()
        if only_from:
            guard = f" AND transaction_status IN ({', '.join('?' for _ in only_from)})"
            guard_parameters = tuple(item.value for item in only_from)

        with self._transaction(self.REQUIRED_TABLES, cancel) as connection:
            cursor = connection.execute(
                f"""
                UPDATE outbound_transactions
                SET transaction_status = ?,
                    {assignments},
                    updated_at_utc = ?,
                    updated_at_local = ?,
                    updated_local_tz = ?,
                    updated_local_utc_offset_minutes = ?
                WHERE id = ?{guard}
                """,
                (
                    status.value,
                    *parameters,
                    to_db_timestamp(utc_now()),
                    local_stamp,
                    local_tz,
                    offset_minutes,
                    transaction_id,
                    *guard_parameters,
                ),
            )
            updated = cursor.rowcount > 0
        return updated

    def mark_processing(self, transaction_id: int, cancel: threading.Event | None = None) -> bool:
        local_stamp, _, _ = _local_now()
        now_utc = to_db_timestamp(utc_now())
        return self._set_status(
            transaction_id,
            TransactionStatus.PROCESSING,
            """processing_attempt_count = processing_attempt_count + 1,
                    processing_started_at_utc = ?,
                    processing_started_at_local = ?,
                    last_processing_attempt_at_utc = ?,
                    last_processing_attempt_at_local = ?""",
            (now_utc, local_stamp, now_utc, local_stamp),
            only_from=(TransactionStatus.PENDING,),
            cancel=cancel,
        )

    def mark_succeeded(self, transaction_id: int, gift_id: str | None, cancel: threading.Event | None = None) -> bool:
        local_stamp, _, _ = _local_now()
        updated = self._set_status(
            transaction_id,
            TransactionStatus.SUCCEEDED,
            """processed_gift_id = ?,
                    processing_completed_at_utc = ?,
                    processing_completed_at_local = ?,
                    last_processing_error_message = NULL""",
            ((gift_id or "").strip() or None, to_db_timestamp(utc_now()), local_stamp),
            cancel=cancel,
        )
        if updated:
            logger.info("Outbound transaction %s succeeded (gift %s)", transaction_id, gift_id)
        return updated

    def mark_failed(self, transaction_id: int, error_message: str | None, cancel: threading.Event | None = None) -> bool:
        local_stamp, _, _ = _local_now()
        message = (error_message or "").strip() or "Unknown error."
        updated = self._set_status(
            transaction_id,
            TransactionStatus.FAILED,
            """last_processing_error_message = ?,
                    processing_completed_at_utc = ?,
                    processing_completed_at_local = ?""",
            (message, to_db_timestamp(utc_now()), local_stamp),
            cancel=cancel,
        )
        if updated:
            logger.warning("Outbound transaction %s failed: %s", transaction_id, message)
        return updated

    @staticmethod
    def _reset_stale(connection: sqlite3.Connection, stale_after: timedelta) -> int:
        cutoff = to_db_timestamp(utc_now() - stale_after)
        cursor = connection.execute(
            """
            UPDATE outbound_transactions
            SET transaction_status = 'Pending',
                status_note = 'Reset after stale processing.'
            WHERE transaction_status = 'Processing'
              AND (processing_started_at_utc IS NULL OR processing_started_at_utc < ?)
            """,
            (cutoff,),
        )
        return cursor.rowcount

    def reset_stale_processing(
        self,
        stale_after: timedelta | None = None,
        cancel: threading.Event | None = None,
    ) -> int:
        window = stale_after or timedelta(minutes=get_settings().queue_stale_minutes)
        with self._transaction(self.REQUIRED_TABLES, cancel) as connection:
            reset = self._reset_stale(connection, window)
        if reset:
            logger.warning("Reset %s stale processing transaction(s)", reset)
        return reset

    def claim_pending_batch(
        self,
        batch_size: int | None = None,
        stale_after: timedelta | None = None,
        max_attempts: int | None = None,
        cancel: threading.Event | None = None,
    ) -> list[sqlite3.Row]:
        """Move up to ``batch_size`` of the oldest pending rows to Processing and return them."""
        settings = get_settings()
        size = max(1, min(batch_size or settings.queue_batch_size, 200))
        window = stale_after or timedelta(minutes=settings.queue_stale_minutes)
        attempts = max_attempts or settings.queue_max_attempts
        now_utc = to_db_timestamp(utc_now())
        local_stamp, _, _ = _local_now()

        with self._transaction(self.REQUIRED_TABLES, cancel) as connection:
            self._reset_stale(connection, window)
            raise_if_cancelled(cancel)
            ids = [
                int(row["id"])
                for row in connection.execute(
                    """
                    SELECT id
                    FROM outbound_transactions
                    WHERE transaction_status = 'Pending'
                      AND processing_attempt_count < ?
                    ORDER BY enqueued_at_utc ASC, id ASC
                    LIMIT ?
                    """,
                    (attempts, size),
                ).fetchall()
            ]
            if not ids:
                return []

            placeholders = ", ".join("?" for _ in ids)
            connection.execute(
                f"""
                UPDATE outbound_transactions
                SET transaction_status = 'Processing',
                    processing_attempt_count = processing_attempt_count + 1,
                    processing_started_at_utc = ?,
                    processing_started_at_local = ?,
                    last_processing_attempt_at_utc = ?,
                    last_processing_attempt_at_local = ?
                WHERE id IN ({placeholders})
                """,
                (now_utc, local_stamp, now_utc, local_stamp, *ids),
            )
            claimed = connection.execute(
                f"""
                SELECT *
                FROM outbound_transactions
                WHERE id IN ({placeholders})
                ORDER BY enqueued_at_utc ASC, id ASC
                """,
                ids,
            ).fetchall()

        logger.info("Claimed %s outbound transaction(s)", len(claimed))
        return claimed

    # --------------------------------------------------------------- queries

    def get(self, transaction_id: int) -> sqlite3.Row | None:
        with self._reader(self.REQUIRED_TABLES) as connection:
            return connection.execute(
                "SELECT * FROM outbound_transactions WHERE id = ?",
                (transaction_id,),
            ).fetchone()

    def get_by_workflow(
        self,
        workflow_id: uuid.UUID | str,
        transaction_type: str = PLEDGE_CREATE,
    ) -> sqlite3.Row | None:
        with self._reader(self.REQUIRED_TABLES) as connection:
            return connection.execute(
                "SELECT * FROM outbound_transactions WHERE workflow_id = ? AND transaction_type = ?",
                (workflow_key(workflow_id), transaction_type),
            ).fetchone()

    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TransactionStatus}
        with self._reader(self.REQUIRED_TABLES) as connection:
            rows = connection.execute(
                """
                SELECT transaction_status, COUNT(*) AS total
                FROM outbound_transactions
                GROUP BY transaction_status
                """
            ).fetchall()
        for row in rows:
            counts[str(row["transaction_status"])] = int(row["total"])
        return counts

    def list_recent(self, take: int = 100, status: TransactionStatus | str | None = None) -> list[sqlite3.Row]:
        limit = max(1, min(take, 1000))
        status_value = TransactionStatus(status).value if status else None
        with self._reader(self.REQUIRED_TABLES) as connection:
            return connection.execute(
                """
                SELECT *
                FROM outbound_transactions
                WHERE (? IS NULL OR transaction_status = ?)
                ORDER BY COALESCE(updated_at_utc, enqueued_at_utc) DESC, id DESC
                LIMIT ?
                """,
                (status_value, status_value, limit),
            ).fetchall()
