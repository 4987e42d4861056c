"""SQLite-backed workflow ledger for donation entry."""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterator

from .config import get_settings
from .errors import (
    LedgerValidationError,
    TransientStoreError,
    WorkflowNotFoundError,
    raise_if_cancelled,
    translate_operational_error,
)
from .models import (
    Actor,
    DayPart,
    DeletionOutcome,
    LocalTransactionQuery,
    RemoteDeleteResult,
    WorkflowContext,
    cents_from_amount,
    to_currency,
    to_db_timestamp,
    utc_now,
)
from .schema import apply_migrations, verify_schema
from .sponsorship import (
    drop_reservations_for_workflow,
    parse_campaign_record_id,
    release_slots_for_gift,
    required_amount_for,
    reserve_slot,
    resolve_day_part,
)

logger = logging.getLogger(__name__)

_DAY_PART_ORDER = {DayPart.FULL.value: 0, DayPart.AM.value: 1, DayPart.PM.value: 2}


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _lastrowid(cursor: sqlite3.Cursor) -> int:
    row_id = cursor.lastrowid
    if row_id is None:
        raise RuntimeError("Insert did not return a row id.")
    return row_id


def _db_bool(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _iso_date(value: date | None) -> str | None:
    return value.isoformat() if value else None


def _like_pattern(search: str) -> str:
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def workflow_key(workflow_id: uuid.UUID | str) -> str:
    try:
        parsed = workflow_id if isinstance(workflow_id, uuid.UUID) else uuid.UUID(str(workflow_id).strip())
    except ValueError as exc:
        raise LedgerValidationError("Workflow id is not a valid identifier.", field="workflow_id") from exc
    if parsed.int == 0:
        raise LedgerValidationError("Workflow id is required.", field="workflow_id")
    return str(parsed)


@dataclass(frozen=True)
class _SavePlan:
    workflow_id: str
    amount_cents: int
    campaign_record_id: int | None
    day_part: DayPart | None


class ConnectionFactory:
    """Opens autocommit connections so transactions are explicit."""

    def __init__(self, db_path: str | Path | None = None, lock_timeout_seconds: float | None = None) -> None:
        settings = get_settings()
        self.db_path = Path(db_path) if db_path is not None else settings.db_path
        self.lock_timeout_seconds = (
            lock_timeout_seconds if lock_timeout_seconds is not None else settings.lock_timeout_seconds
        )
        self._schema_verified = False
        self._schema_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(
            self.db_path,
            timeout=self.lock_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def init_db(self) -> list[int]:
        try:
            with closing(self._connect()) as connection:
                applied = apply_migrations(connection)
        except sqlite3.OperationalError as exc:
            raise translate_operational_error(exc) from exc
        with self._schema_lock:
            self._schema_verified = True
        return applied

    def _ensure_schema(self, connection: sqlite3.Connection, required_tables: tuple[str, ...]) -> None:
        if self._schema_verified:
            return
        with self._schema_lock:
            if not self._schema_verified:
                verify_schema(connection, required_tables)
                self._schema_verified = True

    @contextmanager
    def _transaction(
        self,
        required_tables: tuple[str, ...],
        cancel: threading.Event | None = None,
    ) -> Iterator[sqlite3.Connection]:
        raise_if_cancelled(cancel)
        connection = self._connect()
        try:
            self._ensure_schema(connection, required_tables)
            connection.execute("BEGIN IMMEDIATE")
            yield connection
            raise_if_cancelled(cancel)
            connection.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            self._rollback(connection)
            translated = translate_operational_error(exc)
            if isinstance(translated, TransientStoreError):
                logger.warning("Transient store failure, rolled back: %s", exc)
            raise translated from exc
        except BaseException:
            self._rollback(connection)
            raise
        finally:
            connection.close()

    @contextmanager
    def _reader(self, required_tables: tuple[str, ...]) -> Iterator[sqlite3.Connection]:
        connection = self._connect()
        try:
            self._ensure_schema(connection, required_tables)
            yield connection
        except sqlite3.OperationalError as exc:
            raise translate_operational_error(exc) from exc
        finally:
            connection.close()

    @staticmethod
    def _rollback(connection: sqlite3.Connection) -> None:
        if connection.in_transaction:
            connection.execute("ROLLBACK")


class GiftLedgerStore(ConnectionFactory):
    """Persistence for gift workflows, sponsorship reservations, and deletions."""

    REQUIRED_TABLES = (
        "gift_workflows",
        "gift_workflow_gifts",
        "gift_workflow_sponsorships",
        "sponsorship_reservations",
        "deleted_pledges",
    )

    # ----------------------------------------------------------------- saving

    def _plan_save(self, context: WorkflowContext) -> _SavePlan:
        workflow_id = workflow_key(context.workflow_id)
        if context.constituent.constituent_id <= 0:
            raise LedgerValidationError("A valid constituent id is required.", field="constituent_id")

        amount = to_currency(context.gift.amount, field="amount")
        if amount <= 0:
            raise LedgerValidationError("Gift amount must be greater than zero.", field="amount")

        sponsorship = context.gift.sponsorship
        if not sponsorship.is_enabled:
            return _SavePlan(workflow_id, cents_from_amount(amount), None, None)
        if sponsorship.sponsored_date is None:
            raise LedgerValidationError("A sponsorship date is required.", field="sponsored_date")

        campaign_record_id = parse_campaign_record_id(context.gift.campaign_id)
        day_part = resolve_day_part(sponsorship)
        if sponsorship.threshold_amount is not None:
            to_currency(sponsorship.threshold_amount, field="threshold_amount")
        return _SavePlan(
            workflow_id=workflow_id,
            amount_cents=cents_from_amount(amount),
            campaign_record_id=campaign_record_id,
            day_part=day_part,
        )

    def save(self, context: WorkflowContext, cancel: threading.Event | None = None) -> int:
        """Persist the workflow header and replace its child rows atomically.

        Safe to repeat with the same workflow id: the header is upserted and
        the gift line, sponsorship line and reservation are rebuilt, so a retry
        converges on the same rows. Returns the gift line id.
        """
        plan = self._plan_save(context)

        with self._transaction(self.REQUIRED_TABLES, cancel) as connection:
            previous_gift = self._first_child(connection, "gift_workflow_gifts", plan.workflow_id)
            if previous_gift is not None and previous_gift["is_deleted"]:
                raise LedgerValidationError(
                    f"Workflow {plan.workflow_id} has been deleted and cannot be saved again.",
                    field="workflow_id",
                )
            previous_sponsorship = self._first_child(connection, "gift_workflow_sponsorships", plan.workflow_id)

            raise_if_cancelled(cancel)
            self._upsert_header(connection, context, plan.workflow_id)

            drop_reservations_for_workflow(connection, plan.workflow_id, cancel)
            self._delete_children(connection, plan.workflow_id, cancel)

            raise_if_cancelled(cancel)
            gift_line_id = self._insert_gift(connection, context, plan, previous_gift)

            if plan.day_part is not None and plan.campaign_record_id is not None:
                raise_if_cancelled(cancel)
                self._insert_sponsorship(connection, context, plan, previous_sponsorship)
                sponsorship = context.gift.sponsorship
                assert sponsorship.sponsored_date is not None
                reserve_slot(
                    connection,
                    campaign_id=plan.campaign_record_id,
                    sponsored_date=sponsorship.sponsored_date,
                    slot_label=sponsorship.slot or plan.day_part.value,
                    gift_line_id=gift_line_id,
                    required_amount=required_amount_for(context.gift),
                    constituent_id=context.constituent.constituent_id,
                    day_part=plan.day_part,
                    cancel=cancel,
                )

        logger.info("Saved workflow %s (gift line %s)", plan.workflow_id, gift_line_id)
        return gift_line_id

    def save_header_only(self, context: WorkflowContext, cancel: threading.Event | None = None) -> None:
        """Update only the workflow row, leaving gift and sponsorship rows alone."""
        workflow_id = workflow_key(context.workflow_id)
        if context.constituent.constituent_id <= 0:
            raise LedgerValidationError("A valid constituent id is required.", field="constituent_id")

        with self._transaction(self.REQUIRED_TABLES, cancel) as connection:
            self._upsert_header(connection, context, workflow_id)
        logger.debug("Saved workflow header %s", workflow_id)

    def _upsert_header(self, connection: sqlite3.Connection, context: WorkflowContext, workflow_id: str) -> None:
        connection.execute(
            """
            INSERT INTO gift_workflows (
                workflow_id,
                created_at_utc,
                completed_at_utc,
                machine_name,
                windows_user,
                status,
                search_text,
                constituent_id,
                constituent_name,
                is_first_time_giver,
                is_new_radio_constituent,
                context_json,
                context_version,
                updated_at_utc
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (workflow_id) DO UPDATE SET
                completed_at_utc = excluded.completed_at_utc,
                machine_name = excluded.machine_name,
                windows_user = excluded.windows_user,
                status = excluded.status,
                search_text = excluded.search_text,
                constituent_id = excluded.constituent_id,
                constituent_name = excluded.constituent_name,
                is_first_time_giver = excluded.is_first_time_giver,
                is_new_radio_constituent = excluded.is_new_radio_constituent,
                context_json = excluded.context_json,
                context_version = excluded.context_version,
                updated_at_utc = excluded.updated_at_utc
            """,
            (
                workflow_id,
                to_db_timestamp(context.started_at_utc),
                to_db_timestamp(context.completed_at_utc),
                context.machine_name,
                context.windows_user,
                context.status.value,
                _clean(context.search_text),
                context.constituent.constituent_id,
                _clean(context.constituent.full_name),
                _db_bool(context.is_first_time_giver),
                _db_bool(context.is_new_radio_constituent),
                context.to_json(),
                context.schema_version,
                to_db_timestamp(utc_now()),
            ),
        )

    @staticmethod
    def _first_child(connection: sqlite3.Connection, table_name: str, workflow_id: str) -> sqlite3.Row | None:
        return connection.execute(
            f"SELECT * FROM {table_name} WHERE workflow_id = ? ORDER BY id ASC LIMIT 1",
            (workflow_id,),
        ).fetchone()

    @staticmethod
    def _delete_children(
        connection: sqlite3.Connection,
        workflow_id: str,
        cancel: threading.Event | None,
    ) -> None:
        raise_if_cancelled(cancel)
        connection.execute("DELETE FROM gift_workflow_sponsorships WHERE workflow_id = ?", (workflow_id,))
        connection.execute("DELETE FROM gift_workflow_gifts WHERE workflow_id = ?", (workflow_id,))

    def _insert_gift(
        self,
        connection: sqlite3.Connection,
        context: WorkflowContext,
        plan: _SavePlan,
        previous: sqlite3.Row | None,
    ) -> int:
        gift = context.gift
        api = context.api
        cursor = connection.execute(
            """
            INSERT INTO gift_workflow_gifts (
                id,
                workflow_id,
                constituent_id,
                amount_cents,
                frequency,
                installments,
                pledge_date,
                start_date,
                fund_id,
                campaign_id,
                appeal_id,
                package_id,
                send_reminder,
                comments,
                api_attempted_at_utc,
                api_succeeded,
                api_gift_id,
                api_error_message,
                created_at_utc
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                previous["id"] if previous is not None else None,
                plan.workflow_id,
                context.constituent.constituent_id,
                plan.amount_cents,
                _clean(gift.frequency),
                gift.installments,
                _iso_date(gift.pledge_date),
                _iso_date(gift.start_date),
                _clean(gift.fund_id),
                _clean(gift.campaign_id),
                _clean(gift.appeal_id),
                _clean(gift.package_id),
                1 if gift.send_reminder else 0,
                _clean(gift.comments),
                to_db_timestamp(api.attempted_at_utc),
                1 if api.success else 0,
                _clean(api.gift_id),
                _clean(api.error_message),
                previous["created_at_utc"] if previous is not None else to_db_timestamp(utc_now()),
            ),
        )
        return _lastrowid(cursor)

    def _insert_sponsorship(
        self,
        connection: sqlite3.Connection,
        context: WorkflowContext,
        plan: _SavePlan,
        previous: sqlite3.Row | None,
    ) -> int:
        sponsorship = context.gift.sponsorship
        threshold = sponsorship.threshold_amount
        cursor = connection.execute(
            """
            INSERT INTO gift_workflow_sponsorships (
                id,
                workflow_id,
                constituent_id,
                sponsored_date,
                slot,
                threshold_amount_cents,
                created_at_utc
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                previous["id"] if previous is not None else None,
                plan.workflow_id,
                context.constituent.constituent_id,
                _iso_date(sponsorship.sponsored_date),
                _clean(sponsorship.slot) or (plan.day_part.value if plan.day_part else ""),
                cents_from_amount(threshold) if threshold is not None else None,
                previous["created_at_utc"] if previous is not None else to_db_timestamp(utc_now()),
            ),
        )
        return _lastrowid(cursor)

    # --------------------------------------------------------------- deletion

    def mark_deleted(
        self,
        workflow_id: uuid.UUID | str,
        actor: Actor,
        reason: str | None,
        cancel: threading.Event | None = None,
    ) -> DeletionOutcome:
        """Snapshot a workflow into ``deleted_pledges`` then tombstone its gift.

        Both writes and the release of any sponsorship reservation happen in
        one transaction. Deleting again refreshes the same snapshot row.
        """
        key = workflow_key(workflow_id)
        clean_reason = _clean(reason)
        deleted_at = to_db_timestamp(utc_now())

        with self._transaction(self.REQUIRED_TABLES, cancel) as connection:
            workflow = connection.execute(
                "SELECT * FROM gift_workflows WHERE workflow_id = ?",
                (key,),
            ).fetchone()
            if workflow is None:
                raise WorkflowNotFoundError(key)

            raise_if_cancelled(cancel)
            gift = self._first_child(connection, "gift_workflow_gifts", key)
            sponsorship = self._first_child(connection, "gift_workflow_sponsorships", key)
            reservation = None
            if gift is not None:
                reservation = connection.execute(
                    """
                    SELECT *
                    FROM sponsorship_reservations
                    WHERE gift_line_id = ?
                    ORDER BY is_cancelled ASC, id DESC
                    LIMIT 1
                    """,
                    (gift["id"],),
                ).fetchone()

            raise_if_cancelled(cancel)
            snapshot_id = self._upsert_snapshot(
                connection,
                workflow=workflow,
                gift=gift,
                sponsorship=sponsorship,
                reservation=reservation,
                actor=actor,
                reason=clean_reason,
                deleted_at=deleted_at,
            )

            released = 0
            if gift is not None:
                raise_if_cancelled(cancel)
                connection.execute(
                    """
                    UPDATE gift_workflow_gifts
                    SET is_deleted = 1,
                        deleted_at_utc = ?,
                        deleted_by_user = ?,
                        deleted_by_machine = ?,
                        delete_reason = ?
                    WHERE workflow_id = ?
                    """,
                    (deleted_at, actor.user, actor.machine, clean_reason, key),
                )
                released = release_slots_for_gift(
                    connection,
                    gift_line_id=gift["id"],
                    cancelled_by=actor.label,
                    reason=clean_reason or "Gift deleted",
                    cancel=cancel,
                )

        logger.info("Deleted workflow %s by %s (released %s reservation(s))", key, actor.label, released)
        return DeletionOutcome(
            workflow_id=uuid.UUID(key),
            snapshot_id=snapshot_id,
            gift_line_id=gift["id"] if gift is not None else None,
            remote_gift_id=gift["api_gift_id"] if gift is not None else None,
            released_reservations=released,
        )

    def _upsert_snapshot(
        self,
        connection: sqlite3.Connection,
        workflow: sqlite3.Row,
        gift: sqlite3.Row | None,
        sponsorship: sqlite3.Row | None,
        reservation: sqlite3.Row | None,
        actor: Actor,
        reason: str | None,
        deleted_at: str | None,
    ) -> int:
        def gift_value(column: str) -> Any:
            return gift[column] if gift is not None else None

        snapshot: dict[str, Any] = {
            "workflow_id": workflow["workflow_id"],
            "gift_line_id": gift_value("id"),
            "workflow_created_at_utc": workflow["created_at_utc"],
            "workflow_completed_at_utc": workflow["completed_at_utc"],
            "workflow_status": workflow["status"],
            "workflow_machine_name": workflow["machine_name"],
            "workflow_windows_user": workflow["windows_user"],
            "search_text": workflow["search_text"],
            "constituent_id": workflow["constituent_id"],
            "constituent_name": workflow["constituent_name"],
            "is_first_time_giver": workflow["is_first_time_giver"],
            "is_new_radio_constituent": workflow["is_new_radio_constituent"],
            "context_json": workflow["context_json"],
            "amount_cents": gift_value("amount_cents"),
            "frequency": gift_value("frequency"),
            "installments": gift_value("installments"),
            "pledge_date": gift_value("pledge_date"),
            "start_date": gift_value("start_date"),
            "fund_id": gift_value("fund_id"),
            "campaign_id": gift_value("campaign_id"),
            "appeal_id": gift_value("appeal_id"),
            "package_id": gift_value("package_id"),
            "send_reminder": gift_value("send_reminder"),
            "comments": gift_value("comments"),
            "api_attempted_at_utc": gift_value("api_attempted_at_utc"),
            "api_succeeded": gift_value("api_succeeded"),
            "api_gift_id": gift_value("api_gift_id"),
            "api_error_message": gift_value("api_error_message"),
            "sponsored_date": sponsorship["sponsored_date"] if sponsorship is not None else None,
            "slot": sponsorship["slot"] if sponsorship is not None else None,
            "day_part": reservation["day_part"] if reservation is not None else None,
            "threshold_amount_cents": sponsorship["threshold_amount_cents"] if sponsorship is not None else None,
            "reservation_id": reservation["id"] if reservation is not None else None,
            "deleted_at_utc": deleted_at,
            "deleted_by_machine": actor.machine,
            "deleted_by_user": actor.user,
            "deleted_reason": reason,
            "logged_at_utc": deleted_at,
        }

        columns = list(snapshot)
        column_sql = ", ".join(columns)
        placeholder_sql = ", ".join("?" for _ in columns)
        assignments = ",\n                ".join(
            f"{column} = excluded.{column}" for column in columns if column != "workflow_id"
        )
        # The remote-delete outcome columns are left out so a repeated delete keeps them.
        connection.execute(
            f"""
            INSERT INTO deleted_pledges ({column_sql})
            VALUES ({placeholder_sql})
            ON CONFLICT (workflow_id) DO UPDATE SET
                {assignments}
            """,
            [snapshot[column] for column in columns],
        )
        row = connection.execute(
            "SELECT id FROM deleted_pledges WHERE workflow_id = ?",
            (workflow["workflow_id"],),
        ).fetchone()
        return int(row["id"])

    def record_remote_delete_outcome(
        self,
        workflow_id: uuid.UUID | str,
        result: RemoteDeleteResult,
        cancel: threading.Event | None = None,
    ) -> None:
        """Record the Remote Gift API delete attempt on the gift row and its snapshot."""
        key = workflow_key(workflow_id)
        values = (
            to_db_timestamp(result.attempted_at_utc),
            1 if result.succeeded else 0,
            _clean(result.error_message),
            key,
        )

        with self._transaction(self.REQUIRED_TABLES, cancel) as connection:
            snapshot = connection.execute(
                """
                UPDATE deleted_pledges
                SET api_delete_attempted_at_utc = ?,
                    api_delete_succeeded = ?,
                    api_delete_error_message = ?
                WHERE workflow_id = ?
                """,
                values,
            )
            if snapshot.rowcount == 0:
                raise LedgerValidationError(
                    f"Workflow {key} has not been deleted locally.",
                    field="workflow_id",
                )
            raise_if_cancelled(cancel)
            connection.execute(
                """
                UPDATE gift_workflow_gifts
                SET api_delete_attempted_at_utc = ?,
                    api_delete_succeeded = ?,
                    api_delete_error_message = ?
                WHERE workflow_id = ?
                """,
                values,
            )

        if result.succeeded:
            logger.info("Remote delete recorded for workflow %s", key)
        else:
            logger.warning("Remote delete failed for workflow %s: %s", key, result.error_message)

    # ---------------------------------------------------------------- queries

    def get_workflow(self, workflow_id: uuid.UUID | str) -> sqlite3.Row | None:
        with self._reader(self.REQUIRED_TABLES) as connection:
            return connection.execute(
                "SELECT * FROM gift_workflows WHERE workflow_id = ?",
                (workflow_key(workflow_id),),
            ).fetchone()

    def get_workflow_context(self, workflow_id: uuid.UUID | str) -> WorkflowContext | None:
        row = self.get_workflow(workflow_id)
        if row is None:
            return None
        return WorkflowContext.from_json(row["context_json"])

    def list_gift_lines(self, workflow_id: uuid.UUID | str) -> list[sqlite3.Row]:
        with self._reader(self.REQUIRED_TABLES) as connection:
            return connection.execute(
                "SELECT * FROM gift_workflow_gifts WHERE workflow_id = ? ORDER BY id ASC",
                (workflow_key(workflow_id),),
            ).fetchall()

    def list_sponsorship_lines(self, workflow_id: uuid.UUID | str) -> list[sqlite3.Row]:
        with self._reader(self.REQUIRED_TABLES) as connection:
            return connection.execute(
                "SELECT * FROM gift_workflow_sponsorships WHERE workflow_id = ? ORDER BY id ASC",
                (workflow_key(workflow_id),),
            ).fetchall()

    def list_successful_gifts(
        self,
        constituent_id: int,
        campaign_id: str | None = None,
        take: int = 50,
    ) -> list[sqlite3.Row]:
        if take <= 0:
            return []

        query = """
            SELECT
                g.id,
                g.workflow_id,
                g.pledge_date,
                g.amount_cents,
                g.frequency,
                g.installments,
                g.api_gift_id,
                s.sponsored_date,
                s.slot,
                g.comments,
                g.created_at_utc
            FROM gift_workflow_gifts g
            LEFT JOIN gift_workflow_sponsorships s ON s.workflow_id = g.workflow_id
            WHERE g.constituent_id = ?
              AND (? IS NULL OR g.campaign_id = ?)
              AND g.api_succeeded = 1
              AND g.is_deleted = 0
            ORDER BY COALESCE(g.pledge_date, DATE(g.created_at_utc)) DESC,
                     g.created_at_utc DESC,
                     g.id DESC
            LIMIT ?
        """
        clean_campaign = _clean(campaign_id)
        with self._reader(self.REQUIRED_TABLES) as connection:
            return connection.execute(
                query,
                (constituent_id, clean_campaign, clean_campaign, take),
            ).fetchall()

    def list_fully_booked_dates(
        self,
        campaign_id: int | None,
        start_date: date,
        end_date: date,
    ) -> list[date]:
        """Dates holding a FULL reservation, or both AM and PM."""
        start, end = (start_date, end_date) if start_date <= end_date else (end_date, start_date)
        query = """
            SELECT sponsored_date
            FROM sponsorship_reservations
            WHERE is_cancelled = 0
              AND sponsored_date >= ?
              AND sponsored_date <= ?
              AND (? IS NULL OR campaign_id = ?)
            GROUP BY sponsored_date
            HAVING MAX(CASE WHEN day_part = 'FULL' THEN 1 ELSE 0 END) = 1
                OR (
                    MAX(CASE WHEN day_part = 'AM' THEN 1 ELSE 0 END) = 1
                    AND MAX(CASE WHEN day_part = 'PM' THEN 1 ELSE 0 END) = 1
                )
            ORDER BY sponsored_date
        """
        with self._reader(self.REQUIRED_TABLES) as connection:
            rows = connection.execute(
                query,
                (start.isoformat(), end.isoformat(), campaign_id, campaign_id),
            ).fetchall()
        return [date.fromisoformat(row["sponsored_date"]) for row in rows]

    def list_reserved_day_parts(self, campaign_id: int | None, sponsored_date: date) -> list[str]:
        query = """
            SELECT DISTINCT UPPER(TRIM(day_part)) AS day_part
            FROM sponsorship_reservations
            WHERE is_cancelled = 0
              AND sponsored_date = ?
              AND (? IS NULL OR campaign_id = ?)
        """
        with self._reader(self.REQUIRED_TABLES) as connection:
            rows = connection.execute(
                query,
                (sponsored_date.isoformat(), campaign_id, campaign_id),
            ).fetchall()
        parts = [row["day_part"] for row in rows if row["day_part"]]
        return sorted(parts, key=lambda part: _DAY_PART_ORDER.get(part, 99))

    def list_reservations(
        self,
        campaign_id: int | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        include_cancelled: bool = False,
    ) -> list[sqlite3.Row]:
        where_clauses: list[str] = []
        parameters: list[Any] = []

        if campaign_id is not None:
            where_clauses.append("r.campaign_id = ?")
            parameters.append(campaign_id)
        if start_date is not None:
            where_clauses.append("r.sponsored_date >= ?")
            parameters.append(start_date.isoformat())
        if end_date is not None:
            where_clauses.append("r.sponsored_date <= ?")
            parameters.append(end_date.isoformat())
        if not include_cancelled:
            where_clauses.append("r.is_cancelled = 0")

        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        query = f"""
            SELECT
                r.*,
                g.workflow_id,
                w.constituent_name
            FROM sponsorship_reservations r
            LEFT JOIN gift_workflow_gifts g ON g.id = r.gift_line_id
            LEFT JOIN gift_workflows w ON w.workflow_id = g.workflow_id
            {where_sql}
            ORDER BY r.sponsored_date ASC,
                CASE r.day_part WHEN 'FULL' THEN 0 WHEN 'AM' THEN 1 ELSE 2 END,
                r.id ASC
        """
        with self._reader(self.REQUIRED_TABLES) as connection:
            return connection.execute(query, parameters).fetchall()

    def list_local_transactions(self, query: LocalTransactionQuery | None = None) -> list[sqlite3.Row]:
        """Locally committed workflows joined to their gift and sponsorship lines."""
        query = query or LocalTransactionQuery()
        take = 500 if query.take <= 0 else min(query.take, 5000)

        where_clauses: list[str] = []
        parameters: list[Any] = []

        if query.from_utc is not None:
            where_clauses.append("w.created_at_utc >= ?")
            parameters.append(to_db_timestamp(query.from_utc))
        if query.to_utc is not None:
            where_clauses.append("w.created_at_utc < ?")
            parameters.append(to_db_timestamp(query.to_utc))
        if _clean(query.status):
            where_clauses.append("w.status = ?")
            parameters.append(_clean(query.status))
        if query.api_attempted is not None:
            where_clauses.append(
                "g.api_attempted_at_utc IS NOT NULL" if query.api_attempted else "g.api_attempted_at_utc IS NULL"
            )
        if query.api_succeeded is not None:
            where_clauses.append("g.api_succeeded = ?")
            parameters.append(1 if query.api_succeeded else 0)
        if not query.include_deleted:
            where_clauses.append("COALESCE(g.is_deleted, 0) = 0")

        search = _clean(query.search)
        if search:
            search_clauses = [
                "w.constituent_name LIKE ? ESCAPE '\\'",
                "w.search_text LIKE ? ESCAPE '\\'",
                "w.windows_user LIKE ? ESCAPE '\\'",
                "w.machine_name LIKE ? ESCAPE '\\'",
                "g.api_gift_id LIKE ? ESCAPE '\\'",
                "g.api_error_message LIKE ? ESCAPE '\\'",
            ]
            pattern = _like_pattern(search)
            search_parameters: list[Any] = [pattern] * len(search_clauses)
            try:
                searched_workflow: uuid.UUID | None = uuid.UUID(search)
            except ValueError:
                searched_workflow = None
            if searched_workflow is not None:
                search_clauses.append("w.workflow_id = ?")
                search_parameters.append(str(searched_workflow))
            if search.isdigit() and int(search) > 0:
                search_clauses.append("w.constituent_id = ?")
                search_parameters.append(int(search))
            where_clauses.append(f"({' OR '.join(search_clauses)})")
            parameters.extend(search_parameters)

        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        sql = f"""
            SELECT
                w.workflow_id,
                w.created_at_utc,
                w.completed_at_utc,
                w.status,
                w.machine_name,
                w.windows_user,
                w.constituent_id,
                w.constituent_name,
                w.is_first_time_giver,
                w.is_new_radio_constituent,
                g.id AS gift_line_id,
                g.amount_cents,
                g.frequency,
                g.installments,
                g.pledge_date,
                g.api_attempted_at_utc,
                g.api_succeeded,
                g.api_gift_id,
                g.api_error_message,
                g.is_deleted,
                g.deleted_at_utc,
                g.deleted_by_user,
                g.deleted_by_machine,
                g.delete_reason,
                g.api_delete_attempted_at_utc,
                g.api_delete_succeeded,
                g.api_delete_error_message,
                s.sponsored_date,
                s.slot
            FROM gift_workflows w
            LEFT JOIN gift_workflow_gifts g ON g.workflow_id = w.workflow_id
            LEFT JOIN gift_workflow_sponsorships s ON s.workflow_id = w.workflow_id
            {where_sql}
            ORDER BY w.created_at_utc DESC, w.workflow_id ASC
            LIMIT ?
        """
        parameters.append(take)

        with self._reader(self.REQUIRED_TABLES) as connection:
            return connection.execute(sql, parameters).fetchall()

    def list_deleted_pledges(
        self,
        search: str | None = None,
        from_utc: datetime | None = None,
        to_utc: datetime | None = None,
        take: int = 500,
    ) -> list[sqlite3.Row]:
        where_clauses: list[str] = []
        parameters: list[Any] = []

        if from_utc is not None:
            where_clauses.append("deleted_at_utc >= ?")
            parameters.append(to_db_timestamp(from_utc))
        if to_utc is not None:
            where_clauses.append("deleted_at_utc < ?")
            parameters.append(to_db_timestamp(to_utc))

        clean_search = _clean(search)
        if clean_search:
            pattern = _like_pattern(clean_search)
            where_clauses.append(
                """(
                    workflow_id = ?
                    OR constituent_name LIKE ? ESCAPE '\\'
                    OR deleted_by_user LIKE ? ESCAPE '\\'
                    OR deleted_reason LIKE ? ESCAPE '\\'
                    OR api_gift_id LIKE ? ESCAPE '\\'
                    OR CAST(constituent_id AS TEXT) = ?
                )"""
            )
            parameters.extend([clean_search.lower(), pattern, pattern, pattern, pattern, clean_search])

        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        query = f"""
            SELECT *
            FROM deleted_pledges
            {where_sql}
            ORDER BY deleted_at_utc DESC, id DESC
            LIMIT ?
        """
        parameters.append(max(1, min(take, 5000)))

        with self._reader(self.REQUIRED_TABLES) as connection:
            return connection.execute(query, parameters).fetchall()

    def get_deleted_pledge(self, workflow_id: uuid.UUID | str) -> sqlite3.Row | None:
        with self._reader(self.REQUIRED_TABLES) as connection:
            return connection.execute(
                "SELECT * FROM deleted_pledges WHERE workflow_id = ?",
                (workflow_key(workflow_id),),
            ).fetchone()

    def ledger_stats(self) -> dict[str, int]:
        query = """
            SELECT
                (SELECT COUNT(*) FROM gift_workflows) AS workflow_count,
                (SELECT COUNT(*) FROM gift_workflow_gifts WHERE is_deleted = 0) AS live_gift_count,
                (SELECT COUNT(*) FROM gift_workflow_gifts WHERE is_deleted = 0 AND api_succeeded = 0) AS unposted_gift_count,
                (SELECT COUNT(*) FROM deleted_pledges) AS deleted_count,
                (SELECT COUNT(*) FROM sponsorship_reservations WHERE is_cancelled = 0) AS active_reservation_count,
                (SELECT COALESCE(SUM(amount_cents), 0) FROM gift_workflow_gifts WHERE is_deleted = 0) AS live_total_cents
        """
        with self._reader(self.REQUIRED_TABLES) as connection:
            row = connection.execute(query).fetchone()
        return {key: int(row[key]) for key in row.keys()}


__all__ = ["ConnectionFactory", "GiftLedgerStore", "workflow_key"]
