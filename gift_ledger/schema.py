"""Schema guard: a versioned migration ledger for the workflow database.

Migrations are applied once, in order, and recorded in ``schema_migrations``.
They only ever create tables, indexes and missing columns, so they are safe to
run against a database written by an older build.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable, Iterable

from .errors import SchemaMissingError
from .models import to_db_timestamp, utc_now

logger = logging.getLogger(__name__)


def _table_columns(connection: sqlite3.Connection, table_name: str) -> set[str]:
    rows = connection.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row["name"]) for row in rows}


def _ensure_column(
    connection: sqlite3.Connection,
    table_name: str,
    column_name: str,
    definition: str,
) -> None:
    if column_name in _table_columns(connection, table_name):
        return
    connection.execute(
        f"ALTER TABLE {table_name} ADD COLUMN {column_name} {definition}"
    )
    logger.info("Added column %s.%s", table_name, column_name)


def existing_tables(connection: sqlite3.Connection) -> set[str]:
    rows = connection.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table'"
    ).fetchall()
    return {str(row["name"]) for row in rows}


def _create_workflow_tables(connection: sqlite3.Connection) -> None:
    statements = (
        """
        CREATE TABLE IF NOT EXISTS gift_workflows (
            workflow_id TEXT PRIMARY KEY,
            created_at_utc TEXT NOT NULL,
            completed_at_utc TEXT,
            machine_name TEXT NOT NULL,
            windows_user TEXT NOT NULL,
            status TEXT NOT NULL,
            search_text TEXT,
            constituent_id INTEGER NOT NULL,
            constituent_name TEXT,
            is_first_time_giver INTEGER,
            is_new_radio_constituent INTEGER,
            context_json TEXT NOT NULL,
            context_version INTEGER NOT NULL DEFAULT 1,
            updated_at_utc TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS gift_workflow_gifts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workflow_id TEXT NOT NULL,
            constituent_id INTEGER NOT NULL,
            amount_cents INTEGER NOT NULL,
            frequency TEXT,
            installments INTEGER,
            pledge_date TEXT,
            start_date TEXT,
            fund_id TEXT,
            campaign_id TEXT,
            appeal_id TEXT,
            package_id TEXT,
            send_reminder INTEGER NOT NULL DEFAULT 0,
            comments TEXT,
            api_attempted_at_utc TEXT,
            api_succeeded INTEGER NOT NULL DEFAULT 0,
            api_gift_id TEXT,
            api_error_message TEXT,
            created_at_utc TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (workflow_id) REFERENCES gift_workflows(workflow_id)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS gift_workflow_sponsorships (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workflow_id TEXT NOT NULL,
            constituent_id INTEGER NOT NULL,
            sponsored_date TEXT NOT NULL,
            slot TEXT NOT NULL,
            threshold_amount_cents INTEGER,
            created_at_utc TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (workflow_id) REFERENCES gift_workflows(workflow_id)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS sponsorship_reservations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            campaign_id INTEGER NOT NULL,
            constituent_id INTEGER NOT NULL,
            gift_line_id INTEGER NOT NULL,
            sponsored_date TEXT NOT NULL,
            day_part TEXT NOT NULL CHECK (day_part IN ('FULL', 'AM', 'PM')),
            sponsor_tier TEXT,
            required_amount_cents INTEGER NOT NULL CHECK (required_amount_cents >= 0),
            is_cancelled INTEGER NOT NULL DEFAULT 0,
            cancelled_at_utc TEXT,
            cancelled_by TEXT,
            cancelled_reason TEXT,
            created_at_utc TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            CHECK (
                (is_cancelled = 0 AND cancelled_at_utc IS NULL)
                OR (is_cancelled = 1 AND cancelled_at_utc IS NOT NULL)
            )
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_workflows_created ON gift_workflows (created_at_utc)",
        "CREATE INDEX IF NOT EXISTS idx_workflows_constituent ON gift_workflows (constituent_id)",
        "CREATE INDEX IF NOT EXISTS idx_gifts_workflow ON gift_workflow_gifts (workflow_id)",
        "CREATE INDEX IF NOT EXISTS idx_gifts_constituent ON gift_workflow_gifts (constituent_id)",
        "CREATE INDEX IF NOT EXISTS idx_sponsorships_workflow ON gift_workflow_sponsorships (workflow_id)",
        "CREATE INDEX IF NOT EXISTS idx_reservations_date ON sponsorship_reservations (campaign_id, sponsored_date)",
        "CREATE INDEX IF NOT EXISTS idx_reservations_gift ON sponsorship_reservations (gift_line_id)",
    )
    for statement in statements:
        connection.execute(statement)


def _add_active_slot_unique_index(connection: sqlite3.Connection) -> None:
    connection.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_reservations_active_slot
        ON sponsorship_reservations (campaign_id, sponsored_date, day_part)
        WHERE is_cancelled = 0
        """
    )


def _add_soft_delete_and_deleted_pledges(connection: sqlite3.Connection) -> None:
    for column_name, definition in (
        ("is_deleted", "INTEGER NOT NULL DEFAULT 0"),
        ("deleted_at_utc", "TEXT"),
        ("deleted_by_user", "TEXT"),
        ("deleted_by_machine", "TEXT"),
        ("delete_reason", "TEXT"),
        ("api_delete_attempted_at_utc", "TEXT"),
        ("api_delete_succeeded", "INTEGER"),
        ("api_delete_error_message", "TEXT"),
    ):
        _ensure_column(
            connection=connection,
            table_name="gift_workflow_gifts",
            column_name=column_name,
            definition=definition,
        )

    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS deleted_pledges (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workflow_id TEXT NOT NULL,
            gift_line_id INTEGER,

            workflow_created_at_utc TEXT NOT NULL,
            workflow_completed_at_utc TEXT,
            workflow_status TEXT NOT NULL,
            workflow_machine_name TEXT NOT NULL,
            workflow_windows_user TEXT NOT NULL,
            search_text TEXT,
            constituent_id INTEGER NOT NULL,
            constituent_name TEXT,
            is_first_time_giver INTEGER,
            is_new_radio_constituent INTEGER,
            context_json TEXT NOT NULL,

            amount_cents INTEGER,
            frequency TEXT,
            installments INTEGER,
            pledge_date TEXT,
            start_date TEXT,
            fund_id TEXT,
            campaign_id TEXT,
            appeal_id TEXT,
            package_id TEXT,
            send_reminder INTEGER,
            comments TEXT,

            api_attempted_at_utc TEXT,
            api_succeeded INTEGER,
            api_gift_id TEXT,
            api_error_message TEXT,

            sponsored_date TEXT,
            slot TEXT,
            day_part TEXT,
            threshold_amount_cents INTEGER,
            reservation_id INTEGER,

            deleted_at_utc TEXT NOT NULL,
            deleted_by_machine TEXT NOT NULL,
            deleted_by_user TEXT NOT NULL,
            deleted_reason TEXT,

            api_delete_attempted_at_utc TEXT,
            api_delete_succeeded INTEGER,
            api_delete_error_message TEXT,

            logged_at_utc TEXT NOT NULL
        )
        """
    )
    connection.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS ux_deleted_pledges_workflow ON deleted_pledges (workflow_id)"
    )
    connection.execute(
        "CREATE INDEX IF NOT EXISTS idx_gifts_deleted ON gift_workflow_gifts (is_deleted)"
    )


def _create_outbound_transactions(connection: sqlite3.Connection) -> None:
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS outbound_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            workflow_id TEXT NOT NULL,
            transaction_type TEXT NOT NULL,
            transaction_status TEXT NOT NULL DEFAULT 'Pending'
                CHECK (transaction_status IN ('Pending', 'Processing', 'Succeeded', 'Failed')),
            status_note TEXT,

            enqueued_at_utc TEXT NOT NULL,
            enqueued_at_local TEXT NOT NULL,
            enqueued_local_tz TEXT NOT NULL,
            enqueued_local_utc_offset_minutes INTEGER NOT NULL,

            client_machine_name TEXT NOT NULL,
            client_user TEXT NOT NULL,

            constituent_id INTEGER NOT NULL,
            amount_cents INTEGER NOT NULL,
            pledge_date TEXT NOT NULL,
            fund_id TEXT NOT NULL,
            comments TEXT,

            request_json TEXT NOT NULL,

            processing_attempt_count INTEGER NOT NULL DEFAULT 0,
            processing_started_at_utc TEXT,
            processing_started_at_local TEXT,
            processing_completed_at_utc TEXT,
            processing_completed_at_local TEXT,
            last_processing_attempt_at_utc TEXT,
            last_processing_attempt_at_local TEXT,
            last_processing_error_message TEXT,
            processed_gift_id TEXT,

            updated_at_utc TEXT,
            updated_at_local TEXT,
            updated_local_tz TEXT,
            updated_local_utc_offset_minutes INTEGER
        )
        """
    )
    connection.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_outbound_workflow_type
        ON outbound_transactions (workflow_id, transaction_type)
        """
    )
    connection.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_outbound_status_enqueued
        ON outbound_transactions (transaction_status, enqueued_at_utc)
        """
    )
    connection.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_outbound_constituent_enqueued
        ON outbound_transactions (constituent_id, enqueued_at_utc)
        """
    )


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    apply: Callable[[sqlite3.Connection], None]
    tables: tuple[str, ...] = ()


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        1,
        "create_workflow_tables",
        _create_workflow_tables,
        ("gift_workflows", "gift_workflow_gifts", "gift_workflow_sponsorships", "sponsorship_reservations"),
    ),
    Migration(2, "reservation_active_slot_unique_index", _add_active_slot_unique_index),
    Migration(3, "gift_soft_delete_and_deleted_pledges", _add_soft_delete_and_deleted_pledges, ("deleted_pledges",)),
    Migration(4, "create_outbound_transactions", _create_outbound_transactions, ("outbound_transactions",)),
)

LATEST_VERSION = MIGRATIONS[-1].version


def _ensure_ledger_table(connection: sqlite3.Connection) -> None:
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at_utc TEXT NOT NULL
        )
        """
    )


def applied_versions(connection: sqlite3.Connection) -> set[int]:
    if "schema_migrations" not in existing_tables(connection):
        return set()
    rows = connection.execute("SELECT version FROM schema_migrations").fetchall()
    return {int(row["version"]) for row in rows}


def apply_migrations(connection: sqlite3.Connection) -> list[int]:
    """Apply every pending migration, each in its own transaction.

    The connection must be in autocommit mode (``isolation_level=None``).
    Returns the versions applied by this call.
    """
    _ensure_ledger_table(connection)
    applied = applied_versions(connection)
    newly_applied: list[int] = []

    for migration in MIGRATIONS:
        if migration.version in applied:
            continue
        connection.execute("BEGIN IMMEDIATE")
        try:
            # Another process may have applied it while we waited for the lock.
            already = connection.execute(
                "SELECT 1 FROM schema_migrations WHERE version = ?",
                (migration.version,),
            ).fetchone()
            if already is None:
                migration.apply(connection)
                connection.execute(
                    "INSERT INTO schema_migrations (version, name, applied_at_utc) VALUES (?, ?, ?)",
                    (migration.version, migration.name, to_db_timestamp(utc_now())),
                )
                newly_applied.append(migration.version)
            connection.execute("COMMIT")
        except BaseException:
            connection.execute("ROLLBACK")
            raise

    if newly_applied:
        logger.info("Applied schema migrations %s", newly_applied)
    return newly_applied


def verify_schema(connection: sqlite3.Connection, required_tables: Iterable[str]) -> None:
    """Raise ``SchemaMissingError`` unless the database is fully migrated."""
    tables = existing_tables(connection)
    missing_tables = sorted(set(required_tables) - tables)
    if missing_tables:
        raise SchemaMissingError(f"table(s) {', '.join(missing_tables)}")

    missing_versions = sorted({m.version for m in MIGRATIONS} - applied_versions(connection))
    if missing_versions:
        raise SchemaMissingError(f"migration(s) {missing_versions}")
