from __future__ import annotations

import sqlite3
import uuid

import pytest

from gift_ledger.errors import SchemaMissingError
from gift_ledger.schema import LATEST_VERSION, MIGRATIONS, applied_versions
from gift_ledger.store import GiftLedgerStore


def _legacy_database(db_path) -> None:  # type: ignore[no-untyped-def]
    """A database written before soft deletes, the audit table and the queue existed."""
    connection = sqlite3.connect(db_path)
    try:
        MIGRATIONS[0].apply(connection)
        connection.execute(
            """
            INSERT INTO gift_workflows (
                workflow_id, created_at_utc, machine_name, windows_user, status,
                constituent_id, context_json
            )
            VALUES (?, '2024-01-05 10:00:00', 'OLD-PC', 'legacy', 'Committed', 55, '{}')
            """,
            (str(uuid.UUID(int=7)),),
        )
        connection.execute(
            """
            INSERT INTO gift_workflow_gifts (workflow_id, constituent_id, amount_cents, api_succeeded)
            VALUES (?, 55, 1200, 1)
            """,
            (str(uuid.UUID(int=7)),),
        )
        connection.commit()
    finally:
        connection.close()


def test_store_refuses_to_run_without_schema(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = GiftLedgerStore(tmp_path / "empty.db")

    with pytest.raises(SchemaMissingError) as excinfo:
        store.list_reservations()

    assert "init_db" in str(excinfo.value)
    assert excinfo.value.retryable is False


def test_init_db_upgrades_legacy_database_in_place(tmp_path) -> None:  # type: ignore[no-untyped-def]
    db_path = tmp_path / "legacy.db"
    _legacy_database(db_path)
    store = GiftLedgerStore(db_path)

    with pytest.raises(SchemaMissingError):
        store.list_successful_gifts(55)

    applied = store.init_db()

    assert applied == [migration.version for migration in MIGRATIONS]
    gifts = store.list_successful_gifts(55)
    assert [row["amount_cents"] for row in gifts] == [1200]
    assert store.list_gift_lines(uuid.UUID(int=7))[0]["is_deleted"] == 0
    assert store.list_deleted_pledges() == []


def test_init_db_is_idempotent(tmp_path) -> None:  # type: ignore[no-untyped-def]
    db_path = tmp_path / "fresh.db"
    store = GiftLedgerStore(db_path)

    assert store.init_db() == list(range(1, LATEST_VERSION + 1))
    assert store.init_db() == []
    assert GiftLedgerStore(db_path).init_db() == []

    connection = store._connect()
    try:
        assert applied_versions(connection) == set(range(1, LATEST_VERSION + 1))
        index_names = {
            row["name"]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'index'").fetchall()
        }
    finally:
        connection.close()
    assert {"ux_reservations_active_slot", "ux_deleted_pledges_workflow", "ux_outbound_workflow_type"} <= index_names


def test_unique_index_rejects_duplicate_active_slot(tmp_path) -> None:  # type: ignore[no-untyped-def]
    store = GiftLedgerStore(tmp_path / "fresh.db")
    store.init_db()
    insert = """
        INSERT INTO sponsorship_reservations (
            campaign_id, constituent_id, gift_line_id, sponsored_date, day_part,
            required_amount_cents, is_cancelled, cancelled_at_utc, created_at_utc
        )
        VALUES (1, 101, ?, '2025-06-01', 'AM', 0, ?, ?, '2025-05-01 00:00:00')
    """

    connection = store._connect()
    try:
        connection.execute(insert, (1, 1, "2025-05-02 00:00:00"))
        connection.execute(insert, (2, 0, None))
        with pytest.raises(sqlite3.IntegrityError):
            connection.execute(insert, (3, 0, None))
        with pytest.raises(sqlite3.IntegrityError):
            connection.execute(insert, (4, 1, None))
    finally:
        connection.close()
