"""Error taxonomy for the workflow ledger.

Every failure that leaves this package is one of these types, so callers can
tell a fatal setup problem from a user-correctable one or a retryable one:

- ``SchemaMissingError``: required tables or migrations are absent. Fatal.
- ``LedgerValidationError``: malformed input rejected before any write.
- ``BookingConflictError``: the requested sponsorship day-part is taken.
- ``TransientStoreError``: lock timeout or I/O failure; the transaction was
  rolled back and the same call may be retried.
- ``OperationCancelledError``: the caller cancelled; nothing was committed.
- ``WorkflowNotFoundError``: no workflow with the given identifier.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import date


class LedgerError(Exception):
    """Base class for ledger failures."""

    retryable = False


class SchemaMissingError(LedgerError):
    def __init__(self, missing: str, hint: str = "Run GiftLedgerStore.init_db() against this database.") -> None:
        self.missing = missing
        self.hint = hint
        super().__init__(f"Ledger schema is missing {missing}. {hint}")


class LedgerValidationError(LedgerError, ValueError):
    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class BookingConflictError(LedgerError):
    def __init__(
        self,
        message: str,
        campaign_id: int,
        sponsored_date: date,
        requested: str,
        existing: tuple[str, ...] = (),
    ) -> None:
        self.campaign_id = campaign_id
        self.sponsored_date = sponsored_date
        self.requested = requested
        self.existing = existing
        super().__init__(message)


class TransientStoreError(LedgerError):
    retryable = True


class OperationCancelledError(LedgerError):
    pass


class WorkflowNotFoundError(LedgerError, LookupError):
    def __init__(self, workflow_id: object) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found.")


_MISSING_SCHEMA_MARKERS = ("no such table", "no such column", "has no column named")
_TRANSIENT_MARKERS = ("database is locked", "database table is locked", "busy", "disk i/o error", "unable to open")


def translate_operational_error(exc: sqlite3.OperationalError) -> LedgerError:
    message = str(exc)
    lowered = message.lower()
    if any(marker in lowered for marker in _MISSING_SCHEMA_MARKERS):
        return SchemaMissingError(message)
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return TransientStoreError(f"Ledger store is temporarily unavailable: {message}")
    return LedgerError(message)


def raise_if_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError("Operation cancelled; no changes were committed.")
