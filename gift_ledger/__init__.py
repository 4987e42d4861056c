"""Local workflow ledger and sponsorship allocator for donation entry."""

from .admin import RemoteGiftApi, commit_workflow, delete_pledge, retry_pledge
from .aio import AsyncGiftLedger
from .config import LedgerSettings, configure_logging, get_settings
from .errors import (
    BookingConflictError,
    LedgerError,
    LedgerValidationError,
    OperationCancelledError,
    SchemaMissingError,
    TransientStoreError,
    WorkflowNotFoundError,
)
from .models import (
    Actor,
    ConstituentSnapshot,
    DayPart,
    GiftDraft,
    LocalTransactionQuery,
    RemoteDeleteResult,
    SponsorshipDraft,
    WorkflowContext,
    WorkflowStatus,
    format_currency,
)
from .outbound import OutboundTransactionQueue, TransactionStatus
from .store import GiftLedgerStore

__all__ = [
    "Actor",
    "AsyncGiftLedger",
    "BookingConflictError",
    "ConstituentSnapshot",
    "DayPart",
    "GiftDraft",
    "GiftLedgerStore",
    "LedgerError",
    "LedgerSettings",
    "LedgerValidationError",
    "LocalTransactionQuery",
    "OperationCancelledError",
    "OutboundTransactionQueue",
    "RemoteDeleteResult",
    "RemoteGiftApi",
    "SchemaMissingError",
    "SponsorshipDraft",
    "TransactionStatus",
    "TransientStoreError",
    "WorkflowContext",
    "WorkflowNotFoundError",
    "WorkflowStatus",
    "commit_workflow",
    "configure_logging",
    "delete_pledge",
    "format_currency",
    "get_settings",
    "retry_pledge",
]
