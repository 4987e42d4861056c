"""Workflow context envelope and value types shared by the ledger."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .config import get_settings
from .errors import LedgerValidationError

CONTEXT_SCHEMA_VERSION = 1

_CENT = Decimal("0.01")


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_db_timestamp(value: datetime | None) -> str | None:
    """Render a timestamp the way SQLite's CURRENT_TIMESTAMP does (UTC)."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0).strftime("%Y-%m-%d %H:%M:%S")


def to_currency(value: Decimal | int | float | str, field: str = "amount") -> Decimal:
    """Coerce to a two-decimal fixed-point amount, rejecting anything lossy."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise LedgerValidationError(f"{field} is not a currency value.", field=field) from exc
    if not amount.is_finite():
        raise LedgerValidationError(f"{field} must be a finite amount.", field=field)
    quantized = amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    if quantized != amount:
        raise LedgerValidationError(f"{field} cannot have more than two decimal places.", field=field)
    return quantized


def cents_from_amount(amount: Decimal | int | float | str) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def amount_from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(_CENT)


def format_currency(cents: int) -> str:
    return f"${amount_from_cents(cents):,.2f}"


class DayPart(str, Enum):
    FULL = "FULL"
    AM = "AM"
    PM = "PM"


class WorkflowStatus(str, Enum):
    DRAFT = "Draft"
    READY_TO_SUBMIT = "ReadyToSubmit"
    API_SUCCEEDED = "ApiSucceeded"
    API_FAILED = "ApiFailed"
    COMMITTED = "Committed"
    COMMIT_FAILED = "CommitFailed"


class _Envelope(BaseModel):
    # Unknown keys written by newer clients are kept and written back.
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ConstituentSnapshot(_Envelope):
    constituent_id: int = 0
    full_name: str | None = None
    spouse: str | None = None
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None


class SponsorshipDraft(_Envelope):
    is_enabled: bool = False
    sponsored_date: date | None = None
    slot: str | None = None
    day_part: DayPart | None = None
    threshold_amount: Decimal | None = None


class GiftDraft(_Envelope):
    amount: Decimal = Decimal("0")
    frequency: str | None = None
    installments: int | None = None
    pledge_date: date | None = None
    start_date: date | None = None

    fund_id: str | None = None
    campaign_id: str | None = None
    appeal_id: str | None = None
    package_id: str | None = None

    send_reminder: bool = False
    comments: str | None = None

    sponsorship: SponsorshipDraft = Field(default_factory=SponsorshipDraft)


class ApiResult(_Envelope):
    attempted: bool = False
    attempted_at_utc: datetime | None = None
    success: bool = False
    gift_id: str | None = None
    error_message: str | None = None

    request_json: str | None = None
    create_response_json: str | None = None


class StatusTrailEntry(_Envelope):
    at_utc: datetime
    event: str
    note: str | None = None


class WorkflowContext(_Envelope):
    """One donation-entry attempt; the source of truth for every ledger row.

    The whole object is stored as ``context_json``. Normalized columns are
    projections of it and are rewritten from it on every save.
    """

    schema_version: int = CONTEXT_SCHEMA_VERSION
    workflow_id: uuid.UUID = Field(default_factory=uuid.uuid4)

    started_at_utc: datetime = Field(default_factory=utc_now)
    completed_at_utc: datetime | None = None

    machine_name: str = Field(default_factory=lambda: get_settings().client_machine)
    windows_user: str = Field(default_factory=lambda: get_settings().client_user)

    search_text: str | None = None
    constituent: ConstituentSnapshot = Field(default_factory=ConstituentSnapshot)
    gift: GiftDraft = Field(default_factory=GiftDraft)

    is_first_time_giver: bool | None = None
    is_new_radio_constituent: bool | None = None

    api: ApiResult = Field(default_factory=ApiResult)
    status: WorkflowStatus = WorkflowStatus.DRAFT
    status_trail: list[StatusTrailEntry] | None = None

    @classmethod
    def start(cls, search_text: str | None, constituent: ConstituentSnapshot, **values: Any) -> WorkflowContext:
        clean_search = (search_text or "").strip() or None
        return cls(search_text=clean_search, constituent=constituent, **values)

    def add_trail(self, event: str, note: str | None = None) -> None:
        clean_event = (event or "").strip()
        if not clean_event:
            return
        if self.status_trail is None:
            self.status_trail = []
        self.status_trail.append(
            StatusTrailEntry(
                at_utc=utc_now(),
                event=clean_event,
                note=(note or "").strip() or None,
            )
        )

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_json(cls, payload: str) -> WorkflowContext:
        return cls.model_validate_json(payload)


@dataclass(frozen=True)
class Actor:
    user: str
    machine: str

    @classmethod
    def current(cls) -> Actor:
        settings = get_settings()
        return cls(user=settings.client_user, machine=settings.client_machine)

    @property
    def label(self) -> str:
        return f"{self.user}@{self.machine}"


@dataclass(frozen=True)
class RemoteDeleteResult:
    attempted_at_utc: datetime
    succeeded: bool
    error_message: str | None = None


@dataclass(frozen=True)
class DeletionOutcome:
    workflow_id: uuid.UUID
    snapshot_id: int
    gift_line_id: int | None
    remote_gift_id: str | None
    released_reservations: int


@dataclass(frozen=True)
class LocalTransactionQuery:
    from_utc: datetime | None = None
    to_utc: datetime | None = None
    search: str | None = None
    status: str | None = None
    api_attempted: bool | None = None
    api_succeeded: bool | None = None
    include_deleted: bool = True
    take: int = 500
