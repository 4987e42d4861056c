"""Operator workflows that combine local ledger writes with Remote Gift API calls.

Local state always commits first. Remote calls happen outside any ledger
transaction and their outcome is recorded afterwards, so a remote outage
never loses a locally entered gift.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel

from .errors import LedgerError, LedgerValidationError, WorkflowNotFoundError
from .models import (
    Actor,
    DeletionOutcome,
    RemoteDeleteResult,
    WorkflowContext,
    WorkflowStatus,
    utc_now,
)
from .outbound import OutboundTransactionQueue
from .store import GiftLedgerStore

logger = logging.getLogger(__name__)


class RemoteGiftApi(Protocol):
    def create_remote_gift(self, request_json: str) -> tuple[str | None, str | None]:
        """Return ``(remote_gift_id, error_message)``."""

    def delete_remote_gift(self, remote_gift_id: str) -> tuple[bool, str | None]:
        """Return ``(ok, error_message)``."""


class PledgeCreateRequest(BaseModel):
    constituent_id: int
    amount: Decimal
    pledge_date: date
    fund_id: str
    campaign_id: str | None = None
    appeal_id: str | None = None
    package_id: str | None = None
    frequency: str | None = None
    installments: int | None = None
    start_date: date | None = None
    send_reminder: bool = False
    comments: str | None = None


def build_pledge_request(context: WorkflowContext) -> str:
    gift = context.gift
    fund_id = (gift.fund_id or "").strip()
    if not fund_id:
        raise LedgerValidationError("Fund id is required.", field="fund_id")
    request = PledgeCreateRequest(
        constituent_id=context.constituent.constituent_id,
        amount=gift.amount,
        pledge_date=gift.pledge_date or date.today(),
        fund_id=fund_id,
        campaign_id=gift.campaign_id,
        appeal_id=gift.appeal_id,
        package_id=gift.package_id,
        frequency=gift.frequency,
        installments=gift.installments,
        start_date=gift.start_date,
        send_reminder=gift.send_reminder,
        comments=gift.comments,
    )
    return request.model_dump_json(exclude_none=True)


def commit_workflow(
    store: GiftLedgerStore,
    queue: OutboundTransactionQueue,
    context: WorkflowContext,
    cancel: threading.Event | None = None,
) -> int:
    """Save the workflow locally, then queue its pledge-create request.

    Returns the outbound transaction id. When queueing fails the local
    record stays committed with a ``CommitFailed`` status.
    """
    if not context.api.request_json:
        context.api.request_json = build_pledge_request(context)
    context.status = WorkflowStatus.READY_TO_SUBMIT
    context.add_trail("CommittedLocally")
    store.save(context, cancel=cancel)

    try:
        transaction_id = queue.enqueue_or_update_pending_pledge_create(
            workflow_id=context.workflow_id,
            constituent_id=context.constituent.constituent_id,
            amount=context.gift.amount,
            pledge_date=context.gift.pledge_date or date.today(),
            fund_id=context.gift.fund_id or "",
            comments=context.gift.comments,
            request_json=context.api.request_json,
            client_machine=context.machine_name,
            client_user=context.windows_user,
            cancel=cancel,
        )
    except LedgerError as exc:
        context.status = WorkflowStatus.COMMIT_FAILED
        context.add_trail("QueueFailed", str(exc))
        try:
            store.save_header_only(context)
        except LedgerError:
            logger.exception("Could not record queue failure for workflow %s", context.workflow_id)
        raise

    context.status = WorkflowStatus.COMMITTED
    context.completed_at_utc = utc_now()
    context.add_trail("Queued", f"transaction {transaction_id}")
    store.save_header_only(context, cancel=cancel)
    return transaction_id


@dataclass(frozen=True)
class DeletePledgeResult:
    outcome: DeletionOutcome
    remote: RemoteDeleteResult | None

    @property
    def fully_deleted(self) -> bool:
        return self.remote is None or self.remote.succeeded


def delete_pledge(
    store: GiftLedgerStore,
    api: RemoteGiftApi | None,
    workflow_id: uuid.UUID | str,
    actor: Actor | None = None,
    reason: str | None = None,
    cancel: threading.Event | None = None,
) -> DeletePledgeResult:
    """Delete locally, then remotely when the gift was posted, then record the remote outcome."""
    actor = actor or Actor.current()
    outcome = store.mark_deleted(workflow_id, actor, reason, cancel=cancel)

    remote_gift_id = (outcome.remote_gift_id or "").strip()
    if not remote_gift_id or api is None:
        return DeletePledgeResult(outcome=outcome, remote=None)

    attempted_at = utc_now()
    try:
        ok, error = api.delete_remote_gift(remote_gift_id)
    except Exception as exc:  # recorded below; the local delete already committed
        logger.exception("Remote delete of gift %s raised", remote_gift_id)
        ok, error = False, str(exc) or exc.__class__.__name__

    remote = RemoteDeleteResult(
        attempted_at_utc=attempted_at,
        succeeded=ok,
        error_message=None if ok else (error or "Remote delete failed."),
    )
    store.record_remote_delete_outcome(outcome.workflow_id, remote)
    return DeletePledgeResult(outcome=outcome, remote=remote)


def retry_pledge(
    store: GiftLedgerStore,
    api: RemoteGiftApi,
    workflow_id: uuid.UUID | str,
    actor: Actor | None = None,
    cancel: threading.Event | None = None,
) -> WorkflowContext:
    """Post a previously failed workflow to the Remote Gift API again."""
    actor = actor or Actor.current()
    context = store.get_workflow_context(workflow_id)
    if context is None:
        raise WorkflowNotFoundError(workflow_id)
    if context.api.success:
        raise LedgerValidationError("This pledge was already posted successfully.", field="workflow_id")
    request_json = (context.api.request_json or "").strip()
    if not request_json:
        raise LedgerValidationError("No stored request is available to retry.", field="request_json")
    if any(row["is_deleted"] for row in store.list_gift_lines(context.workflow_id)):
        raise LedgerValidationError("Deleted pledges cannot be retried.", field="workflow_id")

    context.add_trail("RetryRequested", actor.label)
    attempted_at = utc_now()
    try:
        gift_id, error = api.create_remote_gift(request_json)
    except Exception as exc:  # recorded on the workflow as a failed attempt
        logger.exception("Remote create for workflow %s raised", context.workflow_id)
        gift_id, error = None, str(exc) or exc.__class__.__name__

    context.api.attempted = True
    context.api.attempted_at_utc = attempted_at
    context.api.success = bool(gift_id) and not error
    context.api.gift_id = gift_id if context.api.success else None
    context.api.error_message = None if context.api.success else (error or "Remote create failed.")

    if context.api.success:
        context.status = WorkflowStatus.API_SUCCEEDED
        context.add_trail("RetrySucceeded", f"gift {gift_id}")
    else:
        context.status = WorkflowStatus.API_FAILED
        context.add_trail("RetryFailed", context.api.error_message)
        logger.warning("Retry failed for workflow %s: %s", context.workflow_id, context.api.error_message)

    store.save(context, cancel=cancel)

    if context.api.success:
        context.status = WorkflowStatus.COMMITTED
        context.completed_at_utc = utc_now()
    context.add_trail("RetrySaved")
    store.save_header_only(context, cancel=cancel)
    return context
