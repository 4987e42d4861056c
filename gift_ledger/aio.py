"""Async facade over the synchronous ledger.

Each call runs its transaction in a worker thread. If the awaiting task is
cancelled, the operation's cancel event is set and the thread is awaited, so
the caller never returns while a transaction is still half done.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Callable, TypeVar

from .errors import LedgerError
from .models import Actor, DeletionOutcome, LocalTransactionQuery, RemoteDeleteResult, WorkflowContext
from .outbound import OutboundTransactionQueue
from .store import GiftLedgerStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_cancellable(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    cancel = threading.Event()
    task = asyncio.ensure_future(asyncio.to_thread(func, *args, cancel=cancel, **kwargs))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        cancel.set()
        try:
            await task
        except LedgerError as exc:
            logger.debug("Cancelled %s ended with %s", getattr(func, "__name__", func), exc)
        raise


class AsyncGiftLedger:
    def __init__(self, store: GiftLedgerStore, queue: OutboundTransactionQueue | None = None) -> None:
        self.store = store
        self.queue = queue

    async def save(self, context: WorkflowContext) -> int:
        return await run_cancellable(self.store.save, context)

    async def save_header_only(self, context: WorkflowContext) -> None:
        await run_cancellable(self.store.save_header_only, context)

    async def mark_deleted(
        self,
        workflow_id: uuid.UUID | str,
        actor: Actor,
        reason: str | None,
    ) -> DeletionOutcome:
        return await run_cancellable(self.store.mark_deleted, workflow_id, actor, reason)

    async def record_remote_delete_outcome(self, workflow_id: uuid.UUID | str, result: RemoteDeleteResult) -> None:
        await run_cancellable(self.store.record_remote_delete_outcome, workflow_id, result)

    async def enqueue_or_update_pending_pledge_create(
        self,
        workflow_id: uuid.UUID | str,
        constituent_id: int,
        amount: Decimal,
        pledge_date: date,
        fund_id: str,
        comments: str | None,
        request_json: str,
        client_machine: str | None = None,
        client_user: str | None = None,
    ) -> int:
        if self.queue is None:
            raise RuntimeError("No outbound queue configured.")
        return await run_cancellable(
            self.queue.enqueue_or_update_pending_pledge_create,
            workflow_id,
            constituent_id,
            amount,
            pledge_date,
            fund_id,
            comments,
            request_json,
            client_machine=client_machine,
            client_user=client_user,
        )

    async def get_workflow_context(self, workflow_id: uuid.UUID | str) -> WorkflowContext | None:
        return await asyncio.to_thread(self.store.get_workflow_context, workflow_id)

    async def list_local_transactions(self, query: LocalTransactionQuery | None = None) -> list[Any]:
        return await asyncio.to_thread(self.store.list_local_transactions, query)

    async def list_fully_booked_dates(self, campaign_id: int | None, start_date: date, end_date: date) -> list[date]:
        return await asyncio.to_thread(self.store.list_fully_booked_dates, campaign_id, start_date, end_date)
