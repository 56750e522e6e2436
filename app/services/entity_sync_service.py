"""
Entity sync and notification dispatch.

When a transaction first reaches a terminal state, or a refund succeeds, two
follow-up jobs are enqueued in the same database transaction as that change:

  - sync_entity_payment {transaction_id}
        mirrors the transaction's effective status onto the payable record
        (e.g. reservation.payment_status = "paid")
  - notify {user_id, template_name, payload}
        picked up from the `notifications` queue by the delivery service

Both carry unique keys, so a duplicated transition attempt cannot enqueue
them twice.

The sync is idempotent: it always writes the *current* effective status,
and only while the record still points at this transaction. A superseded
attempt (the record was repointed at a retry) never overwrites the newer
one's status.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.catalog import TargetCatalog
from app.exceptions import UnknownTargetError
from app.models.job import JobKind, NOTIFICATIONS_QUEUE
from app.models.refund import Refund
from app.models.transaction import Transaction, TransactionStatus
from app.services import job_store
from app.services.payment_status import effective_status

logger = logging.getLogger(__name__)


TERMINAL_TEMPLATES = {
    TransactionStatus.SUCCEEDED: "payment_succeeded",
    TransactionStatus.FAILED: "payment_failed",
    TransactionStatus.CANCELED: "payment_canceled",
}
REFUND_TEMPLATE = "payment_refunded"

SYNC_PRIORITY = 2
NOTIFY_PRIORITY = 2


def _notification_payload(transaction: Transaction, outcome: str, **extra) -> dict:
    payload = {
        "transaction_id": str(transaction.id),
        "outcome": outcome,
        "amount_cents": transaction.amount_cents,
        "total_amount_cents": transaction.total_amount_cents,
        "currency": transaction.currency,
        "description": transaction.description,
        "entity_type": transaction.entity_type,
        "entity_id": transaction.entity_id,
    }
    if transaction.error_message and outcome == TransactionStatus.FAILED:
        payload["error_message"] = transaction.error_message
    payload.update(extra)
    return payload


async def enqueue_sync(db: AsyncSession, transaction_id: uuid.UUID, *, unique_key: str) -> int | None:
    return await job_store.enqueue(
        db,
        JobKind.SYNC_ENTITY_PAYMENT,
        {"transaction_id": str(transaction_id)},
        priority=SYNC_PRIORITY,
        unique_key=unique_key,
    )


async def enqueue_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    template_name: str,
    payload: dict,
    *,
    unique_key: str,
) -> int | None:
    return await job_store.enqueue(
        db,
        JobKind.NOTIFY,
        {"user_id": str(user_id), "template_name": template_name, "payload": payload},
        queue=NOTIFICATIONS_QUEUE,
        priority=NOTIFY_PRIORITY,
        unique_key=unique_key,
    )


async def enqueue_terminal_side_effects(db: AsyncSession, transaction: Transaction) -> None:
    """Called by the state machine on a transaction's first terminal transition."""
    status = transaction.status
    template = TERMINAL_TEMPLATES[status]
    await enqueue_sync(db, transaction.id, unique_key=f"sync:{transaction.id}:{status}")
    await enqueue_notification(
        db,
        transaction.user_id,
        template,
        _notification_payload(transaction, status),
        unique_key=f"notify:{transaction.id}:{template}",
    )


async def enqueue_refund_side_effects(
    db: AsyncSession,
    transaction: Transaction,
    refund: Refund,
) -> None:
    """Called when a refund moves to succeeded."""
    await enqueue_sync(db, transaction.id, unique_key=f"sync:refund:{refund.id}")
    await enqueue_notification(
        db,
        transaction.user_id,
        REFUND_TEMPLATE,
        _notification_payload(
            transaction,
            "refunded",
            refund_id=str(refund.id),
            refund_amount_cents=refund.amount_cents,
        ),
        unique_key=f"notify:refund:{refund.id}",
    )


async def sync_entity_payment(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    catalog: TargetCatalog,
) -> bool:
    """
    Write the transaction's effective status onto its payable record.

    Returns:
        True if the record was updated, False if the transaction is missing,
        its target type is no longer registered, or the record no longer
        points at it.
    """
    transaction = await db.get(Transaction, transaction_id)
    if transaction is None:
        logger.warning("Sync skipped: transaction %s not found", transaction_id,
                       extra={"transaction_id": str(transaction_id)})
        return False

    try:
        target = catalog.get(transaction.entity_type)
    except UnknownTargetError:
        logger.warning(
            "Sync skipped: target type %s is not registered", transaction.entity_type,
            extra={"transaction_id": str(transaction.id), "entity_type": transaction.entity_type},
        )
        return False

    result = await db.execute(select(Refund).where(Refund.transaction_id == transaction.id))
    status = effective_status(transaction, result.scalars().all())
    domain_value = target.domain_status(status)

    updated = await target.update_payment_status(db, transaction.entity_id, transaction.id, domain_value)
    log_extra = {
        "transaction_id": str(transaction.id),
        "entity_type": transaction.entity_type,
        "entity_id": transaction.entity_id,
        "outcome": domain_value,
    }
    if updated:
        logger.info("Synced %s %s payment_status=%s", transaction.entity_type,
                    transaction.entity_id, domain_value, extra=log_extra)
    else:
        logger.info("Sync skipped: %s %s no longer points at transaction %s",
                    transaction.entity_type, transaction.entity_id, transaction.id, extra=log_extra)
    return updated
