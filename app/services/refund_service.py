"""
Refund service: partial and full refunds of succeeded payments.

Refund flow:
  1. An admin requests a refund (HTTP layer enforces the privilege)
  2. The transaction row is locked and the limit is checked against what is
     already refunded or in flight; over-limit requests are rejected here,
     before any job exists
  3. A pending Refund row and a process_refund job are written together
  4. The worker calls the provider; the refund becomes succeeded or failed
     (or stays pending until a charge.refunded webhook confirms it)
  5. On succeeded, entity sync and a payment_refunded notification are enqueued

Only one refund per transaction may be in flight at a time.
"""

import logging
import uuid
from collections import defaultdict

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.clock import utcnow
from app.exceptions import (
    InvalidAmountError,
    RefundLimitExceededError,
    RefundNotAllowedError,
    RefundPendingError,
    TransactionNotFoundError,
)
from app.models.job import JobKind
from app.models.refund import Refund, RefundStatus
from app.models.transaction import Transaction, TransactionStatus
from app.services import entity_sync_service, job_store
from app.services.payment_status import RefundTotals, refund_totals

logger = logging.getLogger(__name__)


async def list_refunds(db: AsyncSession, transaction_id: uuid.UUID) -> list[Refund]:
    result = await db.execute(
        select(Refund)
        .where(Refund.transaction_id == transaction_id)
        .order_by(Refund.created_at)
    )
    return list(result.scalars().all())


async def refunds_by_transaction(
    db: AsyncSession,
    transaction_ids: list[uuid.UUID],
) -> dict[uuid.UUID, list[Refund]]:
    """Refunds for many transactions in one query (for list views)."""
    grouped: dict[uuid.UUID, list[Refund]] = defaultdict(list)
    if not transaction_ids:
        return grouped
    result = await db.execute(select(Refund).where(Refund.transaction_id.in_(transaction_ids)))
    for refund in result.scalars().all():
        grouped[refund.transaction_id].append(refund)
    return grouped


async def refunded_totals(db: AsyncSession, transaction_id: uuid.UUID) -> RefundTotals:
    return refund_totals(await list_refunds(db, transaction_id))


async def refund_transaction(
    db: AsyncSession,
    *,
    transaction_id: uuid.UUID,
    initiated_by: uuid.UUID,
    amount_cents: int | None = None,
    reason: str | None = None,
    max_attempts: int = job_store.DEFAULT_MAX_ATTEMPTS,
) -> Refund:
    """
    Request a refund against a succeeded transaction.

    Args:
        db: Database session (the caller commits).
        transaction_id: The payment to refund.
        initiated_by: The admin requesting it.
        amount_cents: Amount to refund; defaults to everything still refundable.
        reason: Free-text reason, forwarded to the provider.

    Returns:
        The pending Refund.

    Raises:
        TransactionNotFoundError, RefundNotAllowedError (not succeeded),
        InvalidAmountError, RefundLimitExceededError, RefundPendingError
    """
    result = await db.execute(
        select(Transaction)
        .where(Transaction.id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise TransactionNotFoundError(transaction_id)
    if transaction.status != TransactionStatus.SUCCEEDED:
        raise RefundNotAllowedError(transaction.id, transaction.status)

    totals = await refunded_totals(db, transaction.id)
    available = transaction.max_refundable_cents - totals.committed_cents

    if amount_cents is None:
        if available <= 0:
            raise RefundLimitExceededError(transaction.id, 0, max(available, 0))
        amount_cents = available
    elif isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmountError(amount_cents)

    if amount_cents > available:
        raise RefundLimitExceededError(transaction.id, amount_cents, max(available, 0))
    if totals.pending_count:
        raise RefundPendingError(transaction.id)

    refund = Refund(
        transaction_id=transaction.id,
        amount_cents=amount_cents,
        reason=reason,
        initiated_by=initiated_by,
        status=RefundStatus.PENDING,
    )
    db.add(refund)
    await db.flush()

    await job_store.enqueue(
        db,
        JobKind.PROCESS_REFUND,
        {
            "refund_id": str(refund.id),
            "transaction_id": str(transaction.id),
            "amount_cents": amount_cents,
        },
        max_attempts=max_attempts,
        unique_key=f"refund:{refund.id}",
    )

    logger.info(
        "Refund %s of %s cents requested for transaction %s",
        refund.id, amount_cents, transaction.id,
        extra={"refund_id": str(refund.id), "transaction_id": str(transaction.id)},
    )
    return refund


async def _finish_refund(
    db: AsyncSession,
    refund_id: uuid.UUID,
    new_status: str,
    **values,
) -> Refund | None:
    """CAS pending -> new_status. Returns the refund, or None if it was not pending."""
    result = await db.execute(
        update(Refund)
        .where(Refund.id == refund_id, Refund.status == RefundStatus.PENDING)
        .values(status=new_status, processed_at=utcnow(), **values)
        .returning(Refund.id)
        .execution_options(synchronize_session=False)
    )
    if result.scalar_one_or_none() is None:
        return None

    refund = await db.get(Refund, refund_id, populate_existing=True)
    log_extra = {"refund_id": str(refund.id), "transaction_id": str(refund.transaction_id),
                 "outcome": new_status}
    if new_status == RefundStatus.SUCCEEDED:
        transaction = await db.get(Transaction, refund.transaction_id)
        await entity_sync_service.enqueue_refund_side_effects(db, transaction, refund)
        logger.info("Refund %s succeeded", refund.id, extra=log_extra)
    else:
        logger.warning("Refund %s failed: %s", refund.id, refund.error_message, extra=log_extra)
    return refund


async def record_refund_result(
    db: AsyncSession,
    refund_id: uuid.UUID,
    provider_reference: str,
    status: str,
) -> bool:
    """
    Store the provider's answer to a refund request.

    status "pending" keeps the refund pending (the provider settles it later
    and a charge.refunded webhook confirms it) but records the reference.
    """
    if status == RefundStatus.PENDING:
        await db.execute(
            update(Refund)
            .where(Refund.id == refund_id, Refund.status == RefundStatus.PENDING)
            .values(provider_reference=provider_reference)
            .execution_options(synchronize_session=False)
        )
        return False
    if status == RefundStatus.FAILED:
        refund = await _finish_refund(
            db, refund_id, RefundStatus.FAILED,
            provider_reference=provider_reference,
            error_message="refund was declined by the provider",
        )
        return refund is not None
    refund = await _finish_refund(
        db, refund_id, RefundStatus.SUCCEEDED, provider_reference=provider_reference,
    )
    return refund is not None


async def record_refund_failed(db: AsyncSession, refund_id: uuid.UUID, error: str) -> bool:
    refund = await _finish_refund(db, refund_id, RefundStatus.FAILED, error_message=error)
    return refund is not None


async def confirm_refunds_for_intent(db: AsyncSession, provider_reference: str) -> int:
    """
    charge.refunded: every pending refund on the intent's transaction succeeded.

    Returns:
        Number of refunds confirmed (0 for duplicates or unknown intents).
    """
    transaction_id = await db.scalar(
        select(Transaction.id).where(Transaction.provider_reference == provider_reference)
    )
    if transaction_id is None:
        logger.warning("charge.refunded for unknown intent %s", provider_reference,
                       extra={"provider_reference": provider_reference})
        return 0

    result = await db.execute(
        select(Refund.id).where(
            Refund.transaction_id == transaction_id,
            Refund.status == RefundStatus.PENDING,
            # Submitted to the provider; not-yet-sent refunds are left to their job
            Refund.provider_reference.is_not(None),
        )
    )
    confirmed = 0
    for refund_id in result.scalars().all():
        if await _finish_refund(db, refund_id, RefundStatus.SUCCEEDED) is not None:
            confirmed += 1
    return confirmed
