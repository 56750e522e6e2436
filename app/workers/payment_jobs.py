"""
Job handlers that talk to the payment provider.

Each handler re-reads its row and skips quietly when the row has already
moved on, so a job that runs twice (at-least-once delivery) is harmless.
Provider calls carry idempotency keys derived from our row ids.

Failure handling:
  - PermanentProviderError: the outcome is recorded and the job completes
    (nothing to retry)
  - TransientProviderError: re-raised so the pool retries with backoff;
    on the final attempt the failure is recorded first, in its own
    transaction, so it survives the rollback of the handler's session
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.refund import Refund, RefundStatus
from app.models.transaction import Transaction, TransactionStatus
from app.providers.base import PermanentProviderError, TransientProviderError
from app.services import refund_service, transaction_service
from app.services.fee_service import FeeConfig
from app.workers.pool import JobContext

logger = logging.getLogger(__name__)


async def create_payment_intent(ctx: JobContext, db: AsyncSession) -> None:
    transaction_id = ctx.arg_uuid("transaction_id")
    transaction = await db.get(Transaction, transaction_id)
    log_extra = {**ctx.log_extra, "transaction_id": str(transaction_id)}
    if transaction is None:
        logger.warning("create_payment_intent: transaction %s not found", transaction_id, extra=log_extra)
        return
    if transaction.status != TransactionStatus.PENDING_INTENT:
        logger.info("create_payment_intent: transaction %s already %s", transaction.id,
                    transaction.status, extra=log_extra)
        return

    provider = ctx.provider(transaction.provider)
    fee = FeeConfig.from_settings(ctx.settings).breakdown(transaction.amount_cents)

    try:
        intent = await provider.create_intent(
            transaction.amount_cents + fee.fee_cents,
            transaction.currency,
            transaction.capture_mode,
            {
                "transaction_id": str(transaction.id),
                "entity_type": transaction.entity_type,
                "entity_id": transaction.entity_id,
            },
            idempotency_key=f"intent-{transaction.id}",
            description=transaction.description,
        )
    except PermanentProviderError as exc:
        logger.warning("Intent creation rejected for transaction %s: %s", transaction.id, exc,
                       extra=log_extra)
        await transaction_service.record_intent_failed(db, transaction.id, str(exc))
        return
    except TransientProviderError as exc:
        if ctx.is_final_attempt:
            async with ctx.session_factory() as failure_db:
                await transaction_service.record_intent_failed(
                    failure_db, transaction.id, f"provider unavailable: {exc}"
                )
                await failure_db.commit()
        raise

    recorded = await transaction_service.record_intent_created(
        db, transaction.id, intent.provider_reference, intent.client_secret, fee,
    )
    if not recorded:
        # The transaction left pending_intent while we were calling out (stale-intent expiry)
        logger.warning("Transaction %s moved on before intent %s was recorded, canceling it",
                       transaction.id, intent.provider_reference,
                       extra={**log_extra, "provider_reference": intent.provider_reference})
        try:
            await provider.cancel_intent(intent.provider_reference,
                                         idempotency_key=f"cancel-{transaction.id}")
        except (TransientProviderError, PermanentProviderError):
            logger.exception("Could not cancel orphaned intent %s", intent.provider_reference,
                             extra=log_extra)


async def _pending_transaction(ctx: JobContext, db: AsyncSession, action: str) -> Transaction | None:
    transaction_id = ctx.arg_uuid("transaction_id")
    transaction = await db.get(Transaction, transaction_id)
    if transaction is None or transaction.status != TransactionStatus.PENDING:
        logger.info("%s: transaction %s is not pending, skipping", action, transaction_id,
                    extra={**ctx.log_extra, "transaction_id": str(transaction_id)})
        return None
    return transaction


async def capture_payment_intent(ctx: JobContext, db: AsyncSession) -> None:
    transaction = await _pending_transaction(ctx, db, "capture_payment_intent")
    if transaction is None:
        return
    provider = ctx.provider(transaction.provider)
    try:
        result = await provider.capture_intent(
            transaction.provider_reference, idempotency_key=f"capture-{transaction.id}"
        )
    except PermanentProviderError as exc:
        await transaction_service.record_provider_error(db, transaction.id, f"capture failed: {exc}")
        return
    # succeeded arrives via payment_intent.succeeded
    logger.info("Capture of %s submitted (%s)", transaction.provider_reference, result.status,
                extra={**ctx.log_extra, "transaction_id": str(transaction.id)})


async def cancel_payment_intent(ctx: JobContext, db: AsyncSession) -> None:
    transaction = await _pending_transaction(ctx, db, "cancel_payment_intent")
    if transaction is None:
        return
    provider = ctx.provider(transaction.provider)
    try:
        accepted = await provider.cancel_intent(
            transaction.provider_reference, idempotency_key=f"cancel-{transaction.id}"
        )
    except PermanentProviderError as exc:
        await transaction_service.record_provider_error(db, transaction.id, f"cancel failed: {exc}")
        return
    logger.info("Cancel of %s submitted (accepted=%s)", transaction.provider_reference, accepted,
                extra={**ctx.log_extra, "transaction_id": str(transaction.id)})


async def process_refund(ctx: JobContext, db: AsyncSession) -> None:
    refund_id = ctx.arg_uuid("refund_id")
    refund = await db.get(Refund, refund_id)
    log_extra = {**ctx.log_extra, "refund_id": str(refund_id)}
    if refund is None or refund.status != RefundStatus.PENDING:
        logger.info("process_refund: refund %s is not pending, skipping", refund_id, extra=log_extra)
        return

    transaction = await db.get(Transaction, refund.transaction_id)
    provider = ctx.provider(transaction.provider)
    try:
        result = await provider.create_refund(
            transaction.provider_reference,
            refund.amount_cents,
            reason=refund.reason,
            idempotency_key=f"refund-{refund.id}",
        )
    except PermanentProviderError as exc:
        await refund_service.record_refund_failed(db, refund.id, str(exc))
        return
    except TransientProviderError as exc:
        if ctx.is_final_attempt:
            async with ctx.session_factory() as failure_db:
                await refund_service.record_refund_failed(failure_db, refund.id,
                                                          f"provider unavailable: {exc}")
                await failure_db.commit()
        raise

    await refund_service.record_refund_result(db, refund.id, result.refund_reference, result.status)
