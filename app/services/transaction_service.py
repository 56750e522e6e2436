"""
Transaction service: the payment state machine.

THIS IS THE ONLY MODULE THAT WRITES Transaction.status. It handles:
  - Creating transactions for payable records (idempotently)
  - Waiting, with a bound, for the provider intent to exist
  - Recording the outcome of the create_payment_intent job
  - Applying provider outcomes delivered by webhooks
  - Operator actions: capture and cancel requests
  - Housekeeping for transactions stuck in pending_intent

Allowed transitions:

    pending_intent -> pending | failed
    pending        -> succeeded | failed | canceled

Compare-and-swap:
  Every transition is a single UPDATE ... WHERE <row> AND status = <expected>.
  Zero rows updated means someone else already moved the transaction (a
  duplicate or late webhook, a racing worker): that is a no-op, never an
  error. Requesting a transition that is not in the table at all is a
  programming error and raises InvalidTransitionError.

Side effects:
  The first time a transaction enters a terminal state, completed_at is set
  and the entity-sync and notification jobs are enqueued in the SAME
  database transaction, so they exist if and only if the transition
  committed.

Retries:
  A terminal transaction is never reused. Paying again for a record whose
  current transaction failed or was canceled inserts a new row and repoints
  the record at it; the old row stays as the audit trail.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.catalog import TargetCatalog
from app.clock import utcnow
from app.config import Settings
from app.exceptions import (
    IntentCreationFailedError,
    IntentTimeoutError,
    InvalidAmountError,
    InvalidTransitionError,
    JobRetryableError,
    PaymentAlreadySucceededError,
    PaymentInProgressError,
    TargetNotFoundError,
    TransactionNotFoundError,
    UnauthorizedAccessError,
    UnsupportedCurrencyError,
)
from app.models.job import JobKind
from app.models.transaction import CaptureMode, Transaction, TransactionStatus
from app.models.user import User, UserType
from app.security import decrypt_value, encrypt_value
from app.services import entity_sync_service, job_store
from app.services.fee_service import FeeBreakdown

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    TransactionStatus.PENDING_INTENT: frozenset({TransactionStatus.PENDING, TransactionStatus.FAILED}),
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.SUCCEEDED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELED,
    }),
}

STALE_INTENT_ERROR = "intent creation timed out"


class TransitionResult:
    APPLIED = "applied"
    ALREADY_TERMINAL = "already_terminal"
    ORPHANED = "orphaned"


def _log_extra(transaction: Transaction, **extra) -> dict:
    return {
        "transaction_id": str(transaction.id),
        "entity_type": transaction.entity_type,
        "entity_id": transaction.entity_id,
        **extra,
    }


# ---------------------------------------------------------------------------
# Core compare-and-swap transition
# ---------------------------------------------------------------------------

async def _transition(
    db: AsyncSession,
    criterion,
    expected: str,
    new_status: str,
    **values,
) -> Transaction | None:
    """
    Move the transaction matching `criterion` from `expected` to `new_status`.

    Returns:
        The updated transaction, or None if no row was in `expected` state.

    Raises:
        InvalidTransitionError: expected -> new_status is not an allowed edge.
    """
    if new_status not in ALLOWED_TRANSITIONS.get(expected, frozenset()):
        raise InvalidTransitionError(f"Transition {expected} -> {new_status} is not allowed")

    now = utcnow()
    values.update(status=new_status, updated_at=now)
    if new_status in TransactionStatus.TERMINAL:
        values["completed_at"] = now

    result = await db.execute(
        update(Transaction)
        .where(criterion, Transaction.status == expected)
        .values(**values)
        .returning(Transaction.id)
        .execution_options(synchronize_session=False)
    )
    transaction_id = result.scalar_one_or_none()
    if transaction_id is None:
        return None

    transaction = await db.get(Transaction, transaction_id, populate_existing=True)
    logger.info(
        "Transaction %s: %s -> %s", transaction.id, expected, new_status,
        extra=_log_extra(transaction, outcome=new_status),
    )

    if new_status in TransactionStatus.TERMINAL:
        await entity_sync_service.enqueue_terminal_side_effects(db, transaction)

    return transaction


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def create_transaction(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    target_type: str,
    target_id: str,
    amount_cents: int,
    catalog: TargetCatalog,
    settings: Settings,
    currency: str | None = None,
    description: str | None = None,
) -> tuple[Transaction, bool]:
    """
    Start (or resume) a payment for a payable record.

    The record is locked while its current transaction is inspected:
      - pending_intent / pending: returned unchanged, nothing enqueued
        (PaymentInProgressError when it belongs to another user)
      - succeeded: PaymentAlreadySucceededError (no double charge)
      - failed / canceled / none: a new pending_intent transaction is
        inserted, the record repointed at it, and a create_payment_intent
        job enqueued, all in the caller's database transaction

    Args:
        db: Database session (the caller commits).
        user_id: Owner of the new transaction.
        target_type / target_id: Catalog entry name and record id.
        amount_cents: Amount to collect, before any processing fee.
        catalog: Payable target registry.
        settings: Supplies currency, provider and job settings.

    Returns:
        Tuple of (transaction, created). created is False on resume.

    Raises:
        InvalidAmountError, UnsupportedCurrencyError, UnknownTargetError,
        TargetNotFoundError, PaymentAlreadySucceededError, PaymentInProgressError
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmountError(amount_cents)

    requested_currency = (currency or settings.PAYMENT_CURRENCY).upper()
    if requested_currency != settings.PAYMENT_CURRENCY:
        raise UnsupportedCurrencyError(requested_currency, settings.PAYMENT_CURRENCY)

    target = catalog.get(target_type)
    record = await target.load(db, target_id, lock=True)
    if record is None:
        raise TargetNotFoundError(target_type, str(target_id))
    entity_id = str(record.id)

    current_id = target.current_transaction_id(record)
    if current_id is not None:
        current = await db.get(Transaction, current_id)
        if current is not None:
            if current.status in TransactionStatus.ACTIVE:
                if current.user_id != user_id:
                    raise PaymentInProgressError(target_type, entity_id)
                if current.amount_cents != amount_cents:
                    logger.warning(
                        "Resuming transaction %s for %s %s with its original amount %s (requested %s)",
                        current.id, target_type, entity_id, current.amount_cents, amount_cents,
                        extra=_log_extra(current),
                    )
                else:
                    logger.info("Resuming transaction %s for %s %s", current.id, target_type,
                                entity_id, extra=_log_extra(current))
                return current, False
            if current.status == TransactionStatus.SUCCEEDED:
                raise PaymentAlreadySucceededError(current.id)

    new_id = uuid.uuid4()
    linked = await target.link_transaction(
        db,
        entity_id,
        current_id,
        new_id,
        target.domain_status(TransactionStatus.PENDING_INTENT),
    )
    await db.refresh(record)
    if not linked:
        # Another request repointed the record between our read and write
        winner_id = target.current_transaction_id(record)
        winner = await db.get(Transaction, winner_id) if winner_id else None
        if winner is not None and winner.status in TransactionStatus.ACTIVE:
            if winner.user_id != user_id:
                raise PaymentInProgressError(target_type, entity_id)
            return winner, False
        raise InvalidTransitionError(
            f"{target_type} {entity_id} changed while the payment was being created, retry the request"
        )

    transaction = Transaction(
        id=new_id,
        user_id=user_id,
        entity_type=target.name,
        entity_id=entity_id,
        amount_cents=amount_cents,
        currency=requested_currency,
        status=TransactionStatus.PENDING_INTENT,
        capture_mode=target.capture_mode,
        provider=settings.PAYMENT_PROVIDER,
        description=description,
    )
    db.add(transaction)
    await db.flush()

    await job_store.enqueue(
        db,
        JobKind.CREATE_PAYMENT_INTENT,
        {"transaction_id": str(transaction.id)},
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        unique_key=f"create_intent:{transaction.id}",
    )

    logger.info(
        "Created transaction %s for %s %s (%s %s)",
        transaction.id, target_type, entity_id, amount_cents, requested_currency,
        extra=_log_extra(transaction),
    )
    return transaction, True


async def wait_for_intent(
    session_factory: async_sessionmaker,
    transaction_id: uuid.UUID,
    *,
    timeout: float,
    poll_interval: float,
) -> Transaction:
    """
    Poll until the transaction's intent exists (or creation failed).

    Each poll uses a fresh session so it sees commits made by workers. The
    create_payment_intent job is not affected by the caller giving up.

    Raises:
        IntentCreationFailedError: the transaction moved to failed.
        IntentTimeoutError: still pending_intent after `timeout` seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        async with session_factory() as db:
            transaction = await db.get(Transaction, transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)

        if transaction.status == TransactionStatus.FAILED:
            raise IntentCreationFailedError(transaction.id, transaction.error_message)
        if transaction.status != TransactionStatus.PENDING_INTENT:
            return transaction

        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.warning("Timed out waiting for intent of transaction %s", transaction_id,
                           extra={"transaction_id": str(transaction_id)})
            raise IntentTimeoutError(transaction_id, timeout)
        await asyncio.sleep(min(poll_interval, remaining))


def client_secret_for(transaction: Transaction) -> str | None:
    """Decrypted client secret. Callers must have checked the requester owns the transaction."""
    if transaction.provider_secret is None:
        return None
    return decrypt_value(transaction.provider_secret)


# ---------------------------------------------------------------------------
# Intent job outcomes
# ---------------------------------------------------------------------------

async def record_intent_created(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    provider_reference: str,
    client_secret: str,
    fee: FeeBreakdown | None = None,
) -> bool:
    """pending_intent -> pending, storing the provider reference, secret and fee audit."""
    fee = fee or FeeBreakdown()
    transaction = await _transition(
        db,
        Transaction.id == transaction_id,
        TransactionStatus.PENDING_INTENT,
        TransactionStatus.PENDING,
        provider_reference=provider_reference,
        provider_secret=encrypt_value(client_secret),
        processing_fee_cents=fee.fee_cents,
        fee_percent=fee.percent,
        fee_flat_cents=fee.flat_cents,
        fee_refundable=fee.refundable,
        error_message=None,
    )
    return transaction is not None


async def record_intent_failed(db: AsyncSession, transaction_id: uuid.UUID, error: str) -> bool:
    """pending_intent -> failed."""
    transaction = await _transition(
        db,
        Transaction.id == transaction_id,
        TransactionStatus.PENDING_INTENT,
        TransactionStatus.FAILED,
        error_message=error,
    )
    return transaction is not None


async def record_provider_error(db: AsyncSession, transaction_id: uuid.UUID, error: str) -> None:
    """Keep the latest provider error on a transaction without changing its status."""
    await db.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id)
        .values(error_message=error, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


# ---------------------------------------------------------------------------
# Provider outcomes (webhooks)
# ---------------------------------------------------------------------------

async def apply_provider_outcome(
    db: AsyncSession,
    provider_reference: str,
    new_status: str,
    *,
    error_message: str | None = None,
    transaction_hint: str | None = None,
) -> str:
    """
    pending -> succeeded | failed | canceled for the transaction with this reference.

    transaction_hint is our own transaction id echoed back by the provider
    (intent metadata). When no transaction carries the reference yet but the
    hinted one is still pending_intent, the intent job has not recorded the
    reference: JobRetryableError asks for the event to be processed later.

    Returns:
        TransitionResult.APPLIED, ALREADY_TERMINAL or ORPHANED.
    """
    values = {}
    if error_message is not None:
        values["error_message"] = error_message

    transaction = await _transition(
        db,
        Transaction.provider_reference == provider_reference,
        TransactionStatus.PENDING,
        new_status,
        **values,
    )
    if transaction is not None:
        return TransitionResult.APPLIED

    current_status = await db.scalar(
        select(Transaction.status).where(Transaction.provider_reference == provider_reference)
    )
    if current_status is not None:
        logger.info(
            "Ignoring %s for %s: transaction already %s", new_status, provider_reference, current_status,
            extra={"provider_reference": provider_reference, "outcome": TransitionResult.ALREADY_TERMINAL},
        )
        return TransitionResult.ALREADY_TERMINAL

    if transaction_hint:
        hinted = await _get_by_hint(db, transaction_hint)
        if hinted is not None and hinted.status == TransactionStatus.PENDING_INTENT:
            raise JobRetryableError(
                f"transaction {hinted.id} has not recorded intent {provider_reference} yet"
            )

    logger.warning(
        "Orphaned %s event: no transaction for %s", new_status, provider_reference,
        extra={"provider_reference": provider_reference, "outcome": TransitionResult.ORPHANED},
    )
    return TransitionResult.ORPHANED


async def _get_by_hint(db: AsyncSession, transaction_hint: str) -> Transaction | None:
    try:
        hinted_id = uuid.UUID(str(transaction_hint))
    except ValueError:
        return None
    return await db.get(Transaction, hinted_id)


async def mark_authorized(db: AsyncSession, provider_reference: str) -> bool:
    """Deferred capture: the provider holds the funds and the intent can be captured."""
    now = utcnow()
    result = await db.execute(
        update(Transaction)
        .where(
            Transaction.provider_reference == provider_reference,
            Transaction.status == TransactionStatus.PENDING,
            Transaction.authorized_at.is_(None),
        )
        .values(authorized_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("Intent %s authorized, ready for capture", provider_reference,
                    extra={"provider_reference": provider_reference})
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

async def _get_for_update(db: AsyncSession, transaction_id: uuid.UUID) -> Transaction:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise TransactionNotFoundError(transaction_id)
    return transaction


async def request_capture(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    *,
    max_attempts: int = job_store.DEFAULT_MAX_ATTEMPTS,
) -> Transaction:
    """
    Enqueue capture of an authorized deferred-capture intent.

    The transaction only becomes succeeded when the provider confirms it
    via webhook. Repeated requests collapse into the same job.
    """
    transaction = await _get_for_update(db, transaction_id)
    if transaction.capture_mode != CaptureMode.DEFERRED:
        raise InvalidTransitionError(f"Transaction {transaction.id} is captured automatically")
    if transaction.status != TransactionStatus.PENDING:
        raise InvalidTransitionError(
            f"Transaction {transaction.id} cannot be captured in status '{transaction.status}'"
        )
    if transaction.authorized_at is None:
        raise InvalidTransitionError(f"Transaction {transaction.id} has not been authorized yet")

    await job_store.enqueue(
        db,
        JobKind.CAPTURE_PAYMENT_INTENT,
        {"transaction_id": str(transaction.id)},
        max_attempts=max_attempts,
        unique_key=f"capture:{transaction.id}",
    )
    logger.info("Capture requested for transaction %s", transaction.id, extra=_log_extra(transaction))
    return transaction


async def request_cancel(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    *,
    max_attempts: int = job_store.DEFAULT_MAX_ATTEMPTS,
) -> Transaction:
    """Enqueue cancellation of a pending intent; canceled is confirmed by webhook."""
    transaction = await _get_for_update(db, transaction_id)
    if transaction.status != TransactionStatus.PENDING:
        raise InvalidTransitionError(
            f"Transaction {transaction.id} cannot be canceled in status '{transaction.status}'"
        )

    await job_store.enqueue(
        db,
        JobKind.CANCEL_PAYMENT_INTENT,
        {"transaction_id": str(transaction.id)},
        max_attempts=max_attempts,
        unique_key=f"cancel:{transaction.id}",
    )
    logger.info("Cancel requested for transaction %s", transaction.id, extra=_log_extra(transaction))
    return transaction


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def get_transaction(db: AsyncSession, transaction_id: uuid.UUID) -> Transaction:
    transaction = await db.get(Transaction, transaction_id)
    if transaction is None:
        raise TransactionNotFoundError(transaction_id)
    return transaction


async def get_owned_transaction(db: AsyncSession, transaction_id: uuid.UUID, user: User) -> Transaction:
    """Fetch a transaction the user owns (admins may read any)."""
    transaction = await get_transaction(db, transaction_id)
    if transaction.user_id != user.id and user.user_type != UserType.ADMIN:
        raise UnauthorizedAccessError()
    return transaction


async def list_transactions(
    db: AsyncSession,
    *,
    user_id: uuid.UUID | None = None,
    status: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    """Newest first; user_id=None lists everyone's (admin view)."""
    stmt = select(Transaction)
    if user_id is not None:
        stmt = stmt.where(Transaction.user_id == user_id)
    if status is not None:
        stmt = stmt.where(Transaction.status == status)
    if entity_type is not None:
        stmt = stmt.where(Transaction.entity_type == entity_type)
    if entity_id is not None:
        stmt = stmt.where(Transaction.entity_id == entity_id)
    stmt = stmt.order_by(Transaction.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Housekeeping
# ---------------------------------------------------------------------------

async def expire_stale_intents(
    db: AsyncSession,
    *,
    policy: str,
    older_than_seconds: int,
    now: datetime | None = None,
) -> int:
    """
    Handle transactions stuck in pending_intent for longer than older_than_seconds.

    policy "fail" moves them to failed ("intent creation timed out") through
    the normal transition, so domain records and owners hear about it.
    policy "hold" leaves them for manual intervention and only logs them.

    Returns:
        Number of transactions moved to failed.
    """
    cutoff = (now or utcnow()) - timedelta(seconds=older_than_seconds)
    result = await db.execute(
        select(Transaction.id)
        .where(
            Transaction.status == TransactionStatus.PENDING_INTENT,
            Transaction.created_at < cutoff,
        )
        .order_by(Transaction.created_at)
    )
    stale_ids = list(result.scalars().all())
    if not stale_ids:
        return 0

    if policy == "hold":
        logger.warning(
            "%s transaction(s) stuck in pending_intent since before %s, held for manual review: %s",
            len(stale_ids), cutoff.isoformat(), ", ".join(str(i) for i in stale_ids),
        )
        return 0
    if policy != "fail":
        raise ValueError(f"Unknown stale intent policy '{policy}'")

    expired = 0
    for transaction_id in stale_ids:
        if await record_intent_failed(db, transaction_id, STALE_INTENT_ERROR):
            expired += 1
    if expired:
        logger.warning("Expired %s stale pending_intent transaction(s)", expired)
    return expired
