"""
Webhook service: provider notifications, deduplicated and processed once.

Intake (HTTP request path, must be fast and never fail on duplicates):
  1. Parse just enough of the body to get the provider's event id and type
  2. INSERT ... ON CONFLICT (provider, provider_event_id) DO NOTHING
  3. If the row is new, enqueue a process_webhook job in the same transaction
  The endpoint answers 200 either way, so the provider stops retrying.

Processing (worker, process_webhook job):
  1. Take an exclusive per-event lock (advisory lock on PostgreSQL plus a
     row lock); contention means another worker has it: retry later
  2. Skip events already processed
  3. Verify the signature over the stored raw bytes; a bad signature is
     recorded on the event and never retried
  4. Dispatch to the handler registered for the event type; unknown types
     are stored for inspection and marked processed
  5. Mark the event processed in the same transaction as the handler's
     state changes

Handlers are plain async functions registered with a decorator:

    @webhook_handlers.register("payment_intent.succeeded")
    async def handle_succeeded(db, event): ...
"""

import hashlib
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.clock import as_utc, utcnow
from app.database import dialect_name, insert_ignore
from app.exceptions import JobDiscardError, JobRetryableError, MalformedWebhookError
from app.models.job import JobKind
from app.models.transaction import TransactionStatus
from app.models.webhook_event import WebhookEvent
from app.providers.base import (
    MalformedEventError,
    PaymentProvider,
    SignatureVerificationError,
    VerifiedEvent,
)
from app.services import job_store, refund_service, transaction_service

logger = logging.getLogger(__name__)

WebhookHandler = Callable[[AsyncSession, VerifiedEvent], Awaitable[str]]


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    event_type: str
    duplicate: bool
    webhook_event_id: uuid.UUID | None = None


class ProcessOutcome:
    ALREADY_PROCESSED = "already_processed"
    REJECTED = "rejected"
    UNHANDLED = "unhandled"


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------

class WebhookHandlerRegistry:
    """Maps provider event types to handler functions."""

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}

    def register(self, event_type: str) -> Callable[[WebhookHandler], WebhookHandler]:
        def decorator(handler: WebhookHandler) -> WebhookHandler:
            if event_type in self._handlers:
                raise ValueError(f"A handler for {event_type} is already registered")
            self._handlers[event_type] = handler
            return handler
        return decorator

    def get(self, event_type: str) -> WebhookHandler | None:
        return self._handlers.get(event_type)

    def event_types(self) -> list[str]:
        return sorted(self._handlers)


webhook_handlers = WebhookHandlerRegistry()


def _intent_fields(event: VerifiedEvent) -> tuple[str, str | None]:
    """(intent id, our transaction id from the intent metadata) for payment_intent.* events."""
    provider_reference = event.data.get("id")
    if not isinstance(provider_reference, str) or not provider_reference:
        raise JobDiscardError(f"{event.event_type} event {event.event_id} carries no intent id")
    metadata = event.data.get("metadata") or {}
    hint = metadata.get("transaction_id") if isinstance(metadata, dict) else None
    return provider_reference, hint


@webhook_handlers.register("payment_intent.succeeded")
async def handle_payment_succeeded(db: AsyncSession, event: VerifiedEvent) -> str:
    provider_reference, hint = _intent_fields(event)
    return await transaction_service.apply_provider_outcome(
        db, provider_reference, TransactionStatus.SUCCEEDED, transaction_hint=hint,
    )


@webhook_handlers.register("payment_intent.payment_failed")
async def handle_payment_failed(db: AsyncSession, event: VerifiedEvent) -> str:
    provider_reference, hint = _intent_fields(event)
    last_error = event.data.get("last_payment_error") or {}
    message = last_error.get("message") if isinstance(last_error, dict) else None
    return await transaction_service.apply_provider_outcome(
        db,
        provider_reference,
        TransactionStatus.FAILED,
        error_message=message or "payment failed",
        transaction_hint=hint,
    )


@webhook_handlers.register("payment_intent.canceled")
async def handle_payment_canceled(db: AsyncSession, event: VerifiedEvent) -> str:
    provider_reference, hint = _intent_fields(event)
    reason = event.data.get("cancellation_reason")
    return await transaction_service.apply_provider_outcome(
        db,
        provider_reference,
        TransactionStatus.CANCELED,
        error_message=f"canceled: {reason}" if reason else None,
        transaction_hint=hint,
    )


@webhook_handlers.register("payment_intent.amount_capturable_updated")
async def handle_amount_capturable(db: AsyncSession, event: VerifiedEvent) -> str:
    provider_reference, _ = _intent_fields(event)
    authorized = await transaction_service.mark_authorized(db, provider_reference)
    return "authorized" if authorized else "ignored"


@webhook_handlers.register("charge.refunded")
async def handle_charge_refunded(db: AsyncSession, event: VerifiedEvent) -> str:
    provider_reference = event.data.get("payment_intent")
    if not isinstance(provider_reference, str) or not provider_reference:
        logger.warning("charge.refunded event %s has no payment_intent", event.event_id,
                       extra={"event_id": event.event_id})
        return "ignored"
    confirmed = await refund_service.confirm_refunds_for_intent(db, provider_reference)
    return f"confirmed:{confirmed}"


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------

async def ingest_event(
    db: AsyncSession,
    *,
    provider_name: str,
    provider: PaymentProvider,
    raw_payload: bytes,
    signature_header: str | None,
    max_attempts: int = job_store.DEFAULT_MAX_ATTEMPTS,
) -> IngestResult:
    """
    Record an inbound webhook exactly once and schedule its processing.

    The signature is NOT checked here; it is verified by the worker against
    the stored bytes. Nothing but the dedup key is trusted at this point.

    Raises:
        MalformedWebhookError: the payload has no recognizable id/type.
    """
    try:
        identity = provider.extract_event_identity(raw_payload)
    except MalformedEventError as exc:
        raise MalformedWebhookError(f"Malformed webhook payload: {exc}") from exc

    row_id = await insert_ignore(
        db,
        WebhookEvent,
        {
            "provider": provider_name,
            "provider_event_id": identity.event_id,
            "event_type": identity.event_type,
            "raw_payload": raw_payload,
            "signature_header": signature_header,
            "payload": identity.payload,
            "processed": False,
            "received_at": utcnow(),
        },
        conflict_columns=["provider", "provider_event_id"],
    )
    log_extra = {"event_id": identity.event_id, "event_type": identity.event_type,
                 "provider": provider_name}

    if row_id is None:
        logger.info("Duplicate webhook %s (%s) ignored", identity.event_id, identity.event_type,
                    extra=log_extra)
        return IngestResult(identity.event_id, identity.event_type, duplicate=True)

    await job_store.enqueue(
        db,
        JobKind.PROCESS_WEBHOOK,
        {"webhook_event_id": str(row_id)},
        max_attempts=max_attempts,
        unique_key=f"webhook:{row_id}",
    )
    logger.info("Webhook %s (%s) received", identity.event_id, identity.event_type, extra=log_extra)
    return IngestResult(identity.event_id, identity.event_type, duplicate=False, webhook_event_id=row_id)


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------

def advisory_lock_key(webhook_event_id: uuid.UUID) -> int:
    """Stable signed 64-bit key for pg_try_advisory_xact_lock."""
    digest = hashlib.blake2b(webhook_event_id.bytes, digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


async def _lock_event(db: AsyncSession, webhook_event_id: uuid.UUID) -> WebhookEvent | None:
    if dialect_name(db) == "postgresql":
        acquired = await db.scalar(select(func.pg_try_advisory_xact_lock(advisory_lock_key(webhook_event_id))))
        if not acquired:
            raise JobRetryableError(f"webhook event {webhook_event_id} is locked by another worker")

    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.id == webhook_event_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def process_event(
    db: AsyncSession,
    webhook_event_id: uuid.UUID,
    providers: dict[str, PaymentProvider],
    *,
    registry: WebhookHandlerRegistry = webhook_handlers,
) -> str:
    """
    Verify and dispatch one stored webhook event.

    Returns:
        The handler's outcome, or one of ProcessOutcome's values.

    Raises:
        JobRetryableError: another worker holds the event's lock, or the
            transaction it refers to has not recorded its intent yet.
        JobDiscardError: the event row or its provider no longer exists.
    """
    event = await _lock_event(db, webhook_event_id)
    if event is None:
        raise JobDiscardError(f"webhook event {webhook_event_id} not found")

    log_extra = {"event_id": event.provider_event_id, "event_type": event.event_type,
                 "provider": event.provider}

    if event.processed:
        logger.info("Webhook %s already processed", event.provider_event_id, extra=log_extra)
        return ProcessOutcome.ALREADY_PROCESSED

    provider = providers.get(event.provider)
    if provider is None:
        event.error = f"provider '{event.provider}' is not configured"
        await db.flush()
        raise JobDiscardError(event.error)

    try:
        verified = provider.verify_signature(
            event.raw_payload,
            event.signature_header,
            received_at=as_utc(event.received_at),
        )
    except SignatureVerificationError as exc:
        event.signature_verified = False
        event.error = f"signature verification failed: {exc}"
        event.processed_at = utcnow()
        await db.flush()
        logger.warning("Webhook %s rejected: %s", event.provider_event_id, event.error, extra=log_extra)
        return ProcessOutcome.REJECTED

    event.signature_verified = True
    handler = registry.get(verified.event_type)
    if handler is None:
        outcome = ProcessOutcome.UNHANDLED
        event.error = None
        logger.info("No handler for webhook type %s, stored for inspection", verified.event_type,
                    extra=log_extra)
    else:
        outcome = await handler(db, verified)
        event.error = None
        logger.info("Webhook %s processed: %s", event.provider_event_id, outcome,
                    extra={**log_extra, "outcome": outcome})

    event.processed = True
    event.processed_at = utcnow()
    await db.flush()
    return outcome


async def record_event_error(db: AsyncSession, webhook_event_id: uuid.UUID, error: str) -> None:
    """Keep the latest processing error on the event (written outside the failed transaction)."""
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == webhook_event_id, WebhookEvent.processed.is_(False))
        .values(error=error[:2000])
        .execution_options(synchronize_session=False)
    )

