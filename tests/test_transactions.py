"""
Tests for the payment state machine (app/services/transaction_service.py)
driven end to end through the job handlers.

These tests verify:
  - Validation errors are raised synchronously and enqueue nothing
  - Two creates for the same record before resolution share one transaction
  - Another user cannot take over a payment that is still unresolved
  - The intent job moves pending_intent -> pending, with retries on
    transient provider errors and failed on permanent ones
  - Provider outcomes are applied once; terminal transactions never change
  - Paying again after a failure creates a new transaction row
  - Deferred capture and cancellation flows
  - Processing fees are added to the amount charged
"""

import uuid
from types import SimpleNamespace

import pytest

from app.exceptions import (
    IntentCreationFailedError,
    IntentTimeoutError,
    InvalidAmountError,
    InvalidTransitionError,
    PaymentAlreadySucceededError,
    PaymentInProgressError,
    TargetNotFoundError,
    UnknownTargetError,
    UnsupportedCurrencyError,
)
from app.models.invoice import Invoice
from app.models.job import JobKind, JobState
from app.models.reservation import Reservation
from app.models.transaction import CaptureMode, Transaction, TransactionStatus
from app.providers.base import PermanentProviderError, TransientProviderError
from app.services import job_store, transaction_service, webhook_service
from app.services.job_store import RetryPolicy
from app.workers.handlers import build_job_handlers
from app.workers.pool import WorkerPool


async def start_payment(session_factory, catalog, settings, user, record, target_type="invoice",
                        amount_cents=5000, **kwargs):
    async with session_factory() as db:
        transaction, created = await transaction_service.create_transaction(
            db,
            user_id=user.id,
            target_type=target_type,
            target_id=str(record.id),
            amount_cents=amount_cents,
            catalog=catalog,
            settings=settings,
            **kwargs,
        )
        await db.commit()
    return transaction, created


async def deliver(session_factory, provider, raw_payload, signature):
    async with session_factory() as db:
        result = await webhook_service.ingest_event(
            db,
            provider_name=provider.name,
            provider=provider,
            raw_payload=raw_payload,
            signature_header=signature,
        )
        await db.commit()
    return result


async def load(session_factory, model, pk):
    async with session_factory() as db:
        return await db.get(model, pk)


async def count_jobs(session_factory, kind, **kwargs):
    async with session_factory() as db:
        return await job_store.count_jobs(db, kind=kind, **kwargs)


def intent_object(transaction, reference, **extra):
    return {"id": reference, "object": "payment_intent",
            "metadata": {"transaction_id": str(transaction.id)}, **extra}


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

class TestCreateValidation:

    @pytest.mark.parametrize("amount", [0, -100, True])
    async def test_invalid_amount(self, session_factory, catalog, test_settings, member, invoice, amount):
        with pytest.raises(InvalidAmountError):
            await start_payment(session_factory, catalog, test_settings, member, invoice, amount_cents=amount)
        assert await count_jobs(session_factory, JobKind.CREATE_PAYMENT_INTENT) == 0

    async def test_unsupported_currency(self, session_factory, catalog, test_settings, member, invoice):
        with pytest.raises(UnsupportedCurrencyError):
            await start_payment(session_factory, catalog, test_settings, member, invoice, currency="EUR")

    async def test_currency_is_case_insensitive(self, session_factory, catalog, test_settings, member, invoice):
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice,
                                             currency="usd")
        assert transaction.currency == "USD"

    async def test_unknown_target_type(self, session_factory, catalog, test_settings, member, invoice):
        with pytest.raises(UnknownTargetError):
            await start_payment(session_factory, catalog, test_settings, member, invoice,
                                target_type="spaceship")

    async def test_missing_record(self, session_factory, catalog, test_settings, member):
        with pytest.raises(TargetNotFoundError):
            await start_payment(session_factory, catalog, test_settings, member, SimpleNamespace(id=uuid.uuid4()))

    async def test_malformed_record_id(self, session_factory, catalog, test_settings, member):
        with pytest.raises(TargetNotFoundError):
            await start_payment(session_factory, catalog, test_settings, member, SimpleNamespace(id="not-a-uuid"))


class TestCreate:

    async def test_create_enqueues_intent_job(self, session_factory, catalog, test_settings, member, invoice):
        transaction, created = await start_payment(session_factory, catalog, test_settings, member, invoice)

        assert created is True
        assert transaction.status == TransactionStatus.PENDING_INTENT
        assert transaction.capture_mode == CaptureMode.IMMEDIATE
        assert transaction.provider == "fake"
        record = await load(session_factory, Invoice, invoice.id)
        assert record.payment_transaction_id == transaction.id
        assert record.payment_status == "pending"
        assert await count_jobs(session_factory, JobKind.CREATE_PAYMENT_INTENT) == 1

    async def test_second_create_before_resolution_returns_same_transaction(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool,
    ):
        first, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)
        second, created = await start_payment(session_factory, catalog, test_settings, member, invoice)
        assert second.id == first.id
        assert created is False

        await worker_pool.drain()
        third, created = await start_payment(session_factory, catalog, test_settings, member, invoice)
        assert third.id == first.id
        assert third.status == TransactionStatus.PENDING
        assert created is False
        assert await count_jobs(session_factory, JobKind.CREATE_PAYMENT_INTENT) == 1

    async def test_other_user_cannot_resume_an_unresolved_payment(
        self, session_factory, catalog, test_settings, member, other_member, invoice,
    ):
        first, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)

        with pytest.raises(PaymentInProgressError) as exc_info:
            await start_payment(session_factory, catalog, test_settings, other_member, invoice)

        assert str(first.id) not in str(exc_info.value)
        assert await count_jobs(session_factory, JobKind.CREATE_PAYMENT_INTENT) == 1

    async def test_intent_job_records_reference_and_secret(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool, fake_provider,
    ):
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice,
                                             description="Invoice INV-1001")
        await worker_pool.drain()

        transaction = await load(session_factory, Transaction, transaction.id)
        assert transaction.status == TransactionStatus.PENDING
        assert transaction.provider_reference == "pi_fake1"
        # Encrypted at rest, decrypted for the owner
        assert b"pi_fake1_secret" not in transaction.provider_secret
        assert transaction_service.client_secret_for(transaction) == "pi_fake1_secret_fake1"

        [call] = fake_provider.calls_to("create_intent")
        assert call["amount_cents"] == 5000
        assert call["idempotency_key"] == f"intent-{transaction.id}"
        assert call["metadata"]["transaction_id"] == str(transaction.id)
        assert call["description"] == "Invoice INV-1001"

    async def test_transient_errors_are_retried_then_succeed(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool, fake_provider,
    ):
        """Two transient faults, then success: pending after exactly three attempts."""
        fake_provider.fail_next(
            "create_intent",
            TransientProviderError("503 from provider", status_code=503),
            TransientProviderError("timed out"),
        )
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)

        await worker_pool.drain()

        transaction = await load(session_factory, Transaction, transaction.id)
        assert transaction.status == TransactionStatus.PENDING
        async with session_factory() as db:
            [job] = await job_store.list_jobs(db, kind=JobKind.CREATE_PAYMENT_INTENT)
        assert job.state == JobState.COMPLETED
        assert job.attempt == 3
        assert len(job.errors) == 2
        # Same idempotency key on every attempt
        keys = {call["idempotency_key"] for call in fake_provider.calls_to("create_intent")}
        assert keys == {f"intent-{transaction.id}"}

    async def test_transient_errors_exhaust_attempts(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool, fake_provider,
    ):
        fake_provider.fail_next("create_intent", *[TransientProviderError("down") for _ in range(5)])
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)

        await worker_pool.drain()

        transaction = await load(session_factory, Transaction, transaction.id)
        assert transaction.status == TransactionStatus.FAILED
        assert "provider unavailable" in transaction.error_message
        async with session_factory() as db:
            [job] = await job_store.list_jobs(db, kind=JobKind.CREATE_PAYMENT_INTENT)
        assert job.state == JobState.DISCARDED
        assert job.attempt == 5

    async def test_permanent_error_fails_transaction(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool, fake_provider,
    ):
        fake_provider.fail_next("create_intent", PermanentProviderError("invalid currency"))
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)

        await worker_pool.drain()

        transaction = await load(session_factory, Transaction, transaction.id)
        assert transaction.status == TransactionStatus.FAILED
        assert transaction.error_message == "invalid currency"
        assert transaction.completed_at is not None
        assert len(fake_provider.calls_to("create_intent")) == 1
        record = await load(session_factory, Invoice, invoice.id)
        assert record.payment_status == "failed"

    async def test_fee_is_added_to_amount_charged(
        self, session_factory, catalog, test_settings, member, invoice, fake_provider, providers,
    ):
        fee_settings = test_settings.model_copy(update={
            "PROCESSING_FEE_ENABLED": True,
            "PROCESSING_FEE_PERCENT": 2.9,
            "PROCESSING_FEE_FLAT_CENTS": 30,
        })
        pool = WorkerPool(session_factory, build_job_handlers(), settings=fee_settings, catalog=catalog,
                          providers=providers, retry_policy=RetryPolicy(0, 0, 0))
        transaction, _ = await start_payment(session_factory, catalog, fee_settings, member, invoice,
                                             amount_cents=10000)
        await pool.drain()

        transaction = await load(session_factory, Transaction, transaction.id)
        assert transaction.amount_cents == 10000
        assert transaction.processing_fee_cents == 330
        assert transaction.total_amount_cents == 10330
        assert transaction.fee_flat_cents == 30
        assert fake_provider.calls_to("create_intent")[0]["amount_cents"] == 10330


# ---------------------------------------------------------------------------
# Waiting for the intent
# ---------------------------------------------------------------------------

class TestWaitForIntent:

    async def test_times_out_while_pending_intent(self, session_factory, catalog, test_settings, member, invoice):
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)

        with pytest.raises(IntentTimeoutError) as exc_info:
            await transaction_service.wait_for_intent(
                session_factory, transaction.id, timeout=0.1, poll_interval=0.02,
            )
        assert exc_info.value.transaction_id == transaction.id

        # The job is unaffected by the caller giving up
        async with session_factory() as db:
            [job] = await job_store.list_jobs(db, kind=JobKind.CREATE_PAYMENT_INTENT)
        assert job.state == JobState.AVAILABLE

    async def test_returns_once_pending(self, session_factory, catalog, test_settings, member, invoice, worker_pool):
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)
        await worker_pool.drain()

        ready = await transaction_service.wait_for_intent(
            session_factory, transaction.id, timeout=1, poll_interval=0.02,
        )
        assert ready.status == TransactionStatus.PENDING

    async def test_raises_when_creation_failed(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool, fake_provider,
    ):
        fake_provider.fail_next("create_intent", PermanentProviderError("api key revoked"))
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)
        await worker_pool.drain()

        with pytest.raises(IntentCreationFailedError):
            await transaction_service.wait_for_intent(
                session_factory, transaction.id, timeout=1, poll_interval=0.02,
            )


# ---------------------------------------------------------------------------
# Provider outcomes
# ---------------------------------------------------------------------------

class TestOutcomes:

    async def test_fifty_dollar_payment_succeeds_once(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool, fake_provider,
    ):
        """50.00 -> intent job -> succeeded webhook delivered twice -> one sync, one notify."""
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice,
                                             amount_cents=5000)
        await worker_pool.drain()
        transaction = await load(session_factory, Transaction, transaction.id)

        raw, signature = fake_provider.sign_event(
            "payment_intent.succeeded",
            intent_object(transaction, transaction.provider_reference),
            event_id="evt_success_1",
        )
        first = await deliver(session_factory, fake_provider, raw, signature)
        second = await deliver(session_factory, fake_provider, raw, signature)
        await worker_pool.drain()

        assert first.duplicate is False
        assert second.duplicate is True
        transaction = await load(session_factory, Transaction, transaction.id)
        assert transaction.status == TransactionStatus.SUCCEEDED
        assert transaction.completed_at is not None
        assert await count_jobs(session_factory, JobKind.SYNC_ENTITY_PAYMENT) == 1
        assert await count_jobs(session_factory, JobKind.NOTIFY) == 1
        record = await load(session_factory, Invoice, invoice.id)
        assert record.payment_status == "paid"

        async with session_factory() as db:
            [notify] = await job_store.list_jobs(db, kind=JobKind.NOTIFY)
        assert notify.queue == "notifications"
        assert notify.args["template_name"] == "payment_succeeded"
        assert notify.args["user_id"] == str(member.id)
        assert notify.args["payload"]["amount_cents"] == 5000

    async def test_terminal_transaction_ignores_later_webhooks(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool, fake_provider,
    ):
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)
        await worker_pool.drain()
        transaction = await load(session_factory, Transaction, transaction.id)
        reference = transaction.provider_reference

        raw, sig = fake_provider.sign_event("payment_intent.succeeded", intent_object(transaction, reference))
        await deliver(session_factory, fake_provider, raw, sig)
        await worker_pool.drain()
        succeeded = await load(session_factory, Transaction, transaction.id)

        raw, sig = fake_provider.sign_event(
            "payment_intent.payment_failed",
            intent_object(transaction, reference, last_payment_error={"message": "card declined"}),
        )
        await deliver(session_factory, fake_provider, raw, sig)
        await worker_pool.drain()

        after = await load(session_factory, Transaction, transaction.id)
        assert after.status == TransactionStatus.SUCCEEDED
        assert after.error_message is None
        assert after.completed_at == succeeded.completed_at
        assert await count_jobs(session_factory, JobKind.NOTIFY) == 1

    async def test_failed_webhook_records_error(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool, fake_provider,
    ):
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)
        await worker_pool.drain()
        transaction = await load(session_factory, Transaction, transaction.id)

        raw, sig = fake_provider.sign_event(
            "payment_intent.payment_failed",
            intent_object(transaction, transaction.provider_reference,
                          last_payment_error={"message": "Your card was declined."}),
        )
        await deliver(session_factory, fake_provider, raw, sig)
        await worker_pool.drain()

        transaction = await load(session_factory, Transaction, transaction.id)
        assert transaction.status == TransactionStatus.FAILED
        assert transaction.error_message == "Your card was declined."

    async def test_retry_after_failure_creates_new_transaction(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool, fake_provider,
    ):
        fake_provider.fail_next("create_intent", PermanentProviderError("declined"))
        failed, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)
        await worker_pool.drain()
        failed = await load(session_factory, Transaction, failed.id)

        retry, created = await start_payment(session_factory, catalog, test_settings, member, invoice)
        await worker_pool.drain()

        assert created is True
        assert retry.id != failed.id
        old = await load(session_factory, Transaction, failed.id)
        assert old.status == TransactionStatus.FAILED
        assert old.updated_at == failed.updated_at
        record = await load(session_factory, Invoice, invoice.id)
        assert record.payment_transaction_id == retry.id
        assert record.payment_status == "pending"
        new = await load(session_factory, Transaction, retry.id)
        assert new.status == TransactionStatus.PENDING

    async def test_paid_record_cannot_be_paid_again(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool, fake_provider,
    ):
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)
        await worker_pool.drain()
        transaction = await load(session_factory, Transaction, transaction.id)
        raw, sig = fake_provider.sign_event("payment_intent.succeeded",
                                            intent_object(transaction, transaction.provider_reference))
        await deliver(session_factory, fake_provider, raw, sig)
        await worker_pool.drain()

        with pytest.raises(PaymentAlreadySucceededError):
            await start_payment(session_factory, catalog, test_settings, member, invoice)

    async def test_state_machine_rejects_edges_outside_the_table(self, session_factory):
        async with session_factory() as db:
            with pytest.raises(InvalidTransitionError):
                await transaction_service.apply_provider_outcome(
                    db, "pi_x", TransactionStatus.PENDING_INTENT,
                )


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

class TestCaptureAndCancel:

    async def test_deferred_capture_flow(
        self, session_factory, catalog, test_settings, member, reservation, worker_pool, fake_provider,
    ):
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, reservation,
                                             target_type="reservation")
        await worker_pool.drain()
        transaction = await load(session_factory, Transaction, transaction.id)
        assert transaction.capture_mode == CaptureMode.DEFERRED
        assert fake_provider.calls_to("create_intent")[0]["capture_mode"] == CaptureMode.DEFERRED

        async with session_factory() as db:
            with pytest.raises(InvalidTransitionError):
                await transaction_service.request_capture(db, transaction.id)

        raw, sig = fake_provider.sign_event(
            "payment_intent.amount_capturable_updated",
            intent_object(transaction, transaction.provider_reference),
        )
        await deliver(session_factory, fake_provider, raw, sig)
        await worker_pool.drain()
        assert (await load(session_factory, Transaction, transaction.id)).authorized_at is not None

        async with session_factory() as db:
            await transaction_service.request_capture(db, transaction.id)
            # Repeated requests collapse into one job
            await transaction_service.request_capture(db, transaction.id)
            await db.commit()
        await worker_pool.drain()

        [capture] = fake_provider.calls_to("capture_intent")
        assert capture["provider_reference"] == transaction.provider_reference
        # Capture is confirmed by the provider, not by the job
        assert (await load(session_factory, Transaction, transaction.id)).status == TransactionStatus.PENDING

        raw, sig = fake_provider.sign_event("payment_intent.succeeded",
                                            intent_object(transaction, transaction.provider_reference))
        await deliver(session_factory, fake_provider, raw, sig)
        await worker_pool.drain()

        assert (await load(session_factory, Transaction, transaction.id)).status == TransactionStatus.SUCCEEDED
        record = await load(session_factory, Reservation, reservation.id)
        assert record.payment_status == "paid"

    async def test_capture_rejected_for_immediate_payments(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool,
    ):
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)
        await worker_pool.drain()

        async with session_factory() as db:
            with pytest.raises(InvalidTransitionError):
                await transaction_service.request_capture(db, transaction.id)

    async def test_cancel_flow(
        self, session_factory, catalog, test_settings, member, invoice, worker_pool, fake_provider,
    ):
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)
        await worker_pool.drain()
        transaction = await load(session_factory, Transaction, transaction.id)

        async with session_factory() as db:
            await transaction_service.request_cancel(db, transaction.id)
            await db.commit()
        await worker_pool.drain()
        assert len(fake_provider.calls_to("cancel_intent")) == 1

        raw, sig = fake_provider.sign_event(
            "payment_intent.canceled",
            intent_object(transaction, transaction.provider_reference, cancellation_reason="requested_by_customer"),
        )
        await deliver(session_factory, fake_provider, raw, sig)
        await worker_pool.drain()

        transaction = await load(session_factory, Transaction, transaction.id)
        assert transaction.status == TransactionStatus.CANCELED
        record = await load(session_factory, Invoice, invoice.id)
        assert record.payment_status == "canceled"

    async def test_cancel_requires_pending(self, session_factory, catalog, test_settings, member, invoice):
        transaction, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)

        async with session_factory() as db:
            with pytest.raises(InvalidTransitionError):
                await transaction_service.request_cancel(db, transaction.id)


class TestReads:

    async def test_list_filters_by_owner(
        self, session_factory, catalog, test_settings, member, other_member, invoice, reservation,
    ):
        mine, _ = await start_payment(session_factory, catalog, test_settings, member, invoice)
        await start_payment(session_factory, catalog, test_settings, other_member, reservation,
                            target_type="reservation")

        async with session_factory() as db:
            own = await transaction_service.list_transactions(db, user_id=member.id)
            everyone = await transaction_service.list_transactions(db)
            by_entity = await transaction_service.list_transactions(db, entity_type="invoice",
                                                                    entity_id=str(invoice.id))
        assert [t.id for t in own] == [mine.id]
        assert len(everyone) == 2
        assert [t.id for t in by_entity] == [mine.id]

