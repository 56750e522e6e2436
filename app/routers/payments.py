"""
Payments router: start payments and read their state.

Endpoints:
  POST /payments                    Create (or resume) a payment for a payable record
  GET  /payments                    List the caller's payments
  GET  /payments/{id}               Get one payment with its effective status
  GET  /payments/{id}/refunds       Refunds of one payment

POST /payments answers once the provider intent exists: the transaction is
committed, the worker creates the intent, and the request polls for it for
up to INTENT_WAIT_TIMEOUT_SECONDS. On timeout the client gets 504 with the
transaction id and may repeat the request, which resumes the same payment.

The client secret is only ever returned to the transaction's owner.
"""

import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.catalog import TargetCatalog
from app.config import Settings, get_settings
from app.database import get_db
from app.dependencies import get_catalog, get_current_user, get_session_factory
from app.models.user import User
from app.schemas.payment import (
    PaymentCreateRequest,
    PaymentIntentResponse,
    TransactionResponse,
)
from app.schemas.refund import RefundResponse
from app.services import refund_service, transaction_service

router = APIRouter()


@router.post(
    "",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment for a payable record",
)
async def create_payment(
    request: PaymentCreateRequest,
    response: Response,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    catalog: TargetCatalog = Depends(get_catalog),
    settings: Settings = Depends(get_settings),
):
    """
    Start paying for a record (e.g. a reservation or an invoice).

    Repeating the request while the payment is unresolved returns the same
    transaction (200 instead of 201). A record that is already paid, or that
    another user is still paying, is rejected with 409.

    All amounts are in **integer cents** (e.g., $50.00 = 5000).
    """
    transaction, created = await transaction_service.create_transaction(
        db,
        user_id=user.id,
        target_type=request.target_type,
        target_id=request.target_id,
        amount_cents=request.amount_cents,
        currency=request.currency,
        description=request.description,
        catalog=catalog,
        settings=settings,
    )
    # The worker must see the transaction and its job before we wait on it
    await db.commit()

    transaction = await transaction_service.wait_for_intent(
        session_factory,
        transaction.id,
        timeout=settings.INTENT_WAIT_TIMEOUT_SECONDS,
        poll_interval=settings.INTENT_POLL_INTERVAL_SECONDS,
    )
    if not created:
        response.status_code = status.HTTP_200_OK

    return PaymentIntentResponse(
        transaction_id=transaction.id,
        client_secret=transaction_service.client_secret_for(transaction),
        capture_mode=transaction.capture_mode,
        status=transaction.status,
        amount_cents=transaction.amount_cents,
        processing_fee_cents=transaction.processing_fee_cents,
        total_amount_cents=transaction.total_amount_cents,
        currency=transaction.currency,
        created=created,
    )


@router.get(
    "",
    response_model=list[TransactionResponse],
    summary="List my payments",
)
async def list_payments(
    status: str | None = Query(None, description="Filter by stored status, e.g. pending, succeeded"),
    entity_type: str | None = Query(None),
    entity_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's payments, newest first."""
    transactions = await transaction_service.list_transactions(
        db,
        user_id=user.id,
        status=status,
        entity_type=entity_type,
        entity_id=entity_id,
        limit=limit,
        offset=offset,
    )
    refunds = await refund_service.refunds_by_transaction(db, [t.id for t in transactions])
    return [TransactionResponse.build(t, refunds.get(t.id, [])) for t in transactions]


@router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a payment",
)
async def get_payment(
    transaction_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    transaction = await transaction_service.get_owned_transaction(db, transaction_id, user)
    refunds = await refund_service.list_refunds(db, transaction.id)
    return TransactionResponse.build(transaction, refunds)


@router.get(
    "/{transaction_id}/refunds",
    response_model=list[RefundResponse],
    summary="List refunds of a payment",
)
async def list_payment_refunds(
    transaction_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    transaction = await transaction_service.get_owned_transaction(db, transaction_id, user)
    return await refund_service.list_refunds(db, transaction.id)
