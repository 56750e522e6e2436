"""
Admin router: operator actions and organization-wide visibility.

All endpoints require the ADMIN role.

Endpoints:
  GET  /admin/payments                        List ALL payments
  POST /admin/payments/{id}/refunds           Refund part or all of a payment
  POST /admin/payments/{id}/capture           Capture an authorized deferred payment
  POST /admin/payments/{id}/cancel            Cancel a pending payment
  GET  /admin/jobs                            List jobs (e.g. ?state=discarded)
  GET  /admin/jobs/{job_id}                   Get one job with its error history
  POST /admin/jobs/{job_id}/retry             Requeue a dead-lettered job

Capture and cancel are asynchronous: they enqueue a job and the outcome
arrives through the provider's webhook.
"""

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.database import get_db
from app.dependencies import require_admin
from app.models.user import User
from app.schemas.job import JobResponse
from app.schemas.payment import TransactionResponse
from app.schemas.refund import RefundRequest, RefundResponse
from app.services import job_store, refund_service, transaction_service

router = APIRouter()


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@router.get(
    "/payments",
    response_model=list[TransactionResponse],
    summary="[Admin] List all payments",
)
async def admin_list_payments(
    status: str | None = Query(None),
    entity_type: str | None = Query(None),
    entity_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    transactions = await transaction_service.list_transactions(
        db,
        status=status,
        entity_type=entity_type,
        entity_id=entity_id,
        limit=limit,
        offset=offset,
    )
    refunds = await refund_service.refunds_by_transaction(db, [t.id for t in transactions])
    return [TransactionResponse.build(t, refunds.get(t.id, [])) for t in transactions]


@router.post(
    "/payments/{transaction_id}/refunds",
    response_model=RefundResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="[Admin] Refund a payment",
)
async def admin_refund_payment(
    transaction_id: uuid.UUID,
    request: RefundRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """
    Request a refund. The refund starts `pending` and is executed by a worker.

    - **amount_cents**: omit to refund everything still refundable
    - Only succeeded payments can be refunded, one refund in flight at a time
    """
    return await refund_service.refund_transaction(
        db,
        transaction_id=transaction_id,
        initiated_by=admin.id,
        amount_cents=request.amount_cents,
        reason=request.reason,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
    )


async def _payment_response(db: AsyncSession, transaction) -> TransactionResponse:
    refunds = await refund_service.list_refunds(db, transaction.id)
    return TransactionResponse.build(transaction, refunds)


@router.post(
    "/payments/{transaction_id}/capture",
    response_model=TransactionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="[Admin] Capture an authorized payment",
)
async def admin_capture_payment(
    transaction_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    transaction = await transaction_service.request_capture(
        db, transaction_id, max_attempts=settings.JOB_MAX_ATTEMPTS,
    )
    return await _payment_response(db, transaction)


@router.post(
    "/payments/{transaction_id}/cancel",
    response_model=TransactionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="[Admin] Cancel a pending payment",
)
async def admin_cancel_payment(
    transaction_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    transaction = await transaction_service.request_cancel(
        db, transaction_id, max_attempts=settings.JOB_MAX_ATTEMPTS,
    )
    return await _payment_response(db, transaction)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@router.get(
    "/jobs",
    response_model=list[JobResponse],
    summary="[Admin] List jobs",
)
async def admin_list_jobs(
    state: str | None = Query(None, description="available, running, completed or discarded"),
    kind: str | None = Query(None),
    queue: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await job_store.list_jobs(db, state=state, kind=kind, queue=queue, limit=limit, offset=offset)


@router.get(
    "/jobs/{job_id}",
    response_model=JobResponse,
    summary="[Admin] Get a job",
)
async def admin_get_job(
    job_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await job_store.get_job(db, job_id)


@router.post(
    "/jobs/{job_id}/retry",
    response_model=JobResponse,
    summary="[Admin] Retry a dead-lettered job",
)
async def admin_retry_job(
    job_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await job_store.retry_discarded(db, job_id)
