"""
Job kind -> handler registry for the default queue.

notify jobs are not listed: they go to the `notifications` queue, which is
consumed by the notification delivery service, not by this worker.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.job import JobKind
from app.services import entity_sync_service, job_store, transaction_service
from app.services.job_store import RetryPolicy
from app.workers import payment_jobs, webhook_jobs
from app.workers.pool import JobContext, JobHandler


async def sync_entity_payment(ctx: JobContext, db: AsyncSession) -> None:
    await entity_sync_service.sync_entity_payment(db, ctx.arg_uuid("transaction_id"), ctx.catalog)


def build_job_handlers() -> dict[str, JobHandler]:
    return {
        JobKind.CREATE_PAYMENT_INTENT: payment_jobs.create_payment_intent,
        JobKind.CAPTURE_PAYMENT_INTENT: payment_jobs.capture_payment_intent,
        JobKind.CANCEL_PAYMENT_INTENT: payment_jobs.cancel_payment_intent,
        JobKind.PROCESS_REFUND: payment_jobs.process_refund,
        JobKind.PROCESS_WEBHOOK: webhook_jobs.process_webhook,
        JobKind.SYNC_ENTITY_PAYMENT: sync_entity_payment,
    }


def build_housekeeping(settings):
    """
    Periodic task run by one loop per pool.

    Rescues jobs abandoned by dead workers, then deals with stale
    pending_intent transactions. Returns the number of rows acted on.
    """
    retry_policy = RetryPolicy.from_settings(settings)

    async def housekeeping(db: AsyncSession) -> int:
        rescued = await job_store.rescue_stuck(
            db, settings.JOB_RESCUE_AFTER_SECONDS, policy=retry_policy,
        )
        expired = await transaction_service.expire_stale_intents(
            db,
            policy=settings.STALE_INTENT_POLICY,
            older_than_seconds=settings.STALE_INTENT_AFTER_SECONDS,
        )
        return rescued + expired

    return housekeeping
