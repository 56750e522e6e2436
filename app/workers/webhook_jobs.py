"""Stored webhook events are verified and applied here."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import JobRetryableError
from app.services import webhook_service
from app.workers.pool import JobContext

logger = logging.getLogger(__name__)


async def process_webhook(ctx: JobContext, db: AsyncSession) -> None:
    webhook_event_id = ctx.arg_uuid("webhook_event_id")
    try:
        outcome = await webhook_service.process_event(db, webhook_event_id, ctx.providers)
    except JobRetryableError:
        raise
    except Exception as exc:
        # Release the event row lock before writing the error from another session
        await db.rollback()
        async with ctx.session_factory() as error_db:
            await webhook_service.record_event_error(error_db, webhook_event_id,
                                                     f"{type(exc).__name__}: {exc}")
            await error_db.commit()
        raise
    logger.debug("process_webhook %s -> %s", webhook_event_id, outcome, extra=ctx.log_extra)

