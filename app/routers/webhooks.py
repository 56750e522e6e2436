"""
Webhooks router: provider notifications.

Endpoint:
  POST /webhooks/{provider}

The request body is stored byte for byte and acknowledged; the signature is
verified later by the process_webhook job over those same bytes. Duplicate
deliveries are acknowledged too, so the provider stops retrying them.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.database import get_db
from app.providers import get_provider, get_provider_registry
from app.providers.base import PaymentProvider
from app.services import webhook_service

router = APIRouter()


@router.post(
    "/{provider_name}",
    summary="Receive a provider webhook",
)
async def receive_webhook(
    provider_name: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_provider_registry),
    settings: Settings = Depends(get_settings),
):
    provider = get_provider(provider_name, providers)

    raw_payload = await request.body()
    if len(raw_payload) > settings.MAX_WEBHOOK_BODY_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="Webhook payload too large",
        )

    await webhook_service.ingest_event(
        db,
        provider_name=provider_name,
        provider=provider,
        raw_payload=raw_payload,
        signature_header=request.headers.get(provider.signature_header),
        max_attempts=settings.JOB_MAX_ATTEMPTS,
    )
    return {"received": True}
