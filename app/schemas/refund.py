"""Pydantic schemas for refund endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class RefundRequest(BaseModel):
    """Request body for POST /admin/payments/{id}/refunds."""
    amount_cents: int | None = Field(
        None, description="Amount in cents; omit to refund everything still refundable"
    )
    reason: str | None = Field(None, max_length=500)


class RefundResponse(BaseModel):
    id: uuid.UUID
    transaction_id: uuid.UUID
    amount_cents: int
    reason: str | None
    initiated_by: uuid.UUID
    provider_reference: str | None
    status: str
    error_message: str | None
    created_at: datetime
    processed_at: datetime | None

    model_config = {"from_attributes": True}
