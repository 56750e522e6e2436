"""
Pydantic schemas for payment endpoints.

All monetary amounts are in integer cents (e.g., $50.00 = 5000). Amounts
are validated by the transaction service so that every rejection carries
the same {"detail", "error_type"} body.
"""

import uuid
from datetime import datetime
from typing import Iterable

from pydantic import BaseModel, Field

from app.models.refund import Refund
from app.models.transaction import Transaction
from app.services.payment_status import effective_status, refund_totals


class PaymentCreateRequest(BaseModel):
    """Request body for POST /payments."""
    target_type: str = Field(description="Catalog name of the payable record, e.g. 'reservation'")
    target_id: str = Field(description="Id of the payable record")
    amount_cents: int = Field(description="Amount in cents, before any processing fee")
    currency: str | None = Field(None, description="ISO 4217 code; defaults to the configured currency")
    description: str | None = Field(None, max_length=255)


class PaymentIntentResponse(BaseModel):
    """What a client needs to confirm the payment with the provider."""
    transaction_id: uuid.UUID
    client_secret: str | None
    capture_mode: str
    status: str
    amount_cents: int
    processing_fee_cents: int
    total_amount_cents: int
    currency: str
    created: bool


class TransactionResponse(BaseModel):
    """Public representation of a payment transaction (never includes the client secret)."""
    id: uuid.UUID
    user_id: uuid.UUID
    entity_type: str
    entity_id: str
    amount_cents: int
    processing_fee_cents: int
    total_amount_cents: int
    refunded_cents: int = 0
    currency: str
    status: str
    effective_status: str
    capture_mode: str
    provider: str
    provider_reference: str | None
    description: str | None
    error_message: str | None
    authorized_at: datetime | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None

    model_config = {"from_attributes": True}

    @classmethod
    def build(cls, transaction: Transaction, refunds: Iterable[Refund]) -> "TransactionResponse":
        refunds = list(refunds)
        columns = {name: getattr(transaction, name) for name in cls.model_fields if hasattr(transaction, name)}
        return cls(
            **columns,
            effective_status=effective_status(transaction, refunds),
            refunded_cents=refund_totals(refunds).succeeded_cents,
        )
