"""
Transaction model: one attempt to collect money for one payable record.

A Transaction points at its target polymorphically (entity_type, entity_id)
and moves through a small state machine that only
app/services/transaction_service.py may drive:

    pending_intent ──> pending ──> succeeded
          │               ├──────> failed
          └──> failed     └──────> canceled

  - pending_intent: row exists, the provider intent is being created by a job
  - pending: the provider intent exists; waiting for the payer / provider
  - succeeded, failed, canceled: terminal, never changed again

Retrying a failed or canceled payment never touches the old row. A new
Transaction is inserted and the domain record's current-transaction
reference is repointed; old rows stay as the audit trail.

Refund state is not stored here. "partially_refunded" and "refunded" are
computed from the Refund rows (see app/services/payment_status.py).

Why amount_cents is an integer:
  Money is stored as a whole number of cents so arithmetic is exact;
  5000 means 50.00 in the transaction's currency.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class TransactionStatus:
    PENDING_INTENT = "pending_intent"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    # Derived from refunds, never stored
    REFUND_PENDING = "refund_pending"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"

    ACTIVE = frozenset({PENDING_INTENT, PENDING})
    TERMINAL = frozenset({SUCCEEDED, FAILED, CANCELED})


class CaptureMode:
    IMMEDIATE = "immediate"
    DEFERRED = "deferred"

    ALL = frozenset({IMMEDIATE, DEFERRED})


class Transaction(Base):
    __tablename__ = "payment_transactions"

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payment_transactions_positive_amount"),
        CheckConstraint(
            "status IN ('pending_intent', 'pending', 'succeeded', 'failed', 'canceled')",
            name="ck_payment_transactions_status",
        ),
        CheckConstraint(
            "capture_mode IN ('immediate', 'deferred')",
            name="ck_payment_transactions_capture_mode",
        ),
        CheckConstraint(
            "processing_fee_cents >= 0", name="ck_payment_transactions_fee_non_negative"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Owner: the principal who initiated the payment
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    # Polymorphic target, resolved through the catalog (app/catalog.py)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    # ISO 4217, upper case
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TransactionStatus.PENDING_INTENT,
        index=True,
    )

    # Copied from the catalog entry at creation time, never changed
    capture_mode: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=CaptureMode.IMMEDIATE,
    )

    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    # The provider's intent id; unique so webhooks resolve to exactly one row
    provider_reference: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
    )
    # Fernet-encrypted client secret, only ever decrypted for the owner
    provider_secret: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)

    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Processing fee passed through to the payer, recorded for audit
    processing_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    fee_flat_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fee_refundable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Deferred capture: set when the provider reports the funds are capturable
    authorized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    # Set once, on the first entry into a terminal state
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def total_amount_cents(self) -> int:
        """What the payer is charged: amount plus any processing fee."""
        return self.amount_cents + (self.processing_fee_cents or 0)

    @property
    def max_refundable_cents(self) -> int:
        if self.fee_refundable:
            return self.total_amount_cents
        return self.amount_cents
