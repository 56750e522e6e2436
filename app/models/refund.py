"""
Refund model: money returned against exactly one succeeded Transaction.

Refunds are created by an admin, executed by the process_refund job and,
for providers that settle refunds asynchronously, confirmed by a
charge.refunded webhook:

    pending ──> succeeded
       └──────> failed

The running sum of succeeded refunds never exceeds the transaction's
refundable maximum; the check happens when the refund is requested, before
any job exists.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class RefundStatus:
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Refund(Base):
    __tablename__ = "payment_refunds"

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payment_refunds_positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed')",
            name="ck_payment_refunds_status",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("payment_transactions.id"),
        nullable=False,
        index=True,
    )

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # The admin who requested the refund
    initiated_by: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
    )

    provider_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=RefundStatus.PENDING,
        index=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
