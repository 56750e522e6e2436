"""
Reservation model: an example payable record captured in two steps.

Reservations are registered in the catalog with deferred capture: the
payer's card is authorized when the reservation is booked and an admin
captures the funds later (or cancels the hold).

The payments core only ever touches two columns here:
  - payment_transaction_id: the current Transaction for this record
  - payment_status: the domain-facing mirror of that transaction's status
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class Reservation(Base):
    __tablename__ = "reservations"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    guest_name: Mapped[str] = mapped_column(String(200), nullable=False)
    resource_name: Mapped[str] = mapped_column(String(200), nullable=False)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Deferred so the reference can be set before the transaction row is inserted
    payment_transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("payment_transactions.id", deferrable=True, initially="DEFERRED"),
        nullable=True,
    )
    payment_status: Mapped[str] = mapped_column(String(30), nullable=False, default="unpaid")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
