"""
WebhookEvent model: every inbound provider notification, exactly once.

The (provider, provider_event_id) pair is UNIQUE in the database, which is
what makes duplicate deliveries harmless: the second INSERT is ignored and
no second processing job is enqueued.

raw_payload keeps the exact bytes received on the wire because the
provider's signature is computed over them; verification happens later in
the worker, against these bytes and the stored signature header.

Apart from the processing bookkeeping (signature_verified, processed, error,
processed_at) rows are never modified.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_webhook_events_provider_event"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    raw_payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    signature_header: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Parsed copy for inspection only; never used for verification
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # NULL until the worker has checked the signature
    signature_verified: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
