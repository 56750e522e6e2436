"""
Job model: the durable work queue shared by the API and every worker.

A job is a (kind, args) pair plus scheduling metadata. Producers insert jobs
in the same database transaction as the state change that requires them,
so "the transaction moved to succeeded" and "a sync job exists" commit or
roll back together.

    available ──claim──> running ──> completed
        ^                   │
        └──── retry ────────┤  (attempt < max_attempts, after backoff)
                            └──> discarded   (dead letter, kept for triage)

Jobs are never deleted. A discarded job keeps its full error history in
`errors` so an operator can inspect and retry it.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class JobState:
    AVAILABLE = "available"
    RUNNING = "running"
    COMPLETED = "completed"
    DISCARDED = "discarded"

    ALL = (AVAILABLE, RUNNING, COMPLETED, DISCARDED)


class JobKind:
    CREATE_PAYMENT_INTENT = "create_payment_intent"
    CAPTURE_PAYMENT_INTENT = "capture_payment_intent"
    CANCEL_PAYMENT_INTENT = "cancel_payment_intent"
    PROCESS_REFUND = "process_refund"
    PROCESS_WEBHOOK = "process_webhook"
    SYNC_ENTITY_PAYMENT = "sync_entity_payment"
    # Consumed by the external notification delivery service
    NOTIFY = "notify"


DEFAULT_QUEUE = "default"
NOTIFICATIONS_QUEUE = "notifications"


class Job(Base):
    __tablename__ = "jobs"

    __table_args__ = (
        CheckConstraint("priority BETWEEN 1 AND 4", name="ck_jobs_priority"),
        CheckConstraint("max_attempts > 0", name="ck_jobs_max_attempts"),
        CheckConstraint(
            "state IN ('available', 'running', 'completed', 'discarded')",
            name="ck_jobs_state",
        ),
        # Claim query: WHERE state='available' AND queue=? AND scheduled_at<=? ORDER BY priority, ...
        Index("ix_jobs_claim", "queue", "state", "priority", "scheduled_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    kind: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    args: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    queue: Mapped[str] = mapped_column(String(50), nullable=False, default=DEFAULT_QUEUE)
    # 1 is the highest priority
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=JobState.AVAILABLE,
    )
    # Incremented when a worker claims the job, so it counts started attempts
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)

    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    attempted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    attempted_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # [{"attempt": 1, "at": "...", "error": "..."}, ...]
    errors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Duplicate enqueues of the same side effect collapse into one row
    unique_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
