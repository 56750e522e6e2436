"""
SQLAlchemy ORM models package.

All models are imported here so that:
  1. Base.metadata knows every table before create_all() runs
  2. Other modules can import from app.models directly
"""

from app.models.user import User, UserType  # noqa: F401
from app.models.transaction import Transaction, TransactionStatus, CaptureMode  # noqa: F401
from app.models.refund import Refund, RefundStatus  # noqa: F401
from app.models.webhook_event import WebhookEvent  # noqa: F401
from app.models.job import Job, JobKind, JobState  # noqa: F401
from app.models.reservation import Reservation  # noqa: F401
from app.models.invoice import Invoice  # noqa: F401
