"""
Custom exception classes and FastAPI exception handlers.

Why custom exceptions?
  The service layer raises domain-specific errors (like RefundLimitExceededError)
  without importing HTTP concepts. The handler layer then translates these
  into proper HTTP responses, so service code is testable without HTTP and
  error responses are consistent across all endpoints:

      {"detail": "<human readable message>", "error_type": "<code>"}

Exception hierarchy:
    PaymentsAPIError (base)
    ├── validation         InvalidAmountError, UnsupportedCurrencyError, ...
    ├── lookup             UnknownTargetError, TransactionNotFoundError, ...
    ├── state conflicts    PaymentAlreadySucceededError, RefundPendingError, ...
    ├── intent waiting     IntentTimeoutError, IntentCreationFailedError
    └── auth               UnauthorizedAccessError, InvalidCredentialsError, ...

Worker control exceptions (JobRetryableError, JobDiscardError) are not API
errors: job handlers raise them to tell the worker pool how to finish a job.
"""

import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class PaymentsAPIError(Exception):
    """Base exception for all payments domain errors."""

    status_code: int = 400
    error_type: str = "payments_error"

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)


# ---------------------------------------------------------------------------
# Validation errors (raised synchronously, nothing is enqueued)
# ---------------------------------------------------------------------------

class InvalidAmountError(PaymentsAPIError):
    """Raised when a payment or refund amount is not a positive number of cents."""

    status_code = 422
    error_type = "invalid_amount"

    def __init__(self, amount_cents: int | None):
        self.amount_cents = amount_cents
        super().__init__(f"Amount must be a positive number of cents, got {amount_cents}")


class UnsupportedCurrencyError(PaymentsAPIError):
    """Raised when the requested currency differs from the configured one."""

    status_code = 422
    error_type = "unsupported_currency"

    def __init__(self, currency: str, supported: str):
        self.currency = currency
        self.supported = supported
        super().__init__(f"Currency {currency} is not supported (expected {supported})")


class RefundLimitExceededError(PaymentsAPIError):
    """
    Raised when a refund would push the refunded total past the refundable maximum.

    Attributes:
        requested_cents: The refund amount that was asked for.
        available_cents: What can still be refunded (may be 0).
    """

    status_code = 422
    error_type = "refund_limit_exceeded"

    def __init__(self, transaction_id: uuid.UUID, requested_cents: int, available_cents: int):
        self.transaction_id = transaction_id
        self.requested_cents = requested_cents
        self.available_cents = available_cents
        super().__init__(
            f"Refund of {requested_cents} cents exceeds the refundable amount: "
            f"{available_cents} cents remaining"
        )


class MalformedWebhookError(PaymentsAPIError):
    """Raised when an inbound webhook cannot even be identified (bad JSON, no id/type)."""

    status_code = 400
    error_type = "malformed_webhook"


# ---------------------------------------------------------------------------
# Lookup errors
# ---------------------------------------------------------------------------

class UnknownTargetError(PaymentsAPIError):
    """Raised when a payment names a target type that is not in the catalog."""

    status_code = 404
    error_type = "unknown_target"

    def __init__(self, target_type: str):
        self.target_type = target_type
        super().__init__(f"Unknown payment target type '{target_type}'")


class TargetNotFoundError(PaymentsAPIError):
    """Raised when the target record does not exist."""

    status_code = 404
    error_type = "target_not_found"

    def __init__(self, target_type: str, target_id: str):
        self.target_type = target_type
        self.target_id = target_id
        super().__init__(f"{target_type} {target_id} not found")


class TransactionNotFoundError(PaymentsAPIError):
    """Raised when a requested payment transaction does not exist."""

    status_code = 404
    error_type = "transaction_not_found"

    def __init__(self, transaction_id: uuid.UUID):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class UnknownProviderError(PaymentsAPIError):
    """Raised when a webhook or transaction names a provider that is not configured."""

    status_code = 404
    error_type = "unknown_provider"

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Payment provider '{provider}' is not configured")


class JobNotFoundError(PaymentsAPIError):
    status_code = 404
    error_type = "job_not_found"

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


# ---------------------------------------------------------------------------
# State conflicts
# ---------------------------------------------------------------------------

class PaymentAlreadySucceededError(PaymentsAPIError):
    """Raised when the target's current transaction already succeeded (prevents a double charge)."""

    status_code = 409
    error_type = "already_paid"

    def __init__(self, transaction_id: uuid.UUID):
        self.transaction_id = transaction_id
        super().__init__(f"Target is already paid by transaction {transaction_id}")


class PaymentInProgressError(PaymentsAPIError):
    """Raised when another user's payment for the same target is still unresolved."""

    status_code = 409
    error_type = "payment_in_progress"

    def __init__(self, target_type: str, target_id: str):
        self.target_type = target_type
        self.target_id = target_id
        super().__init__(f"{target_type} {target_id} has a payment in progress")


class RefundNotAllowedError(PaymentsAPIError):
    """Raised when refunding a transaction that has not succeeded."""

    status_code = 409
    error_type = "refund_not_allowed"

    def __init__(self, transaction_id: uuid.UUID, status: str):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(
            f"Transaction {transaction_id} cannot be refunded in status '{status}'"
        )


class RefundPendingError(PaymentsAPIError):
    """Raised when a refund is requested while another one is still in flight."""

    status_code = 409
    error_type = "refund_pending"

    def __init__(self, transaction_id: uuid.UUID):
        self.transaction_id = transaction_id
        super().__init__(
            f"Transaction {transaction_id} already has a refund being processed"
        )


class InvalidTransitionError(PaymentsAPIError):
    """Raised when an operation needs a transaction state it is not in."""

    status_code = 409
    error_type = "invalid_transition"


class DuplicateEmailError(PaymentsAPIError):
    """Raised when attempting to register with an email that's already in use."""

    status_code = 409
    error_type = "duplicate_email"

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Email {email} is already registered")


# ---------------------------------------------------------------------------
# Synchronous intent creation
# ---------------------------------------------------------------------------

class IntentTimeoutError(PaymentsAPIError):
    """
    Raised when the intent is not ready within the wait bound.

    The create_payment_intent job keeps running; the caller can retry the
    same request later and will get the same transaction back.
    """

    status_code = 504
    error_type = "timeout"

    def __init__(self, transaction_id: uuid.UUID, timeout_seconds: float):
        self.transaction_id = transaction_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Payment intent for transaction {transaction_id} was not ready "
            f"within {timeout_seconds:g} seconds"
        )


class IntentCreationFailedError(PaymentsAPIError):
    status_code = 502
    error_type = "intent_creation_failed"

    def __init__(self, transaction_id: uuid.UUID, reason: str | None):
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(
            f"Payment intent creation failed for transaction {transaction_id}: "
            f"{reason or 'unknown error'}"
        )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class UnauthorizedAccessError(PaymentsAPIError):
    """Raised when a user attempts to access a resource they don't own."""

    status_code = 403
    error_type = "unauthorized_access"

    def __init__(self, detail: str = "You do not have access to this resource"):
        super().__init__(detail)


class InvalidCredentialsError(PaymentsAPIError):
    """Raised when login credentials are incorrect."""

    status_code = 401
    error_type = "invalid_credentials"

    def __init__(self):
        super().__init__("Invalid email or password")


# ---------------------------------------------------------------------------
# Worker control
# ---------------------------------------------------------------------------

class JobRetryableError(Exception):
    """Raised by a job handler to finish the attempt and retry later with backoff."""


class JobDiscardError(Exception):
    """Raised by a job handler to dead-letter the job immediately."""


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """
    Register custom exception handlers with the FastAPI application.

    Every PaymentsAPIError subclass carries its own status code and
    error_type, so one handler covers the hierarchy. A couple of errors add
    structured fields the client can act on.

    This is called once during app startup in main.py.
    """

    @app.exception_handler(RefundLimitExceededError)
    async def refund_limit_handler(
        request: Request, exc: RefundLimitExceededError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error_type": exc.error_type,
                "requested_cents": exc.requested_cents,
                "available_cents": exc.available_cents,
            },
        )

    @app.exception_handler(IntentTimeoutError)
    async def intent_timeout_handler(
        request: Request, exc: IntentTimeoutError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error_type": exc.error_type,
                "transaction_id": str(exc.transaction_id),
            },
        )

    @app.exception_handler(PaymentsAPIError)
    async def payments_error_handler(
        request: Request, exc: PaymentsAPIError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_type": exc.error_type},
        )
