"""
Base classes and types for payment providers.

A provider adapter hides one payment processor behind a small async
interface. Everything the rest of the system needs is here: intents,
capture/cancel, refunds, and webhook identification/verification.

Provider errors are split by what the caller should do next:

  ProviderError
  ├── TransientProviderError   network failure, timeout, 429, 5xx, idempotency
  │                            conflicts: retrying the same call is safe
  └── PermanentProviderError   declines, invalid requests: retrying won't help

Every mutating call takes an idempotency key derived from our own row id,
so a retried transient failure can never create a second external object.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class IntentResult:
    provider_reference: str
    client_secret: str
    status: str | None = None


@dataclass(frozen=True)
class CaptureResult:
    provider_reference: str
    status: str


@dataclass(frozen=True)
class RefundResult:
    refund_reference: str
    # "succeeded", "pending" or "failed"
    status: str


@dataclass(frozen=True)
class EventIdentity:
    """What intake needs to deduplicate an event, parsed without verification."""
    event_id: str
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VerifiedEvent:
    event_id: str
    event_type: str
    # The event's data object (e.g. the payment intent or charge)
    data: dict[str, Any] = field(default_factory=dict)


class ProviderError(Exception):
    """Base error for provider calls; detail holds sanitized response fields for logging."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail or {}


class TransientProviderError(ProviderError):
    pass


class PermanentProviderError(ProviderError):
    pass


class MalformedEventError(ValueError):
    """Payload is not a JSON object with a string id and type."""


class SignatureVerificationError(Exception):
    pass


def parse_event_payload(raw_payload: bytes) -> EventIdentity:
    """
    Parse a JSON event envelope of the form {"id": ..., "type": ..., ...}.

    Raises:
        MalformedEventError: if the body is not JSON or lacks id/type.
    """
    try:
        payload = json.loads(raw_payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedEventError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedEventError("payload is not a JSON object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedEventError("payload has no event id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventError("payload has no event type")
    return EventIdentity(event_id=event_id, event_type=event_type, payload=payload)


class PaymentProvider(ABC):
    """Abstract payment provider."""

    name: str = "abstract"
    # HTTP header carrying the webhook signature
    signature_header: str = "Signature"

    @abstractmethod
    async def create_intent(
        self,
        amount_cents: int,
        currency: str,
        capture_mode: str,
        metadata: dict[str, str],
        *,
        idempotency_key: str,
        description: str | None = None,
    ) -> IntentResult:
        """Create a payment intent for amount_cents (already including any fee)."""

    @abstractmethod
    async def capture_intent(self, provider_reference: str, *, idempotency_key: str) -> CaptureResult:
        """Capture an authorized (deferred) intent."""

    @abstractmethod
    async def cancel_intent(self, provider_reference: str, *, idempotency_key: str) -> bool:
        """Cancel an intent that has not succeeded. True if the provider accepted it."""

    @abstractmethod
    async def create_refund(
        self,
        provider_reference: str,
        amount_cents: int,
        *,
        reason: str | None,
        idempotency_key: str,
    ) -> RefundResult:
        """Refund part or all of a succeeded intent."""

    def extract_event_identity(self, raw_payload: bytes) -> EventIdentity:
        return parse_event_payload(raw_payload)

    @abstractmethod
    def verify_signature(
        self,
        raw_payload: bytes,
        signature_header: str | None,
        *,
        received_at: datetime | None = None,
    ) -> VerifiedEvent:
        """
        Verify the signature over the exact received bytes.

        received_at is when the event reached us; timestamp tolerance is
        measured against it so verification deferred to a worker still works.

        Raises:
            SignatureVerificationError: if the signature is missing, stale or wrong.
        """

    async def aclose(self) -> None:
        """Release network resources."""
