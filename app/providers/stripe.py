"""
Stripe provider adapter.

Talks to the Stripe REST API directly with httpx: form-encoded request
bodies, bearer API key, and an Idempotency-Key header on every mutating
call. Stripe replays the original response for a repeated key, which is
what makes retrying a timed-out create_intent safe.

Webhook signatures use Stripe's scheme:

    Stripe-Signature: t=<unix ts>,v1=<hex hmac>[,v1=<hex hmac>...]
    hmac = HMAC-SHA256(webhook_secret, "<t>.<raw body>")

Error classification:
    network errors, timeouts, 409 (idempotency conflict), 429, 5xx -> transient
    any other 4xx (card declines, invalid requests, auth)          -> permanent
"""

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from app.models.transaction import CaptureMode
from app.providers.base import (
    CaptureResult,
    IntentResult,
    PaymentProvider,
    PermanentProviderError,
    RefundResult,
    SignatureVerificationError,
    TransientProviderError,
    VerifiedEvent,
    MalformedEventError,
    parse_event_payload,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({409, 429, 500, 502, 503, 504})

# Stripe only accepts these values for Refund.reason; free text goes to metadata
STRIPE_REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})


def compute_signature(secret: str, timestamp: int, raw_payload: bytes) -> str:
    signed_payload = f"{timestamp}.".encode() + raw_payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(secret: str, raw_payload: bytes, timestamp: int | None = None) -> str:
    """Produce a Stripe-Signature header value (used by tests and demo tooling)."""
    if timestamp is None:
        timestamp = int(datetime.now(timezone.utc).timestamp())
    return f"t={timestamp},v1={compute_signature(secret, timestamp, raw_payload)}"


def _parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureVerificationError("invalid timestamp in signature header") from None
        elif key == "v1":
            signatures.append(value)
    if timestamp is None:
        raise SignatureVerificationError("no timestamp in signature header")
    if not signatures:
        raise SignatureVerificationError("no v1 signature in signature header")
    return timestamp, signatures


def _flatten_form(data: dict[str, Any], prefix: str = "") -> dict[str, str]:
    """Encode nested dicts the way Stripe expects: metadata[key]=value."""
    flat: dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        name = f"{prefix}[{key}]" if prefix else key
        if isinstance(value, dict):
            flat.update(_flatten_form(value, name))
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


class StripeProvider(PaymentProvider):
    name = "stripe"
    signature_header = "Stripe-Signature"

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        *,
        api_base: str = "https://api.stripe.com",
        timeout_seconds: float = 10.0,
        tolerance_seconds: int = 300,
        client: httpx.AsyncClient | None = None,
    ):
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self._client = client or httpx.AsyncClient(
            base_url=api_base,
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
        )
        self._headers = {"Authorization": f"Bearer {api_key}"}

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _post(self, path: str, data: dict[str, Any], *, idempotency_key: str) -> dict[str, Any]:
        headers = {**self._headers, "Idempotency-Key": idempotency_key}
        try:
            response = await self._client.post(path, data=_flatten_form(data), headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"Stripe request timed out: {path}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"Stripe request failed: {exc}") from exc

        if response.is_success:
            return response.json()

        error = self._error_body(response)
        message = error.get("message") or f"Stripe returned HTTP {response.status_code}"
        detail = {k: error[k] for k in ("type", "code", "decline_code") if error.get(k)}
        logger.warning(
            "Stripe %s failed with HTTP %s: %s",
            path, response.status_code, message,
            extra={"provider": self.name},
        )
        if response.status_code in TRANSIENT_STATUS_CODES or response.status_code >= 500:
            raise TransientProviderError(message, status_code=response.status_code, detail=detail)
        raise PermanentProviderError(message, status_code=response.status_code, detail=detail)

    @staticmethod
    def _error_body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        error = body.get("error") if isinstance(body, dict) else None
        return error if isinstance(error, dict) else {}

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

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
        body = await self._post(
            "/v1/payment_intents",
            {
                "amount": amount_cents,
                "currency": currency.lower(),
                "capture_method": "manual" if capture_mode == CaptureMode.DEFERRED else "automatic",
                "automatic_payment_methods": {"enabled": True},
                "description": description,
                "metadata": metadata,
            },
            idempotency_key=idempotency_key,
        )
        if not body.get("id") or not body.get("client_secret"):
            raise PermanentProviderError("Stripe response is missing id or client_secret")
        return IntentResult(
            provider_reference=body["id"],
            client_secret=body["client_secret"],
            status=body.get("status"),
        )

    async def capture_intent(self, provider_reference: str, *, idempotency_key: str) -> CaptureResult:
        body = await self._post(
            f"/v1/payment_intents/{provider_reference}/capture",
            {},
            idempotency_key=idempotency_key,
        )
        return CaptureResult(provider_reference=provider_reference, status=body.get("status", "unknown"))

    async def cancel_intent(self, provider_reference: str, *, idempotency_key: str) -> bool:
        body = await self._post(
            f"/v1/payment_intents/{provider_reference}/cancel",
            {},
            idempotency_key=idempotency_key,
        )
        return body.get("status") == "canceled"

    async def create_refund(
        self,
        provider_reference: str,
        amount_cents: int,
        *,
        reason: str | None,
        idempotency_key: str,
    ) -> RefundResult:
        data: dict[str, Any] = {"payment_intent": provider_reference, "amount": amount_cents}
        if reason in STRIPE_REFUND_REASONS:
            data["reason"] = reason
        elif reason:
            data["metadata"] = {"reason": reason[:500]}
        body = await self._post("/v1/refunds", data, idempotency_key=idempotency_key)

        status = body.get("status")
        if status == "succeeded":
            normalized = "succeeded"
        elif status in ("failed", "canceled"):
            normalized = "failed"
        else:
            # pending, requires_action: settled later via charge.refunded
            normalized = "pending"
        return RefundResult(refund_reference=body.get("id", ""), status=normalized)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_signature(
        self,
        raw_payload: bytes,
        signature_header: str | None,
        *,
        received_at: datetime | None = None,
    ) -> VerifiedEvent:
        if not self.webhook_secret:
            raise SignatureVerificationError("webhook secret is not configured")
        if not signature_header:
            raise SignatureVerificationError("missing signature header")

        timestamp, signatures = _parse_signature_header(signature_header)

        reference = received_at or datetime.now(timezone.utc)
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
        age = abs(reference.timestamp() - timestamp)
        if age > self.tolerance_seconds:
            raise SignatureVerificationError(
                f"timestamp outside tolerance ({age:.0f}s > {self.tolerance_seconds}s)"
            )

        expected = compute_signature(self.webhook_secret, timestamp, raw_payload)
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise SignatureVerificationError("no matching v1 signature")

        try:
            identity = parse_event_payload(raw_payload)
        except MalformedEventError as exc:
            raise SignatureVerificationError(f"signed payload is malformed: {exc}") from exc

        data = identity.payload.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        return VerifiedEvent(
            event_id=identity.event_id,
            event_type=identity.event_type,
            data=obj if isinstance(obj, dict) else {},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
