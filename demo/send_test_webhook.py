#!/usr/bin/env python3
"""
Send a Stripe-signed webhook to a local API, as Stripe would.

Useful to drive a payment to its outcome without the Stripe CLI:

    python demo/send_test_webhook.py payment_intent.succeeded pi_123
    python demo/send_test_webhook.py payment_intent.payment_failed pi_123 --message "Card declined"
    python demo/send_test_webhook.py charge.refunded pi_123

The body is signed with STRIPE_WEBHOOK_SECRET from the environment / .env.
"""

import argparse
import json
import sys
import uuid

import httpx

from app.config import settings
from app.providers.stripe import build_signature_header


def build_event(event_type: str, intent_id: str, message: str | None) -> dict:
    if event_type == "charge.refunded":
        obj = {"id": f"ch_{uuid.uuid4().hex[:16]}", "object": "charge", "payment_intent": intent_id}
    else:
        obj = {"id": intent_id, "object": "payment_intent"}
        if message:
            obj["last_payment_error"] = {"message": message}
    return {
        "id": f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Send a signed Stripe test webhook")
    parser.add_argument("event_type")
    parser.add_argument("intent_id")
    parser.add_argument("--message", help="last_payment_error.message for failures")
    parser.add_argument("--base-url", default="http://localhost:8000")
    args = parser.parse_args()

    if not settings.STRIPE_WEBHOOK_SECRET:
        sys.exit("STRIPE_WEBHOOK_SECRET is not set")

    raw = json.dumps(build_event(args.event_type, args.intent_id, args.message)).encode()
    response = httpx.post(
        f"{args.base_url}/webhooks/stripe",
        content=raw,
        headers={
            "Content-Type": "application/json",
            "Stripe-Signature": build_signature_header(settings.STRIPE_WEBHOOK_SECRET, raw),
        },
    )
    print(f"HTTP {response.status_code}: {response.text}")


if __name__ == "__main__":
    main()
