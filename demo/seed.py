#!/usr/bin/env python3
"""
Demo seed script: users and payable records for local demos.

!! NOT FOR PRODUCTION !!
This script creates test users with known passwords and a handful of
reservations and invoices to pay. It is intended ONLY for local demos and
frontend development.

Usage:
    # With the API server running on localhost:8000:
    python demo/seed.py

    # Also start a payment for every invoice (needs a worker and Stripe test keys):
    python demo/seed.py --pay

    # Custom server URL:
    python demo/seed.py --base-url http://localhost:9000

Login credentials after seeding:
    ┌──────────────────────────────┬───────────────────┬────────┐
    │ Email                        │ Password          │ Role   │
    ├──────────────────────────────┼───────────────────┼────────┤
    │ admin@paymentsdemo.com       │ AdminDemo123!     │ ADMIN  │
    │ alice.chen@example.com       │ AliceDemo123!     │ MEMBER │
    │ bob.martinez@example.com     │ BobDemo123!       │ MEMBER │
    └──────────────────────────────┴───────────────────┴────────┘
"""

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.database import Base
from app.models.invoice import Invoice
from app.models.reservation import Reservation
from app.models.user import User, UserType

BASE_URL = "http://localhost:8000"

ADMIN = {
    "email": "admin@paymentsdemo.com",
    "password": "AdminDemo123!",
    "full_name": "Admin User",
}

MEMBERS = [
    {
        "email": "alice.chen@example.com",
        "password": "AliceDemo123!",
        "full_name": "Alice Chen",
        "invoices": [("INV-2001", 125_00), ("INV-2002", 49_99)],
        "reservations": ["Tennis court 1"],
    },
    {
        "email": "bob.martinez@example.com",
        "password": "BobDemo123!",
        "full_name": "Bob Martinez",
        "invoices": [("INV-2003", 310_00)],
        "reservations": ["Meeting room B", "Sauna"],
    },
]


def log(msg: str) -> None:
    print(f"  {msg}")


def cents_to_dollars(cents: int) -> str:
    return f"${cents / 100:,.2f}"


async def signup(client: httpx.AsyncClient, user: dict) -> str:
    resp = await client.post(
        f"{BASE_URL}/auth/signup",
        json={"email": user["email"], "password": user["password"], "full_name": user["full_name"]},
    )
    if resp.status_code == 409:
        resp = await client.post(
            f"{BASE_URL}/auth/login",
            json={"email": user["email"], "password": user["password"]},
        )
    resp.raise_for_status()
    return resp.json()["token"]


async def create_records(session_factory, member: dict) -> list[tuple[str, str, int]]:
    """Insert the member's invoices and reservations. There is no API for these."""
    created: list[tuple[str, str, int]] = []
    async with session_factory() as session:
        for number, amount_cents in member["invoices"]:
            invoice = Invoice(number=number, customer_name=member["full_name"])
            session.add(invoice)
            await session.flush()
            created.append(("invoice", str(invoice.id), amount_cents))
        for days_ahead, resource in enumerate(member["reservations"], start=1):
            reservation = Reservation(
                guest_name=member["full_name"],
                resource_name=resource,
                starts_at=datetime.now(timezone.utc) + timedelta(days=days_ahead),
            )
            session.add(reservation)
            await session.flush()
            created.append(("reservation", str(reservation.id), 40_00))
        await session.commit()
    return created


async def promote_to_admin(session_factory, admin_email: str) -> None:
    """Admin provisioning is an operator action, so it goes straight to the database."""
    async with session_factory() as session:
        await session.execute(
            update(User)
            .where(User.email == admin_email)
            .values(user_type=UserType.ADMIN)
        )
        await session.commit()


async def start_payment(client: httpx.AsyncClient, token: str, target_type: str,
                        target_id: str, amount_cents: int) -> None:
    resp = await client.post(
        f"{BASE_URL}/payments",
        json={"target_type": target_type, "target_id": target_id, "amount_cents": amount_cents},
        headers={"Authorization": f"Bearer {token}"},
    )
    if resp.status_code in (200, 201):
        log(f"  Payment {resp.json()['transaction_id']} ({resp.json()['status']})")
    else:
        log(f"  Payment not started: HTTP {resp.status_code} {resp.json().get('detail')}")


async def seed(base_url: str, pay: bool) -> None:
    global BASE_URL
    BASE_URL = base_url

    print("\n========================================")
    print("  DEMO SEED: NOT FOR PRODUCTION")
    print("========================================\n")

    engine = create_async_engine(settings.DATABASE_URL)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with httpx.AsyncClient(timeout=60.0) as client:
        try:
            health = await client.get(f"{BASE_URL}/health")
            health.raise_for_status()
        except (httpx.ConnectError, httpx.HTTPStatusError):
            print(f"  ERROR: Cannot connect to {BASE_URL}")
            print("  Start the server first: uvicorn app.main:app --reload\n")
            await engine.dispose()
            sys.exit(1)

        print("Creating admin user...")
        await signup(client, ADMIN)
        await promote_to_admin(session_factory, ADMIN["email"])
        log(f"Admin: {ADMIN['email']} / {ADMIN['password']}")

        for member in MEMBERS:
            print(f"\nCreating {member['full_name']}...")
            token = await signup(client, member)
            log(f"Login: {member['email']} / {member['password']}")

            for target_type, target_id, amount_cents in await create_records(session_factory, member):
                log(f"{target_type.capitalize()} {target_id}: {cents_to_dollars(amount_cents)}")
                if pay:
                    await start_payment(client, token, target_type, target_id, amount_cents)

    await engine.dispose()
    print("\nDone.\n")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo users and payable records")
    parser.add_argument("--base-url", default=BASE_URL)
    parser.add_argument("--pay", action="store_true", help="start a payment for every record")
    args = parser.parse_args()
    asyncio.run(seed(args.base_url, args.pay))


if __name__ == "__main__":
    main()
