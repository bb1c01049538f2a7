#!/usr/bin/env python3
"""
Seed demo data for the daily settlement & commission engine.

Creates, in the configured database:
  - 2 coordinators, 6 delegates and 60 members assigned to them
  - one completed daily-premium payment per member per day over a date range,
    split into SHA portion, delegate and coordinator commission per scheme
  - a sprinkling of failed payments (ignored by settlement) and payments
    whose commission is credited to someone other than today's delegate

Reproducible: every run uses the same seed (42).

Usage:
    python scripts/seed_demo_data.py --start 2024-03-01 --days 7
"""

from __future__ import annotations

import argparse
import random
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
SEED = 42

# Scheme code -> (daily premium, SHA portion, delegate commission, coordinator commission)
SCHEMES: dict[str, tuple[Decimal, Decimal, Decimal, Decimal]] = {
    "BASIC": (Decimal("50.00"), Decimal("45.00"), Decimal("2.00"), Decimal("1.00")),
    "FAMILY": (Decimal("80.00"), Decimal("72.00"), Decimal("2.00"), Decimal("1.00")),
    "FAMILY_PLUS": (Decimal("100.00"), Decimal("90.00"), Decimal("2.00"), Decimal("1.00")),
}

COORDINATOR_COUNT = 2
DELEGATES_PER_COORDINATOR = 3
MEMBERS_PER_DELEGATE = 10

FAILED_PAYMENT_RATE = 0.05
REASSIGNED_CREDIT_RATE = 0.03

FIRST_NAMES = ["Wanjiru", "Otieno", "Achieng", "Kamau", "Njeri", "Mwangi", "Akinyi", "Kiprop"]
LAST_NAMES = ["Mutua", "Ochieng", "Wambui", "Kariuki", "Chebet", "Odhiambo", "Njoroge", "Kilonzo"]


@dataclass
class SeedPayment:
    user_id: uuid.UUID
    amount: Decimal
    status: str
    settlement_date: date
    sha_portion: Decimal
    delegate_commission: Decimal
    coordinator_commission: Decimal
    commission_delegate_id: uuid.UUID | None
    commission_coordinator_id: uuid.UUID | None


# ---------------------------------------------------------------------------
# Builders (no database access)
# ---------------------------------------------------------------------------


def _phone(rng: random.Random) -> str:
    return f"2547{rng.randint(10_000_000, 99_999_999)}"


def _person(rng: random.Random, role: str, **extra: Any) -> dict[str, Any]:
    return {
        "id": uuid.UUID(int=rng.getrandbits(128)),
        "first_name": rng.choice(FIRST_NAMES),
        "last_name": rng.choice(LAST_NAMES),
        "phone_number": _phone(rng),
        "role": role,
        **extra,
    }


def build_members(rng: random.Random) -> list[dict[str, Any]]:
    """Coordinators first, then delegates, then members (FK order)."""
    coordinators = [_person(rng, "coordinator") for _ in range(COORDINATOR_COUNT)]
    delegates = [
        _person(rng, "delegate", coordinator_id=coordinator["id"])
        for coordinator in coordinators
        for _ in range(DELEGATES_PER_COORDINATOR)
    ]
    members = [
        _person(
            rng,
            "member",
            delegate_id=delegate["id"],
            coordinator_id=delegate["coordinator_id"],
            scheme=rng.choice(sorted(SCHEMES)),
        )
        for delegate in delegates
        for _ in range(MEMBERS_PER_DELEGATE)
    ]
    return coordinators + delegates + members


def build_payments(
    rng: random.Random, people: list[dict[str, Any]], start: date, days: int
) -> list[SeedPayment]:
    delegates = [p for p in people if p["role"] == "delegate"]
    members = [p for p in people if p["role"] == "member"]
    payments: list[SeedPayment] = []

    for offset in range(days):
        day = start + timedelta(days=offset)
        for member in members:
            amount, sha, delegate_cut, coordinator_cut = SCHEMES[member["scheme"]]
            status = "failed" if rng.random() < FAILED_PAYMENT_RATE else "completed"

            delegate_id = member["delegate_id"]
            coordinator_id = member["coordinator_id"]
            # Credited to the delegate the member had at payment time
            if rng.random() < REASSIGNED_CREDIT_RATE:
                previous = rng.choice(delegates)
                delegate_id = previous["id"]
                coordinator_id = previous["coordinator_id"]

            payments.append(
                SeedPayment(
                    user_id=member["id"],
                    amount=amount,
                    status=status,
                    settlement_date=day,
                    sha_portion=sha,
                    delegate_commission=delegate_cut,
                    coordinator_commission=coordinator_cut,
                    commission_delegate_id=delegate_id,
                    commission_coordinator_id=coordinator_id,
                )
            )
    return payments


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def seed(start: date, days: int) -> tuple[int, int]:
    from settlement_engine.core.database import Base, SessionLocal, engine
    from settlement_engine.models import Member, Payment

    rng = random.Random(SEED)
    people = build_members(rng)
    payments = build_payments(rng, people, start, days)

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        for person in people:
            fields = {k: v for k, v in person.items() if k != "scheme"}
            db.add(Member(**fields))
        db.flush()
        for payment in payments:
            db.add(
                Payment(
                    id=uuid.UUID(int=rng.getrandbits(128)),
                    transaction_reference=f"SEED{rng.getrandbits(40):010X}",
                    processed_at=datetime.combine(payment.settlement_date, datetime.min.time()),
                    **payment.__dict__,
                )
            )
        db.commit()
    finally:
        db.close()
    return len(people), len(payments)


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo members and payments.")
    parser.add_argument("--start", type=date.fromisoformat, default=date(2024, 3, 1))
    parser.add_argument("--days", type=int, default=7)
    args = parser.parse_args()

    people, payments = seed(args.start, args.days)
    print(f"Seeded {people} people and {payments} payments from {args.start}")


if __name__ == "__main__":
    main()
