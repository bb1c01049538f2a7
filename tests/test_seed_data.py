"""Tests for the demo data builders (no database)."""

from __future__ import annotations

import importlib.util
import random
import sys
from collections import Counter
from datetime import date
from pathlib import Path

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "seed_demo_data.py"

_spec = importlib.util.spec_from_file_location("seed_demo_data", SCRIPT)
seed_demo_data = importlib.util.module_from_spec(_spec)
sys.modules["seed_demo_data"] = seed_demo_data
_spec.loader.exec_module(seed_demo_data)

START = date(2024, 3, 1)


def _build(days=3):
    rng = random.Random(seed_demo_data.SEED)
    people = seed_demo_data.build_members(rng)
    return people, seed_demo_data.build_payments(rng, people, START, days)


def test_member_hierarchy_shape():
    people, _ = _build()

    roles = Counter(p["role"] for p in people)
    delegates = seed_demo_data.COORDINATOR_COUNT * seed_demo_data.DELEGATES_PER_COORDINATOR
    assert roles == {
        "coordinator": seed_demo_data.COORDINATOR_COUNT,
        "delegate": delegates,
        "member": delegates * seed_demo_data.MEMBERS_PER_DELEGATE,
    }
    ids = {p["id"] for p in people if p["role"] == "delegate"}
    assert all(p["delegate_id"] in ids for p in people if p["role"] == "member")


def test_one_payment_per_member_per_day():
    people, payments = _build(days=3)

    members = sum(1 for p in people if p["role"] == "member")
    assert len(payments) == members * 3
    assert {p.settlement_date for p in payments} == {
        date(2024, 3, 1),
        date(2024, 3, 2),
        date(2024, 3, 3),
    }


def test_portions_never_exceed_the_premium():
    _, payments = _build()

    for payment in payments:
        portions = (
            payment.sha_portion + payment.delegate_commission + payment.coordinator_commission
        )
        assert portions <= payment.amount
    premiums = {scheme[0] for scheme in seed_demo_data.SCHEMES.values()}
    assert {p.amount for p in payments} <= premiums


def test_builders_are_deterministic():
    first_people, first_payments = _build()
    second_people, second_payments = _build()

    assert first_people == second_people
    assert first_payments == second_payments
