"""Unit tests for SettlementCalculator against in-memory ledger fakes."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest

from settlement_engine.core.exceptions import ValidationError
from settlement_engine.services.settlement.calculator import (
    SettlementCalculator,
    parse_settlement_date,
    to_money,
)
from settlement_engine.services.settlement.repositories import ReferrerAssignment

DAY = date(2024, 3, 1)


class InMemoryLedger:
    def __init__(self, payments):
        self.payments = payments

    def completed_payments_on(self, settlement_date):
        return [
            p
            for p in self.payments
            if p.status == "completed" and p.settlement_date == settlement_date
        ]

    def count_completed_on(self, settlement_date):
        return len(self.completed_payments_on(settlement_date))


class InMemoryDirectory:
    def __init__(self, assignments=None):
        self.assignments = assignments or {}

    def get(self, recipient_id):
        return None

    def assigned_referrers(self, user_ids):
        return {uid: self.assignments[uid] for uid in user_ids if uid in self.assignments}


def _payment(user_id, amount, sha, delegate="0", coordinator="0", **kwargs):
    defaults = {
        "id": uuid.uuid4(),
        "user_id": user_id,
        "amount": Decimal(amount),
        "sha_portion": Decimal(sha),
        "delegate_commission": Decimal(delegate),
        "coordinator_commission": Decimal(coordinator),
        "commission_delegate_id": None,
        "commission_coordinator_id": None,
        "status": "completed",
        "settlement_date": DAY,
    }
    defaults.update(kwargs)
    return SimpleNamespace(**defaults)


def _calculator(payments, assignments=None):
    return SettlementCalculator(InMemoryLedger(payments), InMemoryDirectory(assignments))


# ── Worked example ───────────────────────────────────────────────────


def test_worked_example_totals():
    """1000 collected, sha 120, commissions 40 + 20 -> MWU 820."""
    delegate, coordinator = uuid.uuid4(), uuid.uuid4()
    alice, bob = uuid.uuid4(), uuid.uuid4()
    assignments = {
        alice: ReferrerAssignment(delegate, coordinator),
        bob: ReferrerAssignment(delegate, coordinator),
    }
    payments = [
        _payment(alice, "600", "72", "24", "12"),
        _payment(bob, "400", "48", "16", "8"),
    ]

    totals = _calculator(payments, assignments).calculate(DAY)

    assert totals.total_collected == Decimal("1000")
    assert totals.sha_amount == Decimal("120")
    assert totals.mwu_amount == Decimal("820")
    assert totals.total_delegate_commissions == Decimal("40")
    assert totals.total_coordinator_commissions == Decimal("20")
    assert totals.total_payments == 2
    assert totals.unique_members == 2
    assert [(r.recipient_id, r.total_commission, r.payment_count) for r in totals.delegate_breakdown] == [
        (delegate, Decimal("40"), 2)
    ]
    assert [(r.recipient_id, r.total_commission) for r in totals.coordinator_breakdown] == [
        (coordinator, Decimal("20"))
    ]


def test_conservation_is_exact_with_cents():
    """Decimal sums never drift, even with many fractional amounts."""
    delegate = uuid.uuid4()
    payer = uuid.uuid4()
    payments = [
        _payment(payer, "33.33", "4.01", "1.11", "0.37", commission_delegate_id=delegate)
        for _ in range(30)
    ]

    totals = _calculator(payments).calculate(DAY)

    assert totals.is_balanced()
    assert totals.total_collected == Decimal("999.90")
    assert totals.sha_amount + totals.mwu_amount + totals.total_commissions == Decimal("999.90")
    assert totals.unique_members == 1


# ── Recipient resolution ─────────────────────────────────────────────


def test_payment_level_recipient_wins_over_current_assignment():
    credited, current = uuid.uuid4(), uuid.uuid4()
    payer = uuid.uuid4()
    payments = [_payment(payer, "100", "12", "4", "0", commission_delegate_id=credited)]

    totals = _calculator(payments, {payer: ReferrerAssignment(current, None)}).calculate(DAY)

    assert [r.recipient_id for r in totals.delegate_breakdown] == [credited]


def test_falls_back_to_current_assignment():
    current = uuid.uuid4()
    payer = uuid.uuid4()
    payments = [_payment(payer, "100", "12", "4", "0")]

    totals = _calculator(payments, {payer: ReferrerAssignment(current, None)}).calculate(DAY)

    assert [r.recipient_id for r in totals.delegate_breakdown] == [current]


def test_unattributed_commission_stays_with_mwu():
    payer = uuid.uuid4()
    payments = [_payment(payer, "100", "12", "4", "2")]

    totals = _calculator(payments).calculate(DAY)

    assert totals.delegate_breakdown == ()
    assert totals.coordinator_breakdown == ()
    assert totals.total_commissions == Decimal("0")
    assert totals.unattributed_commission == Decimal("6")
    assert totals.mwu_amount == Decimal("88")
    assert totals.is_balanced()


def test_zero_commission_recipients_are_omitted():
    delegate, coordinator = uuid.uuid4(), uuid.uuid4()
    payer = uuid.uuid4()
    payments = [
        _payment(
            payer,
            "100",
            "12",
            "4",
            "0",
            commission_delegate_id=delegate,
            commission_coordinator_id=coordinator,
        )
    ]

    totals = _calculator(payments).calculate(DAY)

    assert len(totals.delegate_breakdown) == 1
    assert totals.coordinator_breakdown == ()


def test_breakdown_order_is_deterministic():
    delegates = [uuid.uuid4() for _ in range(5)]
    payments = [
        _payment(uuid.uuid4(), "10", "1", "1", "0", commission_delegate_id=d) for d in delegates
    ]

    first = _calculator(payments).calculate(DAY)
    second = _calculator(list(reversed(payments))).calculate(DAY)

    assert first.delegate_breakdown == second.delegate_breakdown
    assert [r.recipient_id for r in first.delegate_breakdown] == sorted(delegates, key=str)


# ── Edge cases ───────────────────────────────────────────────────────


def test_no_payments_gives_zero_totals():
    payments = [_payment(uuid.uuid4(), "100", "12", status="failed")]

    totals = _calculator(payments).calculate(DAY)

    assert totals.total_collected == Decimal("0")
    assert totals.total_payments == 0
    assert totals.recipients == ()
    assert totals.is_balanced()


def test_other_days_are_ignored():
    payments = [
        _payment(uuid.uuid4(), "100", "12"),
        _payment(uuid.uuid4(), "500", "60", settlement_date=date(2024, 3, 2)),
    ]

    totals = _calculator(payments).calculate("2024-03-01")

    assert totals.total_collected == Decimal("100")


def test_negative_portion_is_rejected():
    payments = [_payment(uuid.uuid4(), "100", "-1")]
    with pytest.raises(ValidationError):
        _calculator(payments).calculate(DAY)


def test_portions_exceeding_amount_are_rejected():
    payments = [_payment(uuid.uuid4(), "100", "90", "8", "5")]
    with pytest.raises(ValidationError):
        _calculator(payments).calculate(DAY)


def test_parse_settlement_date_accepts_datetime_and_iso_string():
    assert parse_settlement_date(datetime(2024, 3, 1, 23, 59)) == DAY
    assert parse_settlement_date(" 2024-03-01 ") == DAY


@pytest.mark.parametrize("value", ["01/03/2024", "not-a-date", None, 20240301])
def test_parse_settlement_date_rejects_garbage(value):
    with pytest.raises(ValidationError) as exc_info:
        parse_settlement_date(value)
    assert exc_info.value.error_code == "INVALID_DATE"


def test_to_money_avoids_float_noise():
    assert to_money(0.1) + to_money(0.2) == Decimal("0.3")
    assert to_money(None) == Decimal("0")
