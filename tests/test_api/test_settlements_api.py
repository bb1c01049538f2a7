"""API integration tests for the settlement endpoints."""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest

from settlement_engine.services.settlement.service import local_today

DAY = date(2024, 3, 1)
BASE = "/api/v1/settlements"


@pytest.fixture
def day_of_payments(hierarchy, make_payment):
    first, second = hierarchy["members"]
    make_payment(first, DAY, "600", "72", "24", "12")
    make_payment(second, DAY, "400", "48", "16", "8")
    return hierarchy


def _generate(client, day=DAY):
    response = client.post(f"{BASE}/generate", json={"settlement_date": day.isoformat()})
    assert response.status_code == 201, response.text
    return response.json()


# ── Generation ───────────────────────────────────────────────────────


def test_generate_settlement(client, day_of_payments):
    """POST /generate returns the persisted totals."""
    data = _generate(client)

    assert data["settlement_date"] == "2024-03-01"
    assert data["status"] == "pending"
    assert Decimal(data["total_collected"]) == Decimal("1000")
    assert Decimal(data["sha_amount"]) == Decimal("120")
    assert Decimal(data["mwu_amount"]) == Decimal("820")
    assert Decimal(data["total_delegate_commissions"]) == Decimal("40")
    assert Decimal(data["total_coordinator_commissions"]) == Decimal("20")
    assert data["total_payments"] == 2


def test_generate_twice_returns_409(client, day_of_payments):
    _generate(client)

    response = client.post(f"{BASE}/generate", json={"settlement_date": "2024-03-01"})

    assert response.status_code == 409
    assert response.json()["error_code"] == "SETTLEMENT_EXISTS"


def test_generate_rejects_bad_date(client):
    response = client.post(f"{BASE}/generate", json={"settlement_date": "yesterday"})
    assert response.status_code == 422


def test_auto_generate_backfills_days_with_payments(
    client, config, day_of_payments, make_payment
):
    recent = local_today(config.timezone) - timedelta(days=2)
    make_payment(day_of_payments["members"][0], recent, "100", "12", "4", "2")

    response = client.post(f"{BASE}/auto-generate", params={"days_back": 3})

    assert response.status_code == 200, response.text
    assert [s["settlement_date"] for s in response.json()] == [recent.isoformat()]


# ── Lookups ──────────────────────────────────────────────────────────


def test_get_settlement_and_by_date(client, day_of_payments):
    created = _generate(client)

    by_id = client.get(f"{BASE}/{created['id']}")
    by_date = client.get(f"{BASE}/by-date/2024-03-01")

    assert by_id.status_code == 200
    assert by_date.status_code == 200
    assert by_id.json()["id"] == by_date.json()["id"] == created["id"]


def test_unknown_settlement_returns_404(client):
    response = client.get(f"{BASE}/{uuid.uuid4()}")

    assert response.status_code == 404
    assert response.json()["error_code"] == "SETTLEMENT_NOT_FOUND"


def test_missing_date_returns_404(client):
    assert client.get(f"{BASE}/by-date/2024-01-01").status_code == 404


def test_pending_settlements(client, day_of_payments):
    created = _generate(client)

    response = client.get(f"{BASE}/pending")

    assert response.status_code == 200
    assert [s["id"] for s in response.json()] == [created["id"]]


def test_summary_over_range(client, day_of_payments):
    _generate(client)

    response = client.get(
        f"{BASE}/summary", params={"start_date": "2024-03-01", "end_date": "2024-03-02"}
    )

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["total_settlements"] == 1
    assert Decimal(data["total_collected"]) == Decimal("1000")
    assert Decimal(data["total_commissions"]) == Decimal("60")
    assert data["pending_settlements"] == 1
    assert Decimal(data["average_daily_collection"]) == Decimal("1000")


def test_summary_rejects_inverted_range(client):
    response = client.get(
        f"{BASE}/summary", params={"start_date": "2024-03-02", "end_date": "2024-03-01"}
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_DATE_RANGE"


def test_commission_breakdown(client, day_of_payments):
    created = _generate(client)

    response = client.get(f"{BASE}/{created['id']}/commissions")

    assert response.status_code == 200
    data = response.json()
    assert [row["recipient_id"] for row in data["delegates"]] == [
        str(day_of_payments["delegate"].id)
    ]
    assert [row["recipient_id"] for row in data["coordinators"]] == [
        str(day_of_payments["coordinator"].id)
    ]
    assert Decimal(data["total_delegate_commissions"]) == Decimal("40")
    assert data["delegates"][0]["payment_count"] == 2


# ── Processing ───────────────────────────────────────────────────────


def test_process_submits_payouts(client, day_of_payments, gateway):
    created = _generate(client)

    response = client.post(f"{BASE}/{created['id']}/process", json={"operator": "admin"})

    assert response.status_code == 200, response.text
    data = response.json()
    assert data["status"] == "completed"
    assert data["payouts"]["successful_payouts"] == 2
    assert data["transfers"] is None
    assert data["errors"] == []
    assert len(gateway.calls) == 2

    stats = client.get(f"{BASE}/{created['id']}/payout-statistics").json()
    assert stats["processing_payouts"] == 2


def test_process_with_bank_transfers(client, day_of_payments, rail, confirmation_secret):
    created = _generate(client)

    response = client.post(
        f"{BASE}/{created['id']}/process",
        json={
            "operator": "admin",
            "initiate_bank_transfers": True,
            "confirmation_secret": confirmation_secret,
        },
    )

    assert response.status_code == 200, response.text
    transfers = response.json()["transfers"]
    assert transfers["success"] is True
    assert Decimal(transfers["sha_transfer"]["amount"]) == Decimal("120")
    assert Decimal(transfers["mwu_transfer"]["amount"]) == Decimal("820")
    assert len(rail.calls) == 2


def test_process_with_wrong_secret_returns_401(client, day_of_payments, rail, gateway):
    created = _generate(client)

    response = client.post(
        f"{BASE}/{created['id']}/process",
        json={
            "operator": "admin",
            "initiate_bank_transfers": True,
            "confirmation_secret": "guess",
        },
    )

    assert response.status_code == 401
    assert response.json()["error_code"] == "INVALID_CONFIRMATION_SECRET"
    assert rail.calls == [] and gateway.calls == []
    assert client.get(f"{BASE}/{created['id']}").json()["status"] == "pending"


def test_process_twice_returns_409(client, day_of_payments):
    created = _generate(client)
    client.post(f"{BASE}/{created['id']}/process", json={"operator": "admin"})

    response = client.post(f"{BASE}/{created['id']}/process", json={"operator": "admin"})

    assert response.status_code == 409
    assert response.json()["error_code"] == "SETTLEMENT_NOT_PENDING"


def test_process_requires_operator(client, day_of_payments):
    created = _generate(client)
    response = client.post(f"{BASE}/{created['id']}/process", json={})
    assert response.status_code == 422


def test_partial_failure_then_retry(client, day_of_payments, gateway):
    created = _generate(client)
    gateway.failing.add(day_of_payments["coordinator"].phone_number)

    processed = client.post(f"{BASE}/{created['id']}/process", json={"operator": "admin"})

    assert processed.json()["status"] == "processing"
    assert processed.json()["payouts"]["failed_payouts"] == 1

    gateway.failing.clear()
    retried = client.post(f"{BASE}/{created['id']}/retry-payouts", json={"operator": "admin"})

    assert retried.status_code == 200, retried.text
    assert retried.json()["retried_payouts"] == 1
    assert retried.json()["successful_retries"] == 1


def test_resume_payouts_requires_processing(client, day_of_payments):
    created = _generate(client)

    response = client.post(
        f"{BASE}/{created['id']}/resume-payouts", json={"operator": "admin"}
    )

    assert response.status_code == 409
    assert response.json()["error_code"] == "SETTLEMENT_NOT_PROCESSING"


def test_resume_payouts_on_processing_settlement(client, day_of_payments, gateway):
    gateway.failing.add(day_of_payments["delegate"].phone_number)
    created = _generate(client)
    client.post(f"{BASE}/{created['id']}/process", json={"operator": "admin"})

    response = client.post(
        f"{BASE}/{created['id']}/resume-payouts", json={"operator": "admin"}
    )

    assert response.status_code == 200, response.text
    assert response.json()["total_payouts"] == 0


def test_mark_failed_only_from_processing(client, day_of_payments, gateway):
    created = _generate(client)

    refused = client.post(
        f"{BASE}/{created['id']}/fail", json={"operator": "admin", "reason": "bank outage"}
    )
    assert refused.status_code == 409

    gateway.failing.add(day_of_payments["delegate"].phone_number)
    client.post(f"{BASE}/{created['id']}/process", json={"operator": "admin"})

    response = client.post(
        f"{BASE}/{created['id']}/fail", json={"operator": "admin", "reason": "bank outage"}
    )

    assert response.status_code == 200, response.text
    assert response.json()["status"] == "failed"
    assert response.json()["notes"] == "bank outage"
