"""Tests for CommissionPayoutEngine: submission, callbacks and statistics."""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

import pytest

from settlement_engine.core.exceptions import InvalidStateError, NotFoundError
from settlement_engine.models import CommissionPayout
from settlement_engine.services.recovery.defaults import COMMISSION_PAYOUT
from settlement_engine.services.recovery.orchestrator import (
    Priority,
    RecoveryAction,
    RecoveryKind,
)
from settlement_engine.services.settlement.calculator import RecipientCommission

DAY = date(2024, 3, 1)


@pytest.fixture
def settlement(service, hierarchy, make_payment):
    first, second = hierarchy["members"]
    make_payment(first, DAY, "600", "72", "24", "12")
    make_payment(second, DAY, "400", "48", "16", "8")
    return service.generate(DAY)


@pytest.fixture
def engine(service):
    return service.payout_engine


def _payout(db_session, settlement, recipient_type) -> CommissionPayout:
    return (
        db_session.query(CommissionPayout)
        .filter_by(settlement_id=settlement.id, recipient_type=recipient_type)
        .one()
    )


# ── Submission ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_submit_moves_payout_to_processing(engine, settlement, gateway, db_session):
    payout = _payout(db_session, settlement, "delegate")

    submission = await engine.submit(payout.id, operator="admin")

    assert submission.success
    db_session.refresh(payout)
    assert payout.status == "processing"
    assert payout.conversation_id == submission.conversation_id
    assert payout.originator_conversation_id.startswith("ORIG_")
    assert payout.payment_method == "mpesa"
    amount, contact, reference = gateway.calls[0]
    assert amount == Decimal("40")
    assert contact == payout.recipient.phone_number
    assert reference == str(payout.id)


@pytest.mark.asyncio
async def test_submit_refuses_non_pending_payout(engine, settlement, db_session):
    payout = _payout(db_session, settlement, "delegate")
    await engine.submit(payout.id)

    with pytest.raises(InvalidStateError):
        await engine.submit(payout.id)


@pytest.mark.asyncio
async def test_individual_payout_is_submitted_alone(engine, settlement, gateway, db_session):
    payout = _payout(db_session, settlement, "coordinator")

    submission = await engine.process_individual_payout(payout.id, operator="admin")

    assert submission.success
    assert len(gateway.calls) == 1
    assert _payout(db_session, settlement, "delegate").status == "pending"


@pytest.mark.asyncio
async def test_submit_unknown_payout(engine, settlement):
    with pytest.raises(NotFoundError):
        await engine.submit(uuid.uuid4())


@pytest.mark.asyncio
async def test_missing_phone_fails_without_calling_gateway(
    service, make_member, make_payment, gateway, db_session
):
    delegate = make_member("delegate", has_phone=False)
    payer = make_member(delegate=delegate)
    make_payment(payer, DAY, "100", "12", "4")
    settlement = service.generate(DAY)
    payout = _payout(db_session, settlement, "delegate")

    submission = await service.payout_engine.submit(payout.id)

    assert not submission.success
    assert gateway.calls == []
    db_session.refresh(payout)
    assert payout.status == "failed"
    assert "phone" in payout.failure_reason.lower()


@pytest.mark.asyncio
async def test_flaky_gateway_is_retried_with_backoff(
    engine, settlement, gateway, sleeps, db_session
):
    payout = _payout(db_session, settlement, "delegate")
    gateway.flaky[payout.recipient.phone_number] = 2

    submission = await engine.submit(payout.id)

    assert submission.success
    assert len(gateway.calls) == 3
    assert sleeps == [10.0, 15.0]


@pytest.mark.asyncio
async def test_exhausted_gateway_marks_payout_failed_and_flags_review(
    engine, settlement, gateway, sleeps, audit, db_session
):
    payout = _payout(db_session, settlement, "coordinator")
    gateway.failing.add(payout.recipient.phone_number)

    submission = await engine.submit(payout.id)

    assert not submission.success
    assert len(gateway.calls) == 5
    assert sleeps == [10.0, 15.0, 22.5, 33.75]
    db_session.refresh(payout)
    assert payout.status == "failed"
    assert "commission_payout failed after 5 attempts" in payout.failure_reason

    payout_entries = audit.entries_for("commission_payout", payout.id)
    assert [e.action for e in payout_entries] == ["payout_error"]
    review = audit.entries_for("commission_payout", settlement.id)
    assert [e.action for e in review] == ["manual_review_required"]
    assert review[0].severity == "critical"


@pytest.mark.asyncio
async def test_recovery_without_a_submission_fails_only_that_payout(
    engine, settlement, gateway, orchestrator, db_session
):
    async def claim_recovered(failure):
        return True

    orchestrator.register_recovery_action(
        COMMISSION_PAYOUT,
        RecoveryAction(
            id="claim_recovered",
            kind=RecoveryKind.RETRY,
            description="Reports recovery without producing a submission",
            handler=claim_recovered,
            priority=Priority.LOW,
        ),
    )
    coordinator_payout = _payout(db_session, settlement, "coordinator")
    gateway.failing.add(coordinator_payout.recipient.phone_number)

    result = await engine.process_settlement_payouts(settlement.id)

    assert result.total_payouts == 2
    assert result.successful_payouts == 1
    assert result.failed_payouts == 1
    db_session.refresh(coordinator_payout)
    assert coordinator_payout.status == "failed"
    assert coordinator_payout.failure_reason == "Gateway returned no conversation id"
    assert _payout(db_session, settlement, "delegate").status == "processing"


# ── Callbacks ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_callback_success_is_idempotent(engine, settlement, db_session):
    payout = _payout(db_session, settlement, "delegate")
    submission = await engine.submit(payout.id)

    engine.complete_from_callback(submission.conversation_id, "QK12345")
    engine.complete_from_callback(submission.conversation_id, "QK99999")

    db_session.refresh(payout)
    assert payout.status == "processed"
    assert payout.transaction_reference == "QK12345"
    assert payout.processed_at is not None


@pytest.mark.asyncio
async def test_failure_never_downgrades_processed_payout(engine, settlement, db_session):
    payout = _payout(db_session, settlement, "delegate")
    await engine.submit(payout.id)
    engine.mark_as_processed(payout.id, "QK12345")

    engine.mark_as_failed(payout.id, "late failure")

    db_session.refresh(payout)
    assert payout.status == "processed"
    assert payout.failure_reason is None


@pytest.mark.asyncio
async def test_failure_callback_records_reason(engine, settlement, db_session):
    payout = _payout(db_session, settlement, "coordinator")
    submission = await engine.submit(payout.id)

    engine.fail_from_callback(submission.conversation_id, 2001, "Wrong credentials")
    engine.fail_from_callback(submission.conversation_id, 1, "Insufficient balance")

    db_session.refresh(payout)
    assert payout.status == "failed"
    assert payout.failure_reason == "Gateway error 2001: Wrong credentials"


def test_unknown_conversation_id_is_ignored(engine, settlement):
    assert engine.complete_from_callback("AG_UNKNOWN", "QK1") is None
    assert engine.fail_from_callback("AG_UNKNOWN", 1, "nope") is None


# ── Statistics ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_payout_statistics_by_status(engine, settlement, db_session):
    delegate_payout = _payout(db_session, settlement, "delegate")
    submission = await engine.submit(delegate_payout.id)
    engine.complete_from_callback(submission.conversation_id, "QK1")

    stats = engine.get_payout_statistics(settlement.id)

    assert stats.total_payouts == 2
    assert stats.total_amount == Decimal("60")
    assert stats.processed_payouts == 1
    assert stats.processed_amount == Decimal("40")
    assert stats.pending_payouts == 1
    assert stats.pending_amount == Decimal("20")
    assert stats.failed_payouts == 0


def test_create_payouts_skips_non_positive_amounts(engine, settlement, db_session):
    rows = [
        RecipientCommission(uuid.uuid4(), "delegate", Decimal("0"), 1),
        RecipientCommission(uuid.uuid4(), "delegate", Decimal("-1"), 1),
    ]

    assert engine.create_payouts(settlement.id, rows) == []
    db_session.rollback()
