"""Settlement calculator: turns one day of the payment ledger into totals.

Each completed payment was already split at payment time into an SHA
portion, a delegate commission and a coordinator commission.  The calculator
sums those portions for the day and derives the union (MWU) share as the
residual, so the four shares always add back up to what was collected.

Commissions are also grouped per recipient.  A payment credits the delegate
or coordinator recorded on the payment itself; when none was recorded it
falls back to whoever is assigned to the paying member today.  Commission
that cannot be attributed to anybody is not paid out and stays with the
union.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from settlement_engine.core.exceptions import ValidationError
from settlement_engine.core.logging import get_logger
from settlement_engine.services.settlement.repositories import (
    PaymentLedger,
    RecipientDirectory,
    ReferrerAssignment,
)

logger = get_logger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class RecipientCommission:
    """Commission owed to one delegate or coordinator for the day."""

    recipient_id: uuid.UUID
    recipient_type: str
    total_commission: Decimal
    payment_count: int


@dataclass(frozen=True)
class SettlementTotals:
    settlement_date: date
    total_collected: Decimal = ZERO
    sha_amount: Decimal = ZERO
    mwu_amount: Decimal = ZERO
    total_delegate_commissions: Decimal = ZERO
    total_coordinator_commissions: Decimal = ZERO
    total_payments: int = 0
    unique_members: int = 0
    delegate_breakdown: tuple[RecipientCommission, ...] = field(default_factory=tuple)
    coordinator_breakdown: tuple[RecipientCommission, ...] = field(default_factory=tuple)
    unattributed_commission: Decimal = ZERO

    @property
    def total_commissions(self) -> Decimal:
        return self.total_delegate_commissions + self.total_coordinator_commissions

    @property
    def recipients(self) -> tuple[RecipientCommission, ...]:
        return self.delegate_breakdown + self.coordinator_breakdown

    def is_balanced(self) -> bool:
        return self.total_collected == (
            self.sha_amount
            + self.mwu_amount
            + self.total_delegate_commissions
            + self.total_coordinator_commissions
        )


def parse_settlement_date(value: Union[date, datetime, str, None]) -> date:
    """Normalize a date, datetime or ``YYYY-MM-DD`` string to a calendar date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            raise ValidationError(
                f"Invalid settlement date {value!r}, expected YYYY-MM-DD",
                "INVALID_DATE",
            )
    raise ValidationError(f"Invalid settlement date {value!r}", "INVALID_DATE")


def to_money(value: Any) -> Decimal:
    """Coerce a ledger value to ``Decimal`` without going through float math."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid monetary amount {value!r}", "INVALID_AMOUNT")


class SettlementCalculator:
    """Pure aggregation over the payment ledger.  No writes, no gateway calls."""

    def __init__(self, ledger: PaymentLedger, directory: RecipientDirectory) -> None:
        self.ledger = ledger
        self.directory = directory

    def calculate(self, settlement_date: Union[date, datetime, str]) -> SettlementTotals:
        """Compute settlement totals and per-recipient commissions for a day.

        Args:
            settlement_date: The calendar day to settle.

        Returns:
            A ``SettlementTotals`` snapshot.  Recipients are ordered by id so
            the same ledger always yields the same breakdown.

        Raises:
            ValidationError: Bad date, or a payment with negative portions
                or portions exceeding what was collected.
        """
        day = parse_settlement_date(settlement_date)
        payments = self.ledger.completed_payments_on(day)

        if not payments:
            logger.info("No completed payments for %s", day)
            return SettlementTotals(settlement_date=day)

        assignments = self.directory.assigned_referrers(p.user_id for p in payments)

        total_collected = ZERO
        sha_amount = ZERO
        unattributed = ZERO
        delegates: dict[uuid.UUID, list[Decimal]] = defaultdict(list)
        coordinators: dict[uuid.UUID, list[Decimal]] = defaultdict(list)
        members: set[Any] = set()

        for payment in payments:
            amount = to_money(payment.amount)
            sha = to_money(payment.sha_portion)
            delegate_commission = to_money(payment.delegate_commission)
            coordinator_commission = to_money(payment.coordinator_commission)
            self._check_portions(payment, amount, sha, delegate_commission, coordinator_commission)

            total_collected += amount
            sha_amount += sha
            members.add(payment.user_id)

            assigned = assignments.get(payment.user_id, ReferrerAssignment())
            delegate_id = self._resolve(payment.commission_delegate_id, assigned.delegate_id)
            coordinator_id = self._resolve(
                payment.commission_coordinator_id, assigned.coordinator_id
            )

            if delegate_id is not None:
                delegates[delegate_id].append(delegate_commission)
            else:
                unattributed += delegate_commission

            if coordinator_id is not None:
                coordinators[coordinator_id].append(coordinator_commission)
            else:
                unattributed += coordinator_commission

        delegate_breakdown = self._breakdown(delegates, "delegate")
        coordinator_breakdown = self._breakdown(coordinators, "coordinator")
        delegate_total = sum((r.total_commission for r in delegate_breakdown), ZERO)
        coordinator_total = sum((r.total_commission for r in coordinator_breakdown), ZERO)

        # MWU is the residual; unattributed commission stays with the union.
        mwu_amount = total_collected - sha_amount - delegate_total - coordinator_total

        if unattributed > ZERO:
            logger.warning(
                "Settlement %s: commission %s has no delegate/coordinator and "
                "is retained in the MWU share",
                day,
                unattributed,
            )

        totals = SettlementTotals(
            settlement_date=day,
            total_collected=total_collected,
            sha_amount=sha_amount,
            mwu_amount=mwu_amount,
            total_delegate_commissions=delegate_total,
            total_coordinator_commissions=coordinator_total,
            total_payments=len(payments),
            unique_members=len(members),
            delegate_breakdown=delegate_breakdown,
            coordinator_breakdown=coordinator_breakdown,
            unattributed_commission=unattributed,
        )

        logger.info(
            "Calculated settlement %s: collected=%s sha=%s mwu=%s delegates=%d coordinators=%d",
            day,
            total_collected,
            sha_amount,
            mwu_amount,
            len(delegate_breakdown),
            len(coordinator_breakdown),
        )
        return totals

    # ── Private helpers ──────────────────────────────────────────────

    @staticmethod
    def _resolve(
        override_id: Optional[uuid.UUID], assigned_id: Optional[uuid.UUID]
    ) -> Optional[uuid.UUID]:
        """Prefer the id recorded on the payment over today's assignment."""
        return override_id if override_id is not None else assigned_id

    @staticmethod
    def _breakdown(
        grouped: dict[uuid.UUID, list[Decimal]], recipient_type: str
    ) -> tuple[RecipientCommission, ...]:
        rows = []
        for recipient_id in sorted(grouped, key=str):
            commissions = grouped[recipient_id]
            total = sum(commissions, ZERO)
            if total <= ZERO:
                continue
            rows.append(
                RecipientCommission(
                    recipient_id=recipient_id,
                    recipient_type=recipient_type,
                    total_commission=total,
                    payment_count=len(commissions),
                )
            )
        return tuple(rows)

    @staticmethod
    def _check_portions(
        payment: Any,
        amount: Decimal,
        sha: Decimal,
        delegate_commission: Decimal,
        coordinator_commission: Decimal,
    ) -> None:
        if min(amount, sha, delegate_commission, coordinator_commission) < ZERO:
            raise ValidationError(
                f"Payment {payment.id} has negative amounts", "INVALID_AMOUNT"
            )
        if sha + delegate_commission + coordinator_commission > amount:
            raise ValidationError(
                f"Payment {payment.id} portions exceed the amount collected",
                "INVALID_AMOUNT",
            )
