"""Read-side interfaces the settlement services depend on.

The calculator and payout engine receive these explicitly instead of
reaching into sibling models, so tests can hand them in-memory fakes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Optional, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from settlement_engine.models.member import Member
from settlement_engine.models.payment import Payment


@dataclass(frozen=True)
class RecipientInfo:
    id: uuid.UUID
    name: str
    phone_number: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class ReferrerAssignment:
    """A member's *current* delegate and coordinator."""

    delegate_id: Optional[uuid.UUID] = None
    coordinator_id: Optional[uuid.UUID] = None


class PaymentLedger(Protocol):
    def completed_payments_on(self, settlement_date: date) -> list[Any]:
        """Completed payments whose settlement date is *settlement_date*."""
        ...

    def count_completed_on(self, settlement_date: date) -> int:
        ...


class RecipientDirectory(Protocol):
    def get(self, recipient_id: uuid.UUID) -> Optional[RecipientInfo]:
        ...

    def assigned_referrers(
        self, user_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, ReferrerAssignment]:
        ...


class SqlPaymentLedger:
    """``PaymentLedger`` backed by the ``payments`` table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def completed_payments_on(self, settlement_date: date) -> list[Payment]:
        return (
            self.db.query(Payment)
            .filter(Payment.status == "completed")
            .filter(Payment.settlement_date == settlement_date)
            .order_by(Payment.id)
            .all()
        )

    def count_completed_on(self, settlement_date: date) -> int:
        return (
            self.db.query(func.count(Payment.id))
            .filter(Payment.status == "completed")
            .filter(Payment.settlement_date == settlement_date)
            .scalar()
            or 0
        )


class SqlRecipientDirectory:
    """``RecipientDirectory`` backed by the ``members`` table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get(self, recipient_id: uuid.UUID) -> Optional[RecipientInfo]:
        member = self.db.get(Member, recipient_id)
        if member is None:
            return None
        return RecipientInfo(
            id=member.id,
            name=member.full_name,
            phone_number=member.phone_number,
            email=member.email,
        )

    def assigned_referrers(
        self, user_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, ReferrerAssignment]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        rows = (
            self.db.query(Member.id, Member.delegate_id, Member.coordinator_id)
            .filter(Member.id.in_(ids))
            .all()
        )
        return {
            row.id: ReferrerAssignment(
                delegate_id=row.delegate_id,
                coordinator_id=row.coordinator_id,
            )
            for row in rows
        }
