"""Payment model: the completed-payment ledger settlements are built from."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, DateTime, ForeignKey, Index, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.core.database import Base


class Payment(Base):
    """A single member contribution, split at payment time into shares.

    The settlement engine only reads this table.  The portions
    (``sha_portion``, ``delegate_commission``, ``coordinator_commission``)
    are fixed when the payment completes; whatever is left over is the
    union's share and is derived, never stored.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("members.id"),
        nullable=False,
        index=True,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="pending | completed | failed | cancelled",
    )
    settlement_date: Mapped[Optional[date]] = mapped_column(
        Date,
        nullable=True,
    )
    sha_portion: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2),
        default=0,
    )
    delegate_commission: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2),
        default=0,
    )
    coordinator_commission: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2),
        default=0,
    )
    commission_delegate_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("members.id"),
        nullable=True,
    )
    commission_coordinator_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("members.id"),
        nullable=True,
    )
    transaction_reference: Mapped[Optional[str]] = mapped_column(
        String(100),
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_payments_status_settlement_date", "status", "settlement_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id!r}, amount={self.amount}, "
            f"status={self.status!r})>"
        )
