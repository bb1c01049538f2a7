"""Daily settlement model: one aggregated snapshot per calendar date."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Date, DateTime, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_engine.core.database import Base

SETTLEMENT_STATUSES = ("pending", "processing", "completed", "failed")


class DailySettlement(Base):
    """Totals for one day of completed payments and their lifecycle status.

    The money columns are written once by generation and never updated;
    only ``status``, ``processed_at``, ``processed_by`` and ``notes`` change
    afterwards.  ``total_collected`` always equals the sum of the four share
    columns.
    """

    __tablename__ = "daily_settlements"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    settlement_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        unique=True,
    )
    total_collected: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=0,
    )
    sha_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=0,
    )
    mwu_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=0,
    )
    total_delegate_commissions: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=0,
    )
    total_coordinator_commissions: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=0,
    )
    total_payments: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    unique_members: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        index=True,
        comment="pending | processing | completed | failed",
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        nullable=True,
    )
    processed_by: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        onupdate=func.now(),
    )

    # -- Relationships --
    payouts: Mapped[list[CommissionPayout]] = relationship(
        "CommissionPayout",
        back_populates="settlement",
        lazy="select",
        order_by="CommissionPayout.recipient_type",
    )
    bank_transfers: Mapped[list[BankTransferRecord]] = relationship(
        "BankTransferRecord",
        back_populates="settlement",
        lazy="select",
    )

    @property
    def total_commissions(self) -> Decimal:
        return self.total_delegate_commissions + self.total_coordinator_commissions

    def __repr__(self) -> str:
        return (
            f"<DailySettlement(date={self.settlement_date}, "
            f"total_collected={self.total_collected}, status={self.status!r})>"
        )
