"""Bank transfer model: the SHA and MWU share disbursements."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Numeric, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_engine.core.database import Base


class BankTransferRecord(Base):
    """One transfer of a settlement's SHA or MWU portion.

    There is at most one row per (settlement, portion); a retry updates the
    existing row instead of adding a new one.
    """

    __tablename__ = "bank_transfers"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    settlement_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("daily_settlements.id"),
        nullable=False,
        index=True,
    )
    portion: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="sha | mwu",
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="pending | processing | completed | failed",
    )
    reference: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    bank_name: Mapped[Optional[str]] = mapped_column(String(100))
    account_number: Mapped[Optional[str]] = mapped_column(String(50))
    account_name: Mapped[Optional[str]] = mapped_column(String(150))
    branch_code: Mapped[Optional[str]] = mapped_column(String(20))
    swift_code: Mapped[Optional[str]] = mapped_column(String(20))
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(100),
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(
        Text,
    )
    initiated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
    )

    # -- Relationships --
    settlement: Mapped[DailySettlement] = relationship(
        "DailySettlement",
        back_populates="bank_transfers",
        lazy="select",
    )

    __table_args__ = (
        UniqueConstraint("settlement_id", "portion", name="uq_transfer_settlement_portion"),
    )

    def __repr__(self) -> str:
        return (
            f"<BankTransferRecord(portion={self.portion!r}, amount={self.amount}, "
            f"status={self.status!r})>"
        )
