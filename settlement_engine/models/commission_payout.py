"""Commission payout model: one disbursement per recipient per settlement."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_engine.core.database import Base

PAYOUT_STATUSES = ("pending", "processing", "processed", "failed")
RECIPIENT_TYPES = ("delegate", "coordinator")


class CommissionPayout(Base):
    """What one delegate or coordinator is owed for a settlement.

    Lifecycle: ``pending`` when generated, ``processing`` once the gateway
    accepted the submission (``conversation_id`` is then set), and finally
    ``processed`` or ``failed`` when the gateway's asynchronous result
    arrives.
    """

    __tablename__ = "commission_payouts"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    settlement_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("daily_settlements.id"),
        nullable=False,
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("members.id"),
        nullable=False,
        index=True,
    )
    recipient_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="delegate | coordinator",
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
    )
    payment_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="pending",
        comment="pending | processing | processed | failed",
    )
    payment_method: Mapped[Optional[str]] = mapped_column(
        String(50),
    )
    transaction_reference: Mapped[Optional[str]] = mapped_column(
        String(100),
    )
    conversation_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    originator_conversation_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(
        Text,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
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
    settlement: Mapped[DailySettlement] = relationship(
        "DailySettlement",
        back_populates="payouts",
        lazy="joined",
    )
    recipient: Mapped[Member] = relationship(
        "Member",
        lazy="joined",
    )

    __table_args__ = (
        UniqueConstraint(
            "settlement_id",
            "recipient_id",
            "recipient_type",
            name="uq_payout_settlement_recipient",
        ),
        CheckConstraint("amount > 0", name="ck_payout_amount_positive"),
        Index("ix_payout_conversation_id", "conversation_id", unique=True),
        Index("ix_payout_settlement_status", "settlement_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<CommissionPayout(recipient_type={self.recipient_type!r}, "
            f"amount={self.amount}, status={self.status!r})>"
        )
