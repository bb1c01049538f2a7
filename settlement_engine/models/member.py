"""Member model: the recipient directory the settlement engine reads from."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.core.database import Base


class Member(Base):
    """A registered person: paying member, delegate or coordinator.

    Membership CRUD lives elsewhere; here we only need names, contacts and
    the member's *current* delegate/coordinator assignment.
    """

    __tablename__ = "members"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    first_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    last_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    phone_number: Mapped[Optional[str]] = mapped_column(
        String(20),
    )
    email: Mapped[Optional[str]] = mapped_column(
        String(255),
    )
    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="member",
        comment="member | delegate | coordinator | admin",
    )
    delegate_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("members.id"),
        nullable=True,
    )
    coordinator_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("members.id"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __repr__(self) -> str:
        return f"<Member(id={self.id!r}, role={self.role!r})>"
