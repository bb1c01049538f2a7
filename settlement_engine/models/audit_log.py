"""Audit log model: append-only record of settlement-relevant events."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Index, JSON, String, func
from sqlalchemy.orm import Mapped, mapped_column

from settlement_engine.core.database import Base


class AuditLog(Base):
    """Something an operator may need to look at later.

    Generation, payout submissions and callbacks, settlement errors and
    manual-review flags raised by the recovery orchestrator all land here.
    """

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    action: Mapped[str] = mapped_column(
        String(60),
        nullable=False,
    )
    resource_type: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
    )
    resource_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )
    severity: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="info",
        comment="info | warning | error | critical",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_audit_resource", "resource_type", "resource_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLog(action={self.action!r}, resource_type={self.resource_type!r}, "
            f"severity={self.severity!r})>"
        )
