"""Audit trail writer.

Entries are written through their own short-lived session so that an audit
row survives even when the caller's transaction is rolled back.  A failed
audit write is logged and swallowed: losing an audit line must never abort
a settlement run.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement_engine.core.logging import get_logger
from settlement_engine.models.audit_log import AuditLog

logger = get_logger(__name__)


def _jsonable(value: Any) -> Any:
    """Convert Decimals, UUIDs and dates so the value fits a JSON column."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


class AuditTrail:
    """Appends rows to ``audit_logs``."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def log_event(
        self,
        action: str,
        resource_type: str,
        resource_id: Any = None,
        details: Optional[dict[str, Any]] = None,
        severity: str = "info",
        user_id: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """Persist one audit entry.  Returns ``None`` if the write failed."""
        db = self.session_factory()
        try:
            entry = AuditLog(
                id=uuid.uuid4(),
                user_id=user_id,
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                details=_jsonable(details) if details else None,
                severity=severity,
            )
            db.add(entry)
            db.commit()
            db.refresh(entry)
            return entry
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Failed to write audit entry action=%s: %s", action, exc)
            return None
        finally:
            db.close()

    def entries_for(self, resource_type: str, resource_id: Any) -> list[AuditLog]:
        """Return audit entries for one resource, newest first."""
        db = self.session_factory()
        try:
            return (
                db.query(AuditLog)
                .filter(
                    AuditLog.resource_type == resource_type,
                    AuditLog.resource_id == str(resource_id),
                )
                .order_by(AuditLog.created_at.desc())
                .all()
            )
        finally:
            db.close()
