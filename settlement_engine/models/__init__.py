"""SQLAlchemy models for the settlement and commission engine."""

from settlement_engine.models.member import Member
from settlement_engine.models.payment import Payment
from settlement_engine.models.daily_settlement import DailySettlement
from settlement_engine.models.commission_payout import CommissionPayout
from settlement_engine.models.bank_transfer import BankTransferRecord
from settlement_engine.models.audit_log import AuditLog

__all__ = [
    "Member",
    "Payment",
    "DailySettlement",
    "CommissionPayout",
    "BankTransferRecord",
    "AuditLog",
]
