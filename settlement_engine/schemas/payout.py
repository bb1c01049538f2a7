"""Pydantic schemas for commission payouts and gateway result callbacks."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SubmitPayoutRequest(BaseModel):
    operator: str = Field(..., min_length=1, max_length=100)


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    settlement_id: UUID
    recipient_id: UUID
    recipient_type: str
    amount: Decimal
    payment_count: int
    status: str
    payment_method: Optional[str] = None
    transaction_reference: Optional[str] = None
    conversation_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CommissionSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    recipient_id: UUID
    start_date: date
    end_date: date
    total_amount: Decimal = Decimal("0")
    total_payouts: int = 0
    pending_amount: Decimal = Decimal("0")
    processing_amount: Decimal = Decimal("0")
    processed_amount: Decimal = Decimal("0")
    failed_amount: Decimal = Decimal("0")


class GatewayResultCallback(BaseModel):
    """Asynchronous disbursement result posted by the payment gateway.

    ``result_code`` 0 means the payment went through; anything else is a
    failure described by ``result_desc``.
    """

    conversation_id: str = Field(..., min_length=1)
    originator_conversation_id: Optional[str] = None
    result_code: int
    result_desc: str = ""
    transaction_id: Optional[str] = Field(
        None,
        description="Gateway receipt; used as the payout's transaction reference",
    )


class CallbackAck(BaseModel):
    """Acknowledgement returned to the gateway.  Always accepted."""

    result_code: int = 0
    result_desc: str = "Accepted"
    payout_id: Optional[UUID] = None
    payout_status: Optional[str] = None
