"""Pydantic schemas for settlement requests and responses."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class GenerateRequest(BaseModel):
    """Request body to generate the settlement for one day."""

    settlement_date: date = Field(
        ...,
        description="Calendar day whose completed payments are settled",
    )
    operator: str = Field("system", max_length=100)


class ProcessRequest(BaseModel):
    """Request body to process a pending settlement."""

    operator: str = Field(..., min_length=1, max_length=100)
    initiate_payouts: bool = True
    initiate_bank_transfers: bool = False
    confirmation_secret: Optional[str] = Field(
        None,
        description="Required when initiate_bank_transfers is true",
    )


class RetryRequest(BaseModel):
    operator: str = Field(..., min_length=1, max_length=100)


class FailRequest(BaseModel):
    operator: str = Field(..., min_length=1, max_length=100)
    reason: str = Field(..., min_length=1)


class SettlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    settlement_date: date
    total_collected: Decimal
    sha_amount: Decimal
    mwu_amount: Decimal
    total_delegate_commissions: Decimal
    total_coordinator_commissions: Decimal
    total_payments: int
    unique_members: int
    status: str
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


class PayoutSubmissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payout_id: UUID
    success: bool
    conversation_id: Optional[str] = None
    error: Optional[str] = None


class PayoutBatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_payouts: int = 0
    successful_payouts: int = 0
    failed_payouts: int = 0
    results: list[PayoutSubmissionResponse] = []


class TransferResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    portion: str
    amount: Decimal
    success: bool
    transaction_id: Optional[str] = None
    message: str = ""
    skipped: bool = False


class SettlementTransfersResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sha_transfer: TransferResultResponse
    mwu_transfer: TransferResultResponse
    success: bool


class ProcessResponse(BaseModel):
    """Outcome of one ``process`` call.

    ``status`` stays ``processing`` when any payout or transfer did not go
    through; retry the failed payouts once the cause is fixed.
    """

    model_config = ConfigDict(from_attributes=True)

    settlement_id: UUID
    status: str
    payouts: Optional[PayoutBatchResponse] = None
    transfers: Optional[SettlementTransfersResponse] = None
    errors: list[str] = []


class RetryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    retried_payouts: int = 0
    successful_retries: int = 0
    failed_retries: int = 0
    results: list[PayoutSubmissionResponse] = []


class BreakdownRowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payout_id: UUID
    recipient_id: UUID
    recipient_name: Optional[str] = None
    recipient_type: str
    amount: Decimal
    payment_count: int
    status: str


class CommissionBreakdownResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    settlement_id: UUID
    delegates: list[BreakdownRowResponse] = []
    coordinators: list[BreakdownRowResponse] = []
    total_delegate_commissions: Decimal
    total_coordinator_commissions: Decimal


class PayoutStatisticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_payouts: int = 0
    pending_payouts: int = 0
    processing_payouts: int = 0
    processed_payouts: int = 0
    failed_payouts: int = 0
    total_amount: Decimal = Decimal("0")
    pending_amount: Decimal = Decimal("0")
    processing_amount: Decimal = Decimal("0")
    processed_amount: Decimal = Decimal("0")
    failed_amount: Decimal = Decimal("0")


class SettlementSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    start_date: date
    end_date: date
    total_settlements: int = 0
    total_collected: Decimal = Decimal("0")
    total_sha_amount: Decimal = Decimal("0")
    total_mwu_amount: Decimal = Decimal("0")
    total_commissions: Decimal = Decimal("0")
    total_payments: int = 0
    pending_settlements: int = 0
    processing_settlements: int = 0
    completed_settlements: int = 0
    failed_settlements: int = 0
    average_daily_collection: Decimal = Decimal("0")
