"""Settlement endpoints.

Generate a day's settlement, process it (commission payouts and, with the
confirmation secret, the SHA/MWU bank transfers), retry failed payouts,
resume an interrupted run, and query totals, breakdowns and payout statistics.

Domain errors are turned into JSON responses by the handler in ``main``.
"""

from __future__ import annotations

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from settlement_engine.api.deps import get_settlement_service
from settlement_engine.core.logging import get_logger
from settlement_engine.models.daily_settlement import DailySettlement
from settlement_engine.schemas.settlement import (
    CommissionBreakdownResponse,
    FailRequest,
    GenerateRequest,
    PayoutBatchResponse,
    PayoutStatisticsResponse,
    ProcessRequest,
    ProcessResponse,
    RetryRequest,
    RetryResponse,
    SettlementResponse,
    SettlementSummaryResponse,
)
from settlement_engine.services.settlement.service import SettlementService

logger = get_logger(__name__)

router = APIRouter()


@router.post("/generate", response_model=SettlementResponse, status_code=201)
def generate_settlement(
    body: GenerateRequest,
    service: SettlementService = Depends(get_settlement_service),
) -> DailySettlement:
    """Generate the settlement for a day.  409 if it already exists."""
    logger.info("Settlement generation requested for %s by %s", body.settlement_date, body.operator)
    return service.generate(body.settlement_date, operator=body.operator)


@router.post("/auto-generate", response_model=List[SettlementResponse])
def auto_generate_settlements(
    days_back: Optional[int] = Query(None, ge=1, le=90),
    service: SettlementService = Depends(get_settlement_service),
) -> list[DailySettlement]:
    """Back-fill missing settlements for recent days that have payments."""
    return service.auto_generate_settlements(days_back)


@router.get("/pending", response_model=List[SettlementResponse])
def list_pending_settlements(
    service: SettlementService = Depends(get_settlement_service),
) -> list[DailySettlement]:
    return service.get_pending_settlements()


@router.get("/summary", response_model=SettlementSummaryResponse)
def settlement_summary(
    start_date: date = Query(..., description="Range start (inclusive)"),
    end_date: date = Query(..., description="Range end (inclusive)"),
    service: SettlementService = Depends(get_settlement_service),
) -> SettlementSummaryResponse:
    summary = service.get_settlement_summary(start_date, end_date)
    return SettlementSummaryResponse.model_validate(summary)


@router.get("/stats", response_model=SettlementSummaryResponse)
def overall_stats(
    days: int = Query(30, ge=1, le=366),
    service: SettlementService = Depends(get_settlement_service),
) -> SettlementSummaryResponse:
    return SettlementSummaryResponse.model_validate(service.get_overall_stats(days))


@router.get("/by-date/{settlement_date}", response_model=SettlementResponse)
def get_settlement_by_date(
    settlement_date: date,
    service: SettlementService = Depends(get_settlement_service),
) -> DailySettlement:
    return service.get_settlement_by_date(settlement_date)


@router.get("/{settlement_id}", response_model=SettlementResponse)
def get_settlement(
    settlement_id: UUID,
    service: SettlementService = Depends(get_settlement_service),
) -> DailySettlement:
    return service.get_settlement(settlement_id)


@router.post("/{settlement_id}/process", response_model=ProcessResponse)
async def process_settlement(
    settlement_id: UUID,
    body: ProcessRequest,
    service: SettlementService = Depends(get_settlement_service),
) -> ProcessResponse:
    """Submit payouts and, optionally, run the bank transfers.

    Returns 200 even when some payouts failed; check ``status`` and the
    per-payout results.
    """
    result = await service.process(
        settlement_id,
        operator=body.operator,
        initiate_payouts=body.initiate_payouts,
        initiate_bank_transfers=body.initiate_bank_transfers,
        confirmation_secret=body.confirmation_secret,
    )
    return ProcessResponse.model_validate(result)


@router.post("/{settlement_id}/retry-payouts", response_model=RetryResponse)
async def retry_failed_payouts(
    settlement_id: UUID,
    body: RetryRequest,
    service: SettlementService = Depends(get_settlement_service),
) -> RetryResponse:
    result = await service.retry_failed_payouts(settlement_id, operator=body.operator)
    return RetryResponse.model_validate(result)


@router.post("/{settlement_id}/resume-payouts", response_model=PayoutBatchResponse)
async def resume_payouts(
    settlement_id: UUID,
    body: RetryRequest,
    service: SettlementService = Depends(get_settlement_service),
) -> PayoutBatchResponse:
    """Submit payouts a cancelled or crashed run left pending."""
    result = await service.resume_payouts(settlement_id, operator=body.operator)
    return PayoutBatchResponse.model_validate(result)


@router.post("/{settlement_id}/fail", response_model=SettlementResponse)
def mark_settlement_failed(
    settlement_id: UUID,
    body: FailRequest,
    service: SettlementService = Depends(get_settlement_service),
) -> DailySettlement:
    """Mark a settlement stuck in processing as failed."""
    return service.mark_settlement_failed(settlement_id, body.operator, body.reason)


@router.get("/{settlement_id}/commissions", response_model=CommissionBreakdownResponse)
def commission_breakdown(
    settlement_id: UUID,
    service: SettlementService = Depends(get_settlement_service),
) -> CommissionBreakdownResponse:
    breakdown = service.get_commission_breakdown(settlement_id)
    return CommissionBreakdownResponse.model_validate(breakdown)


@router.get("/{settlement_id}/payout-statistics", response_model=PayoutStatisticsResponse)
def payout_statistics(
    settlement_id: UUID,
    service: SettlementService = Depends(get_settlement_service),
) -> PayoutStatisticsResponse:
    return PayoutStatisticsResponse.model_validate(service.get_payout_statistics(settlement_id))
