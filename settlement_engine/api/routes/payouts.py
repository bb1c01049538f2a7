"""Commission payout endpoints.

Recipient payout history, single-payout submission, and the result callback the payment gateway posts
once a disbursement has actually gone through (or not).
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import date
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from settlement_engine.api.deps import get_settlement_service
from settlement_engine.core.logging import get_logger
from settlement_engine.models.commission_payout import CommissionPayout
from settlement_engine.schemas.payout import (
    CallbackAck,
    CommissionSummaryResponse,
    GatewayResultCallback,
    PayoutResponse,
    SubmitPayoutRequest,
)
from settlement_engine.schemas.settlement import PayoutSubmissionResponse
from settlement_engine.services.settlement.service import SettlementService

logger = get_logger(__name__)

router = APIRouter()

GATEWAY_SUCCESS = 0


@router.get("/recipients/{recipient_id}", response_model=List[PayoutResponse])
def recipient_payouts(
    recipient_id: UUID,
    limit: int = Query(50, ge=1, le=500),
    service: SettlementService = Depends(get_settlement_service),
) -> list[CommissionPayout]:
    return service.get_commission_payouts(recipient_id, limit)


@router.get("/recipients/{recipient_id}/summary", response_model=CommissionSummaryResponse)
def recipient_commission_summary(
    recipient_id: UUID,
    start_date: date = Query(...),
    end_date: date = Query(...),
    service: SettlementService = Depends(get_settlement_service),
) -> CommissionSummaryResponse:
    summary = service.get_commission_summary(recipient_id, start_date, end_date)
    return CommissionSummaryResponse(
        recipient_id=recipient_id,
        start_date=start_date,
        end_date=end_date,
        **asdict(summary),
    )


@router.post("/{payout_id}/submit", response_model=PayoutSubmissionResponse)
async def submit_payout(
    payout_id: UUID,
    body: SubmitPayoutRequest,
    service: SettlementService = Depends(get_settlement_service),
) -> PayoutSubmissionResponse:
    """Submit one pending payout outside a settlement run."""
    submission = await service.submit_payout(payout_id, operator=body.operator)
    return PayoutSubmissionResponse.model_validate(submission)


@router.post("/callback/result", response_model=CallbackAck)
def gateway_result_callback(
    body: GatewayResultCallback,
    service: SettlementService = Depends(get_settlement_service),
) -> CallbackAck:
    """Resolve the payout a gateway result refers to.

    Always acknowledged, so the gateway does not keep re-posting results for
    payouts we do not know about.
    """
    logger.info(
        "Gateway result received: conversation=%s code=%s desc=%s",
        body.conversation_id,
        body.result_code,
        body.result_desc,
    )
    if body.result_code == GATEWAY_SUCCESS:
        payout = service.mark_payout_processed(
            transaction_reference=body.transaction_id or body.conversation_id,
            conversation_id=body.conversation_id,
        )
    else:
        payout = service.mark_payout_failed(
            reason=body.result_desc or "Payment failed",
            conversation_id=body.conversation_id,
            result_code=str(body.result_code),
        )

    if payout is None:
        return CallbackAck(result_desc="Accepted (unknown conversation id)")
    return CallbackAck(payout_id=payout.id, payout_status=payout.status)
