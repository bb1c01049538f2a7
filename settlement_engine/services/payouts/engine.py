"""Commission payout engine.

Creates one payout per commission recipient when a settlement is generated,
submits payouts to the payment gateway, and resolves them when the gateway's
asynchronous result arrives.

Submission and resolution are two separate steps:

  submit      pending -> processing   (gateway accepted, conversation id stored)
  callback    processing -> processed | failed

A submission that the gateway rejects (after retries) goes straight to
``failed``.  Every payout is committed on its own so one recipient's failure
never rolls back another's submission.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from settlement_engine.core.exceptions import (
    GatewayError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from settlement_engine.core.logging import get_logger
from settlement_engine.models.commission_payout import CommissionPayout
from settlement_engine.models.daily_settlement import DailySettlement
from settlement_engine.services.audit import AuditTrail
from settlement_engine.services.payouts.gateway import (
    GatewaySubmission,
    PaymentGatewayClient,
    as_submission,
)
from settlement_engine.services.recovery.defaults import COMMISSION_PAYOUT
from settlement_engine.services.recovery.orchestrator import RetryOrchestrator
from settlement_engine.services.settlement.calculator import RecipientCommission
from settlement_engine.services.settlement.repositories import (
    RecipientDirectory,
    RecipientInfo,
)

logger = get_logger(__name__)

ZERO = Decimal("0")


@dataclass
class PayoutSubmission:
    """Outcome of handing one payout to the gateway (not of the payment)."""

    payout_id: uuid.UUID
    success: bool
    conversation_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PayoutBatchResult:
    total_payouts: int = 0
    successful_payouts: int = 0
    failed_payouts: int = 0
    results: list[PayoutSubmission] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def all_submitted(self) -> bool:
        return self.error is None and self.failed_payouts == 0


@dataclass
class PayoutRetryResult:
    retried_payouts: int = 0
    successful_retries: int = 0
    failed_retries: int = 0
    results: list[PayoutSubmission] = field(default_factory=list)


@dataclass
class PayoutStatistics:
    total_payouts: int = 0
    pending_payouts: int = 0
    processing_payouts: int = 0
    processed_payouts: int = 0
    failed_payouts: int = 0
    total_amount: Decimal = ZERO
    pending_amount: Decimal = ZERO
    processing_amount: Decimal = ZERO
    processed_amount: Decimal = ZERO
    failed_amount: Decimal = ZERO


@dataclass
class CommissionSummary:
    total_amount: Decimal = ZERO
    total_payouts: int = 0
    pending_amount: Decimal = ZERO
    processing_amount: Decimal = ZERO
    processed_amount: Decimal = ZERO
    failed_amount: Decimal = ZERO


class CommissionPayoutEngine:
    """Creates, submits and tracks commission payouts."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayClient,
        directory: RecipientDirectory,
        orchestrator: Optional[RetryOrchestrator] = None,
        audit: Optional[AuditTrail] = None,
        payment_method: str = "mpesa",
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.directory = directory
        self.orchestrator = orchestrator
        self.audit = audit
        self.payment_method = payment_method

    # ── Creation ─────────────────────────────────────────────────────

    def create_payouts(
        self,
        settlement_id: uuid.UUID,
        breakdown: Iterable[RecipientCommission],
    ) -> list[CommissionPayout]:
        """Add one pending payout per recipient with a positive commission.

        Runs inside the caller's transaction: rows are flushed, not committed.
        """
        payouts: list[CommissionPayout] = []
        for row in breakdown:
            if row.total_commission <= ZERO:
                continue
            payout = CommissionPayout(
                id=uuid.uuid4(),
                settlement_id=settlement_id,
                recipient_id=row.recipient_id,
                recipient_type=row.recipient_type,
                amount=row.total_commission,
                payment_count=row.payment_count,
                status="pending",
            )
            self.db.add(payout)
            payouts.append(payout)

        self.db.flush()
        return payouts

    # ── Submission ───────────────────────────────────────────────────

    async def submit(self, payout_id: uuid.UUID, operator: str = "system") -> PayoutSubmission:
        """Submit a single pending payout to the gateway."""
        payout = self._get(payout_id)
        if payout.status != "pending":
            raise InvalidStateError(
                f"Payout is already {payout.status}", "PAYOUT_NOT_PENDING"
            )
        return await self._submit(payout, operator)

    async def process_individual_payout(
        self, payout_id: uuid.UUID, operator: str = "system"
    ) -> PayoutSubmission:
        """Operator-triggered submission of one payout outside a batch run."""
        logger.info(
            "Individual payout submission requested: payout=%s by=%s", payout_id, operator
        )
        return await self.submit(payout_id, operator)

    async def process_settlement_payouts(
        self, settlement_id: uuid.UUID, operator: str = "system"
    ) -> PayoutBatchResult:
        """Submit every pending payout of a settlement, one after another."""
        pending = (
            self.db.query(CommissionPayout)
            .filter(
                CommissionPayout.settlement_id == settlement_id,
                CommissionPayout.status == "pending",
            )
            .order_by(CommissionPayout.recipient_type, CommissionPayout.amount.desc())
            .all()
        )
        result = await self._submit_all(pending, operator)

        logger.info(
            "Settlement payouts processed: settlement=%s total=%d submitted=%d failed=%d",
            settlement_id,
            result.total_payouts,
            result.successful_payouts,
            result.failed_payouts,
        )
        return result

    async def retry_failed_payouts(
        self, settlement_id: uuid.UUID, operator: str = "system"
    ) -> PayoutRetryResult:
        """Reset failed payouts to pending and submit exactly those again."""
        failed = (
            self.db.query(CommissionPayout)
            .filter(
                CommissionPayout.settlement_id == settlement_id,
                CommissionPayout.status == "failed",
            )
            .order_by(CommissionPayout.recipient_type, CommissionPayout.amount.desc())
            .all()
        )
        if not failed:
            return PayoutRetryResult()

        for payout in failed:
            payout.status = "pending"
            payout.failure_reason = None
            payout.conversation_id = None
            payout.originator_conversation_id = None
        self.db.commit()

        batch = await self._submit_all(failed, operator)

        logger.info(
            "Failed payouts retried: settlement=%s retried=%d submitted=%d failed=%d by=%s",
            settlement_id,
            len(failed),
            batch.successful_payouts,
            batch.failed_payouts,
            operator,
        )
        return PayoutRetryResult(
            retried_payouts=len(failed),
            successful_retries=batch.successful_payouts,
            failed_retries=batch.failed_payouts,
            results=batch.results,
        )

    async def _submit_all(
        self, payouts: list[CommissionPayout], operator: str
    ) -> PayoutBatchResult:
        result = PayoutBatchResult(total_payouts=len(payouts))
        for payout in payouts:
            submission = await self._submit(payout, operator)
            result.results.append(submission)
            if submission.success:
                result.successful_payouts += 1
            else:
                result.failed_payouts += 1
        return result

    async def _submit(self, payout: CommissionPayout, operator: str) -> PayoutSubmission:
        recipient = self.directory.get(payout.recipient_id)
        try:
            if recipient is None or not recipient.phone_number:
                raise ValidationError(
                    "Recipient phone number not found", "RECIPIENT_PHONE_MISSING"
                )
            submission = await self._call_gateway(payout, recipient)
            if submission is None or not submission.conversation_id:
                raise GatewayError("Gateway returned no conversation id")
        except Exception as exc:
            # One recipient's failure must not stop the rest of the batch.
            payout.status = "failed"
            payout.failure_reason = str(exc)
            self.db.commit()
            logger.error(
                "Commission payout failed: payout=%s recipient=%s amount=%s error=%s",
                payout.id,
                payout.recipient_id,
                payout.amount,
                exc,
            )
            if self.orchestrator is not None:
                await self.orchestrator.handle_payout_error(
                    exc,
                    payout.id,
                    payout.settlement_id,
                    {"operator": operator, "recipient_type": payout.recipient_type},
                )
            return PayoutSubmission(payout_id=payout.id, success=False, error=str(exc))

        payout.status = "processing"
        payout.conversation_id = submission.conversation_id
        payout.originator_conversation_id = submission.originator_conversation_id
        payout.payment_method = self.payment_method
        self.db.commit()

        logger.info(
            "Commission payout submitted: payout=%s recipient=%s amount=%s conversation=%s",
            payout.id,
            payout.recipient_id,
            payout.amount,
            submission.conversation_id,
        )
        self._audit(
            "commission_payout_initiated",
            payout,
            {"conversation_id": submission.conversation_id, "amount": payout.amount},
            user_id=operator,
        )
        return PayoutSubmission(
            payout_id=payout.id,
            success=True,
            conversation_id=submission.conversation_id,
        )

    async def _call_gateway(
        self, payout: CommissionPayout, recipient: RecipientInfo
    ) -> GatewaySubmission:
        amount = payout.amount
        contact = recipient.phone_number
        reference = str(payout.id)

        async def call() -> GatewaySubmission:
            return as_submission(await self.gateway.submit(amount, contact, reference))

        if self.orchestrator is None:
            return await call()
        return await self.orchestrator.execute_with_recovery(
            COMMISSION_PAYOUT,
            call,
            {
                "payout_id": str(payout.id),
                "settlement_id": str(payout.settlement_id),
                "recipient_type": payout.recipient_type,
            },
        )

    # ── Resolution (gateway callbacks) ───────────────────────────────

    def mark_as_processed(
        self,
        payout_id: uuid.UUID,
        transaction_reference: str,
        payment_method: Optional[str] = None,
    ) -> CommissionPayout:
        """Record a successful disbursement.  Repeated calls are no-ops."""
        payout = self._get(payout_id)
        if payout.status == "processed":
            logger.info("Payout %s already processed, ignoring duplicate result", payout.id)
            return payout

        payout.status = "processed"
        payout.processed_at = datetime.utcnow()
        payout.transaction_reference = transaction_reference
        payout.failure_reason = None
        if payment_method:
            payout.payment_method = payment_method
        self.db.commit()

        logger.info(
            "Commission payout processed: payout=%s reference=%s",
            payout.id,
            transaction_reference,
        )
        self._audit(
            "commission_payout_completed",
            payout,
            {"transaction_reference": transaction_reference, "amount": payout.amount},
        )
        return payout

    def mark_as_failed(self, payout_id: uuid.UUID, reason: str) -> CommissionPayout:
        """Record a failed disbursement.

        Never downgrades a payout that was already paid; a repeated failure
        result leaves the first recorded reason in place.
        """
        payout = self._get(payout_id)
        if payout.status == "processed":
            logger.warning(
                "Ignoring failure result for already processed payout %s: %s",
                payout.id,
                reason,
            )
            return payout
        if payout.status == "failed":
            return payout

        payout.status = "failed"
        payout.failure_reason = reason
        self.db.commit()

        logger.warning("Commission payout failed: payout=%s reason=%s", payout.id, reason)
        self._audit(
            "commission_payout_failed",
            payout,
            {"reason": reason, "amount": payout.amount},
            severity="warning",
        )
        return payout

    def find_by_conversation_id(self, conversation_id: str) -> Optional[CommissionPayout]:
        return (
            self.db.query(CommissionPayout)
            .filter(CommissionPayout.conversation_id == conversation_id)
            .one_or_none()
        )

    def complete_from_callback(
        self,
        conversation_id: str,
        transaction_reference: str,
        transaction_id: Optional[str] = None,
    ) -> Optional[CommissionPayout]:
        """Resolve the payout a successful gateway result refers to."""
        payout = self.find_by_conversation_id(conversation_id)
        if payout is None:
            logger.warning("Commission payout not found for conversation id %s", conversation_id)
            return None
        logger.info(
            "Gateway success for conversation=%s transaction=%s",
            conversation_id,
            transaction_id,
        )
        return self.mark_as_processed(payout.id, transaction_reference)

    def fail_from_callback(
        self, conversation_id: str, result_code: Any, result_desc: str
    ) -> Optional[CommissionPayout]:
        """Resolve the payout a failed gateway result refers to."""
        payout = self.find_by_conversation_id(conversation_id)
        if payout is None:
            logger.warning("Commission payout not found for conversation id %s", conversation_id)
            return None
        return self.mark_as_failed(payout.id, f"Gateway error {result_code}: {result_desc}")

    # ── Queries ──────────────────────────────────────────────────────

    def payouts_for_settlement(self, settlement_id: uuid.UUID) -> list[CommissionPayout]:
        return (
            self.db.query(CommissionPayout)
            .filter(CommissionPayout.settlement_id == settlement_id)
            .order_by(CommissionPayout.recipient_type, CommissionPayout.amount.desc())
            .all()
        )

    def payouts_for_recipient(
        self, recipient_id: uuid.UUID, limit: int = 50
    ) -> list[CommissionPayout]:
        return (
            self.db.query(CommissionPayout)
            .filter(CommissionPayout.recipient_id == recipient_id)
            .order_by(CommissionPayout.created_at.desc())
            .limit(limit)
            .all()
        )

    def get_payout_statistics(self, settlement_id: uuid.UUID) -> PayoutStatistics:
        """Counts and amounts per status.  Read-only."""
        stats = PayoutStatistics()
        for payout in self.payouts_for_settlement(settlement_id):
            amount = payout.amount
            stats.total_payouts += 1
            stats.total_amount += amount
            status = payout.status
            setattr(stats, f"{status}_payouts", getattr(stats, f"{status}_payouts") + 1)
            setattr(stats, f"{status}_amount", getattr(stats, f"{status}_amount") + amount)
        return stats

    def get_commission_summary(
        self, recipient_id: uuid.UUID, start: date, end: date
    ) -> CommissionSummary:
        payouts = (
            self.db.query(CommissionPayout)
            .join(DailySettlement, CommissionPayout.settlement_id == DailySettlement.id)
            .filter(
                CommissionPayout.recipient_id == recipient_id,
                DailySettlement.settlement_date >= start,
                DailySettlement.settlement_date <= end,
            )
            .all()
        )
        summary = CommissionSummary(total_payouts=len(payouts))
        for payout in payouts:
            summary.total_amount += payout.amount
            field_name = f"{payout.status}_amount"
            setattr(summary, field_name, getattr(summary, field_name) + payout.amount)
        return summary

    # ── Private helpers ──────────────────────────────────────────────

    def get_payout(self, payout_id: uuid.UUID) -> CommissionPayout:
        return self._get(payout_id)

    def _get(self, payout_id: uuid.UUID) -> CommissionPayout:
        payout = self.db.get(CommissionPayout, payout_id)
        if payout is None:
            raise NotFoundError("Commission payout not found", "PAYOUT_NOT_FOUND")
        return payout

    def _audit(
        self,
        action: str,
        payout: CommissionPayout,
        details: dict[str, Any],
        severity: str = "info",
        user_id: Optional[str] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log_event(
            action=action,
            resource_type="commission_payout",
            resource_id=payout.id,
            details={
                **details,
                "settlement_id": payout.settlement_id,
                "recipient_id": payout.recipient_id,
                "recipient_type": payout.recipient_type,
            },
            severity=severity,
            user_id=user_id,
        )
