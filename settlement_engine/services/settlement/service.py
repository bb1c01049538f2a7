"""Settlement service: the lifecycle of a daily settlement.

  generate   calculator snapshot -> settlement row + payout rows, one commit
  process    pending -> processing (committed first) -> payouts, transfers
             -> completed when everything attempted went through
  retry      re-submit failed payouts; status is left alone
  resume     submit payouts an interrupted run never reached

A settlement that had any failure during ``process`` stays in
``processing`` until an operator retries its payouts or marks it failed.
Nothing moves a settlement into ``failed`` automatically.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from settlement_engine.core.config import Settings
from settlement_engine.core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from settlement_engine.core.logging import get_logger
from settlement_engine.models.commission_payout import CommissionPayout
from settlement_engine.models.daily_settlement import DailySettlement
from settlement_engine.services.audit import AuditTrail
from settlement_engine.services.payouts.engine import (
    CommissionPayoutEngine,
    CommissionSummary,
    PayoutBatchResult,
    PayoutRetryResult,
    PayoutStatistics,
    PayoutSubmission,
)
from settlement_engine.services.recovery.defaults import DATABASE_TRANSACTION
from settlement_engine.services.recovery.orchestrator import RetryOrchestrator
from settlement_engine.services.settlement.calculator import (
    SettlementCalculator,
    parse_settlement_date,
)
from settlement_engine.services.settlement.locks import SettlementLocks
from settlement_engine.services.transfers.bank import (
    BankTransferGateway,
    SettlementTransferResult,
)

logger = get_logger(__name__)

ZERO = Decimal("0")


def local_today(tz_name: str) -> date:
    """Today's calendar date in the settlement timezone."""
    return datetime.now(ZoneInfo(tz_name)).date()


@dataclass
class ProcessResult:
    settlement_id: uuid.UUID
    status: str
    payouts: Optional[PayoutBatchResult] = None
    transfers: Optional[SettlementTransferResult] = None
    errors: list[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status == "completed"


@dataclass
class BreakdownRow:
    payout_id: uuid.UUID
    recipient_id: uuid.UUID
    recipient_name: Optional[str]
    recipient_type: str
    amount: Decimal
    payment_count: int
    status: str


@dataclass
class CommissionBreakdown:
    settlement_id: uuid.UUID
    delegates: list[BreakdownRow] = field(default_factory=list)
    coordinators: list[BreakdownRow] = field(default_factory=list)

    @property
    def total_delegate_commissions(self) -> Decimal:
        return sum((row.amount for row in self.delegates), ZERO)

    @property
    def total_coordinator_commissions(self) -> Decimal:
        return sum((row.amount for row in self.coordinators), ZERO)


@dataclass
class SettlementSummary:
    start_date: date
    end_date: date
    total_settlements: int = 0
    total_collected: Decimal = ZERO
    total_sha_amount: Decimal = ZERO
    total_mwu_amount: Decimal = ZERO
    total_commissions: Decimal = ZERO
    total_payments: int = 0
    pending_settlements: int = 0
    processing_settlements: int = 0
    completed_settlements: int = 0
    failed_settlements: int = 0

    @property
    def average_daily_collection(self) -> Decimal:
        if not self.total_settlements:
            return ZERO
        return (self.total_collected / self.total_settlements).quantize(Decimal("0.01"))


class SettlementService:
    """Generates, processes and reports on daily settlements."""

    def __init__(
        self,
        db: Session,
        calculator: SettlementCalculator,
        payout_engine: CommissionPayoutEngine,
        transfer_gateway: BankTransferGateway,
        config: Settings,
        orchestrator: Optional[RetryOrchestrator] = None,
        locks: Optional[SettlementLocks] = None,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        self.db = db
        self.calculator = calculator
        self.payout_engine = payout_engine
        self.transfer_gateway = transfer_gateway
        self.config = config
        self.orchestrator = orchestrator
        self.locks = locks or SettlementLocks()
        self.audit = audit

    # ── Generation ───────────────────────────────────────────────────

    def generate(
        self, settlement_date: Union[date, datetime, str], operator: str = "system"
    ) -> DailySettlement:
        """Create the settlement and its payouts for one day, atomically.

        Raises:
            ValidationError: Bad date or inconsistent ledger amounts.
            ConflictError: A settlement already exists for the date, either
                found up front or lost to a concurrent insert.
        """
        day = parse_settlement_date(settlement_date)
        if self._find_by_date(day) is not None:
            raise ConflictError(
                f"Settlement already exists for {day}", "SETTLEMENT_EXISTS"
            )

        totals = self.calculator.calculate(day)
        if not totals.is_balanced():
            raise ValidationError(
                f"Settlement totals for {day} do not reconcile", "UNBALANCED_SETTLEMENT"
            )

        settlement = DailySettlement(
            id=uuid.uuid4(),
            settlement_date=day,
            total_collected=totals.total_collected,
            sha_amount=totals.sha_amount,
            mwu_amount=totals.mwu_amount,
            total_delegate_commissions=totals.total_delegate_commissions,
            total_coordinator_commissions=totals.total_coordinator_commissions,
            total_payments=totals.total_payments,
            unique_members=totals.unique_members,
            status="pending",
        )

        try:
            self.db.add(settlement)
            self.db.flush()
            payouts = self.payout_engine.create_payouts(settlement.id, totals.recipients)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning("Concurrent generation detected for %s", day)
            raise ConflictError(
                f"Settlement already exists for {day}", "SETTLEMENT_EXISTS"
            )
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Settlement generated: id=%s date=%s collected=%s payments=%d payouts=%d",
            settlement.id,
            day,
            settlement.total_collected,
            settlement.total_payments,
            len(payouts),
        )
        self._audit(
            "settlement_generated",
            settlement.id,
            {
                "settlement_date": day,
                "total_collected": settlement.total_collected,
                "sha_amount": settlement.sha_amount,
                "mwu_amount": settlement.mwu_amount,
                "total_payments": settlement.total_payments,
                "unattributed_commission": totals.unattributed_commission,
            },
            user_id=operator,
        )
        if payouts:
            self._audit(
                "commission_payouts_created",
                settlement.id,
                {
                    "payout_count": len(payouts),
                    "total_commissions": settlement.total_commissions,
                },
                user_id=operator,
            )
        return settlement

    def auto_generate_settlements(
        self, days_back: Optional[int] = None, today: Optional[date] = None
    ) -> list[DailySettlement]:
        """Back-fill settlements for recent days that have payments but none yet."""
        days_back = self.config.auto_generate_days_back if days_back is None else days_back
        today = today or local_today(self.config.timezone)
        generated: list[DailySettlement] = []

        for offset in range(days_back, 0, -1):
            day = today - timedelta(days=offset)
            if self._find_by_date(day) is not None:
                continue
            if self.calculator.ledger.count_completed_on(day) == 0:
                continue
            try:
                generated.append(self.generate(day, operator="auto_generation"))
            except ConflictError:
                logger.info("Settlement for %s was generated concurrently, skipping", day)

        logger.info("Auto-generated %d settlements over %d days", len(generated), days_back)
        return generated

    # ── Processing ───────────────────────────────────────────────────

    async def process(
        self,
        settlement_id: uuid.UUID,
        operator: str = "system",
        initiate_payouts: bool = True,
        initiate_bank_transfers: bool = False,
        confirmation_secret: Optional[str] = None,
    ) -> ProcessResult:
        """Run a pending settlement's payouts and bank transfers.

        The pending -> processing transition is committed before any external
        call so a crash mid-run never makes the settlement look untouched.
        Payouts and transfers are both attempted even if the other fails.

        Raises:
            NotFoundError: Unknown settlement.
            InvalidStateError: The settlement is not pending.
            ConflictError: Another run holds the settlement's lock.
            AuthorizationError: Bank transfers were requested with a bad
                confirmation secret.  Raised before any state change.
            OperationFailedError: The processing checkpoint could not be
                committed; the settlement is left pending.
        """
        if self.orchestrator is not None:
            # Opens a connection and writes a file.
            health = await asyncio.get_running_loop().run_in_executor(
                None, self.orchestrator.validate_system_health
            )
            if not health.healthy:
                logger.warning(
                    "Processing settlement %s with health issues: %s",
                    settlement_id,
                    ", ".join(health.issues),
                )

        async with self.locks.hold(settlement_id, "process"):
            settlement = self._get(settlement_id)
            if settlement.status != "pending":
                raise InvalidStateError(
                    f"Settlement is already {settlement.status}", "SETTLEMENT_NOT_PENDING"
                )

            run_transfers = initiate_bank_transfers and settlement.total_collected > ZERO
            if run_transfers:
                self.transfer_gateway.validate_confirmation_secret(confirmation_secret)

            await self._checkpoint_processing(settlement, operator)
            logger.info("Settlement %s processing started by %s", settlement.id, operator)

            result = ProcessResult(settlement_id=settlement.id, status="processing")
            payouts_ok = True
            transfers_ok = True

            if initiate_payouts:
                try:
                    result.payouts = await self.payout_engine.process_settlement_payouts(
                        settlement.id, operator
                    )
                    payouts_ok = result.payouts.all_submitted
                except Exception as exc:
                    payouts_ok = False
                    await self._record_phase_error(result, settlement.id, "payouts", exc, operator)

            if run_transfers:
                try:
                    result.transfers = await self.transfer_gateway.process_settlement_transfers(
                        settlement.id,
                        settlement.sha_amount,
                        settlement.mwu_amount,
                        confirmation_secret,
                    )
                    transfers_ok = result.transfers.success
                except Exception as exc:
                    transfers_ok = False
                    await self._record_phase_error(
                        result, settlement.id, "bank_transfers", exc, operator
                    )

            if payouts_ok and transfers_ok and not result.errors:
                self._transition(settlement, "processing", "completed", operator)
                result.status = "completed"
                logger.info("Settlement %s completed", settlement.id)
            else:
                logger.warning(
                    "Settlement %s left in processing: payouts_ok=%s transfers_ok=%s errors=%s",
                    settlement.id,
                    payouts_ok,
                    transfers_ok,
                    result.errors,
                )

        self._audit(
            "settlement_processed",
            settlement_id,
            {
                "status": result.status,
                "payouts_submitted": result.payouts.successful_payouts if result.payouts else 0,
                "payouts_failed": result.payouts.failed_payouts if result.payouts else 0,
                "transfers_success": result.transfers.success if result.transfers else None,
                "errors": result.errors,
            },
            severity="info" if result.completed else "warning",
            user_id=operator,
        )
        return result

    async def retry_failed_payouts(
        self, settlement_id: uuid.UUID, operator: str = "system"
    ) -> PayoutRetryResult:
        """Re-submit the settlement's failed payouts.  Status is unchanged."""
        async with self.locks.hold(settlement_id, "retry"):
            settlement = self._get(settlement_id)
            if settlement.status == "failed":
                raise InvalidStateError(
                    "Settlement was marked failed; payouts cannot be retried",
                    "SETTLEMENT_FAILED",
                )
            result = await self.payout_engine.retry_failed_payouts(settlement.id, operator)

        if result.retried_payouts:
            self._audit(
                "commission_payouts_retried",
                settlement_id,
                {
                    "retried": result.retried_payouts,
                    "successful": result.successful_retries,
                    "failed": result.failed_retries,
                },
                user_id=operator,
            )
        return result

    async def resume_payouts(
        self, settlement_id: uuid.UUID, operator: str = "system"
    ) -> PayoutBatchResult:
        """Submit the payouts of a processing settlement that are still pending.

        A ``process`` run that was cancelled or crashed mid-batch leaves the
        settlement in ``processing`` with some payouts never submitted; this
        picks them up.  Status is unchanged.
        """
        async with self.locks.hold(settlement_id, "resume"):
            settlement = self._get(settlement_id)
            if settlement.status != "processing":
                raise InvalidStateError(
                    f"Only processing settlements can be resumed, not {settlement.status}",
                    "SETTLEMENT_NOT_PROCESSING",
                )
            result = await self.payout_engine.process_settlement_payouts(
                settlement.id, operator
            )

        if result.total_payouts:
            self._audit(
                "commission_payouts_resumed",
                settlement_id,
                {
                    "resumed": result.total_payouts,
                    "successful": result.successful_payouts,
                    "failed": result.failed_payouts,
                },
                user_id=operator,
            )
        return result

    async def submit_payout(
        self, payout_id: uuid.UUID, operator: str = "system"
    ) -> PayoutSubmission:
        """Submit one pending payout on its own, under its settlement's lock."""
        payout = self.payout_engine.get_payout(payout_id)
        async with self.locks.hold(payout.settlement_id, "submit"):
            settlement = self._get(payout.settlement_id)
            if settlement.status == "failed":
                raise InvalidStateError(
                    "Settlement was marked failed; payouts cannot be submitted",
                    "SETTLEMENT_FAILED",
                )
            return await self.payout_engine.process_individual_payout(payout_id, operator)

    def mark_settlement_failed(
        self, settlement_id: uuid.UUID, operator: str, reason: str
    ) -> DailySettlement:
        """Give up on a settlement stuck in processing.  Operator decision only."""
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to fail a settlement")
        settlement = self._get(settlement_id)
        if self.locks.is_locked(settlement.id):
            raise ConflictError("Settlement is being processed", "SETTLEMENT_LOCKED")
        self._transition(settlement, "processing", "failed", operator, notes=reason)

        logger.warning("Settlement %s marked failed by %s: %s", settlement.id, operator, reason)
        self._audit(
            "settlement_marked_failed",
            settlement.id,
            {"reason": reason},
            severity="warning",
            user_id=operator,
        )
        return settlement

    # ── Payout callbacks ─────────────────────────────────────────────

    def mark_payout_processed(
        self,
        transaction_reference: str,
        payout_id: Optional[uuid.UUID] = None,
        conversation_id: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> Optional[CommissionPayout]:
        """Record a successful disbursement by payout id or conversation id."""
        self._require_one_key(payout_id, conversation_id)
        if payout_id is not None:
            return self.payout_engine.mark_as_processed(
                payout_id, transaction_reference, payment_method
            )
        return self.payout_engine.complete_from_callback(conversation_id, transaction_reference)

    def mark_payout_failed(
        self,
        reason: str,
        payout_id: Optional[uuid.UUID] = None,
        conversation_id: Optional[str] = None,
        result_code: Optional[str] = None,
    ) -> Optional[CommissionPayout]:
        """Record a failed disbursement by payout id or conversation id."""
        self._require_one_key(payout_id, conversation_id)
        if payout_id is not None:
            return self.payout_engine.mark_as_failed(payout_id, reason)
        return self.payout_engine.fail_from_callback(conversation_id, result_code, reason)

    # ── Queries ──────────────────────────────────────────────────────

    def get_settlement(self, settlement_id: uuid.UUID) -> DailySettlement:
        return self._get(settlement_id)

    def get_settlement_by_date(self, settlement_date: Union[date, str]) -> DailySettlement:
        day = parse_settlement_date(settlement_date)
        settlement = self._find_by_date(day)
        if settlement is None:
            raise NotFoundError(f"No settlement for {day}", "SETTLEMENT_NOT_FOUND")
        return settlement

    def get_pending_settlements(self) -> list[DailySettlement]:
        return (
            self.db.query(DailySettlement)
            .filter(DailySettlement.status == "pending")
            .order_by(DailySettlement.settlement_date)
            .all()
        )

    def get_settlement_summary(
        self, start: Union[date, str], end: Union[date, str]
    ) -> SettlementSummary:
        start_date = parse_settlement_date(start)
        end_date = parse_settlement_date(end)
        if start_date > end_date:
            raise ValidationError("start date must not be after end date", "INVALID_DATE_RANGE")

        settlements = (
            self.db.query(DailySettlement)
            .filter(
                DailySettlement.settlement_date >= start_date,
                DailySettlement.settlement_date <= end_date,
            )
            .all()
        )
        summary = SettlementSummary(
            start_date=start_date,
            end_date=end_date,
            total_settlements=len(settlements),
        )
        for settlement in settlements:
            summary.total_collected += settlement.total_collected
            summary.total_sha_amount += settlement.sha_amount
            summary.total_mwu_amount += settlement.mwu_amount
            summary.total_commissions += settlement.total_commissions
            summary.total_payments += settlement.total_payments
            counter = f"{settlement.status}_settlements"
            setattr(summary, counter, getattr(summary, counter) + 1)
        return summary

    def get_overall_stats(self, days: int = 30) -> SettlementSummary:
        if days < 1:
            raise ValidationError("days must be at least 1")
        today = local_today(self.config.timezone)
        return self.get_settlement_summary(today - timedelta(days=days - 1), today)

    def get_commission_breakdown(self, settlement_id: uuid.UUID) -> CommissionBreakdown:
        settlement = self._get(settlement_id)
        breakdown = CommissionBreakdown(settlement_id=settlement.id)
        for payout in self.payout_engine.payouts_for_settlement(settlement.id):
            recipient = payout.recipient
            row = BreakdownRow(
                payout_id=payout.id,
                recipient_id=payout.recipient_id,
                recipient_name=recipient.full_name if recipient is not None else None,
                recipient_type=payout.recipient_type,
                amount=payout.amount,
                payment_count=payout.payment_count,
                status=payout.status,
            )
            if payout.recipient_type == "delegate":
                breakdown.delegates.append(row)
            else:
                breakdown.coordinators.append(row)
        return breakdown

    def get_payout_statistics(self, settlement_id: uuid.UUID) -> PayoutStatistics:
        settlement = self._get(settlement_id)
        return self.payout_engine.get_payout_statistics(settlement.id)

    def get_commission_payouts(
        self, recipient_id: uuid.UUID, limit: int = 50
    ) -> list[CommissionPayout]:
        return self.payout_engine.payouts_for_recipient(recipient_id, limit)

    def get_commission_summary(
        self, recipient_id: uuid.UUID, start: Union[date, str], end: Union[date, str]
    ) -> CommissionSummary:
        start_date = parse_settlement_date(start)
        end_date = parse_settlement_date(end)
        if start_date > end_date:
            raise ValidationError("start date must not be after end date", "INVALID_DATE_RANGE")
        return self.payout_engine.get_commission_summary(recipient_id, start_date, end_date)

    # ── Private helpers ──────────────────────────────────────────────

    def _get(self, settlement_id: uuid.UUID) -> DailySettlement:
        settlement = self.db.get(DailySettlement, settlement_id)
        if settlement is None:
            raise NotFoundError("Settlement not found", "SETTLEMENT_NOT_FOUND")
        return settlement

    def _find_by_date(self, day: date) -> Optional[DailySettlement]:
        return (
            self.db.query(DailySettlement)
            .filter(DailySettlement.settlement_date == day)
            .one_or_none()
        )

    def _transition(
        self,
        settlement: DailySettlement,
        from_status: str,
        to_status: str,
        operator: str,
        notes: Optional[str] = None,
    ) -> None:
        """Compare-and-set the status; raise if another writer got there first."""
        values: dict = {"status": to_status, "updated_at": datetime.utcnow()}
        if to_status == "processing":
            values["processed_at"] = datetime.utcnow()
            values["processed_by"] = operator
        if notes is not None:
            values["notes"] = notes

        updated = (
            self.db.query(DailySettlement)
            .filter(
                DailySettlement.id == settlement.id,
                DailySettlement.status == from_status,
            )
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            self.db.rollback()
            self.db.refresh(settlement)
            raise InvalidStateError(
                f"Settlement is {settlement.status}, expected {from_status}",
                "INVALID_SETTLEMENT_STATE",
            )
        self.db.commit()
        self.db.refresh(settlement)

    async def _checkpoint_processing(self, settlement: DailySettlement, operator: str) -> None:
        """Commit pending -> processing, retrying transient database errors.

        Once retries run out the session is rolled back and
        ``OperationFailedError`` surfaces; the settlement is still pending.
        """

        async def checkpoint() -> None:
            try:
                self._transition(settlement, "pending", "processing", operator)
            except SQLAlchemyError:
                self.db.rollback()
                raise

        if self.orchestrator is None:
            await checkpoint()
            return
        await self.orchestrator.execute_with_recovery(
            DATABASE_TRANSACTION,
            checkpoint,
            {"settlement_id": str(settlement.id), "operator": operator},
            transaction=self.db,
        )

    async def _record_phase_error(
        self,
        result: ProcessResult,
        settlement_id: uuid.UUID,
        phase: str,
        exc: Exception,
        operator: str,
    ) -> None:
        self.db.rollback()
        result.errors.append(f"{phase}: {exc}")
        logger.error("Settlement %s %s phase failed: %s", settlement_id, phase, exc)
        if self.orchestrator is not None:
            await self.orchestrator.handle_settlement_error(
                exc, settlement_id, {"phase": phase, "operator": operator}
            )

    @staticmethod
    def _require_one_key(payout_id: Optional[uuid.UUID], conversation_id: Optional[str]) -> None:
        if (payout_id is None) == (conversation_id is None):
            raise ValidationError(
                "Provide exactly one of payout_id or conversation_id", "INVALID_PAYOUT_KEY"
            )

    def _audit(
        self,
        action: str,
        settlement_id: uuid.UUID,
        details: dict,
        severity: str = "info",
        user_id: Optional[str] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log_event(
            action=action,
            resource_type="settlement",
            resource_id=settlement_id,
            details=details,
            severity=severity,
            user_id=user_id,
        )
