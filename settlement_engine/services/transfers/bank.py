"""Bank transfers for a settlement's SHA and MWU shares.

Unlike commission payouts, a bank transfer resolves synchronously: the rail
either returns a transaction id or fails.  Each (settlement, portion) pair is
recorded once in ``bank_transfers``; a completed record is returned as-is on
re-invocation so a retried settlement never moves the same money twice.

The rail itself sits behind ``BankRailClient`` and can be swapped without
touching settlement logic.
"""

from __future__ import annotations

import asyncio
import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from settlement_engine.core.config import Settings
from settlement_engine.core.exceptions import (
    AuthorizationError,
    ConfigurationError,
    GatewayError,
    ValidationError,
)
from settlement_engine.core.logging import get_logger
from settlement_engine.models.bank_transfer import BankTransferRecord
from settlement_engine.services.recovery.defaults import BANK_TRANSFER
from settlement_engine.services.recovery.orchestrator import RetryOrchestrator

logger = get_logger(__name__)

SHA = "sha"
MWU = "mwu"


class BankRailClient(Protocol):
    async def submit(
        self, amount: Decimal, account_details: dict[str, str], reference: str
    ) -> str:
        """Execute a transfer and return the bank's transaction id.

        Raise ``GatewayError`` when the bank rejects the transfer.
        """
        ...


class UnconfiguredBankRailClient:
    async def submit(
        self, amount: Decimal, account_details: dict[str, str], reference: str
    ) -> str:
        raise ConfigurationError("No bank transfer client configured")


@dataclass
class TransferResult:
    portion: str
    amount: Decimal
    success: bool
    transaction_id: Optional[str] = None
    message: str = ""
    skipped: bool = False


@dataclass
class SettlementTransferResult:
    sha_transfer: TransferResult
    mwu_transfer: TransferResult

    @property
    def success(self) -> bool:
        return self.sha_transfer.success and self.mwu_transfer.success


class BankTransferGateway:
    """Authorizes and executes the insurer and union share transfers."""

    def __init__(
        self,
        db: Session,
        rail: BankRailClient,
        config: Settings,
        orchestrator: Optional[RetryOrchestrator] = None,
    ) -> None:
        self.db = db
        self.rail = rail
        self.config = config
        self.orchestrator = orchestrator

    # ── Authorization ────────────────────────────────────────────────

    def validate_confirmation_secret(self, confirmation_secret: Optional[str]) -> None:
        expected = self.config.payment_confirmation_secret
        if not expected:
            raise ConfigurationError("Payment confirmation secret not configured")
        if not confirmation_secret or not hmac.compare_digest(
            confirmation_secret.encode("utf-8"), expected.encode("utf-8")
        ):
            raise AuthorizationError("Invalid payment confirmation secret")

    # ── Public API ───────────────────────────────────────────────────

    async def process_sha_transfer(
        self,
        settlement_id: uuid.UUID,
        amount: Decimal,
        confirmation_secret: Optional[str],
        bank_details: Optional[dict[str, str]] = None,
    ) -> TransferResult:
        self.validate_confirmation_secret(confirmation_secret)
        return await self._transfer(settlement_id, SHA, amount, bank_details)

    async def process_mwu_transfer(
        self,
        settlement_id: uuid.UUID,
        amount: Decimal,
        confirmation_secret: Optional[str],
        bank_details: Optional[dict[str, str]] = None,
    ) -> TransferResult:
        self.validate_confirmation_secret(confirmation_secret)
        return await self._transfer(settlement_id, MWU, amount, bank_details)

    async def process_settlement_transfers(
        self,
        settlement_id: uuid.UUID,
        sha_amount: Decimal,
        mwu_amount: Decimal,
        confirmation_secret: Optional[str],
        sha_bank_details: Optional[dict[str, str]] = None,
        mwu_bank_details: Optional[dict[str, str]] = None,
    ) -> SettlementTransferResult:
        """Run both transfers concurrently and report them together.

        The secret and both amounts are checked before either transfer
        starts.  After that each leg always runs to completion and reports a
        result, so a failure of one transfer does not affect the other.
        """
        self.validate_confirmation_secret(confirmation_secret)
        _check_amount(SHA, sha_amount)
        _check_amount(MWU, mwu_amount)
        logger.info(
            "Processing settlement transfers: settlement=%s sha=%s mwu=%s",
            settlement_id,
            sha_amount,
            mwu_amount,
        )
        sha_outcome, mwu_outcome = await asyncio.gather(
            self._transfer(settlement_id, SHA, sha_amount, sha_bank_details),
            self._transfer(settlement_id, MWU, mwu_amount, mwu_bank_details),
            return_exceptions=True,
        )
        return SettlementTransferResult(
            sha_transfer=_as_result(SHA, sha_amount, sha_outcome),
            mwu_transfer=_as_result(MWU, mwu_amount, mwu_outcome),
        )

    def transfers_for_settlement(self, settlement_id: uuid.UUID) -> list[BankTransferRecord]:
        return (
            self.db.query(BankTransferRecord)
            .filter(BankTransferRecord.settlement_id == settlement_id)
            .order_by(BankTransferRecord.portion)
            .all()
        )

    # ── Private helpers ──────────────────────────────────────────────

    def _account_details(
        self, portion: str, overrides: Optional[dict[str, str]]
    ) -> dict[str, str]:
        defaults = (
            self.config.sha_bank_details() if portion == SHA else self.config.mwu_bank_details()
        )
        if overrides:
            defaults.update({k: v for k, v in overrides.items() if v})
        return defaults

    async def _transfer(
        self,
        settlement_id: uuid.UUID,
        portion: str,
        amount: Decimal,
        bank_details: Optional[dict[str, str]],
    ) -> TransferResult:
        _check_amount(portion, amount)

        record = self._get_record(settlement_id, portion)
        if record is not None and record.status == "completed":
            logger.info(
                "%s transfer for settlement %s already completed: %s",
                portion.upper(),
                settlement_id,
                record.transaction_id,
            )
            return TransferResult(
                portion=portion,
                amount=record.amount,
                success=True,
                transaction_id=record.transaction_id,
                message="Transfer already completed",
            )

        details = self._account_details(portion, bank_details)
        reference = f"{settlement_id}:{portion}"
        if record is None:
            record = BankTransferRecord(
                id=uuid.uuid4(),
                settlement_id=settlement_id,
                portion=portion,
                reference=reference,
            )
            self.db.add(record)
        record.amount = amount
        record.bank_name = details.get("bank_name")
        record.account_number = details.get("account_number")
        record.account_name = details.get("account_name")
        record.branch_code = details.get("branch_code")
        record.swift_code = details.get("swift_code")
        record.failure_reason = None
        record.initiated_at = datetime.utcnow()

        if amount == 0:
            record.status = "completed"
            record.completed_at = datetime.utcnow()
            self.db.commit()
            return TransferResult(
                portion=portion,
                amount=amount,
                success=True,
                message="Nothing to transfer",
                skipped=True,
            )

        record.status = "processing"
        self.db.commit()

        logger.info(
            "Processing %s bank transfer: settlement=%s amount=%s bank=%s",
            portion.upper(),
            settlement_id,
            amount,
            details.get("bank_name"),
        )

        try:
            transaction_id = await self._call_rail(amount, details, reference, settlement_id)
            if not transaction_id:
                raise GatewayError("Bank rail returned no transaction id")
        except Exception as exc:
            # Every rail error, rejections included, ends in a failed result.
            record.status = "failed"
            record.failure_reason = str(exc)
            self.db.commit()
            logger.error(
                "%s bank transfer failed: settlement=%s amount=%s error=%s",
                portion.upper(),
                settlement_id,
                amount,
                exc,
            )
            return TransferResult(
                portion=portion,
                amount=amount,
                success=False,
                message=f"{portion.upper()} bank transfer failed: {exc}",
            )

        record.status = "completed"
        record.transaction_id = transaction_id
        record.completed_at = datetime.utcnow()
        self.db.commit()

        logger.info(
            "%s bank transfer completed: settlement=%s amount=%s transaction=%s",
            portion.upper(),
            settlement_id,
            amount,
            transaction_id,
        )
        return TransferResult(
            portion=portion,
            amount=amount,
            success=True,
            transaction_id=transaction_id,
            message=f"{portion.upper()} transfer of {amount} completed",
        )

    async def _call_rail(
        self,
        amount: Decimal,
        details: dict[str, str],
        reference: str,
        settlement_id: uuid.UUID,
    ) -> str:
        async def call() -> str:
            return await self.rail.submit(amount, details, reference)

        if self.orchestrator is None:
            return await call()
        return await self.orchestrator.execute_with_recovery(
            BANK_TRANSFER,
            call,
            {"settlement_id": str(settlement_id), "reference": reference},
        )

    def _get_record(
        self, settlement_id: uuid.UUID, portion: str
    ) -> Optional[BankTransferRecord]:
        return (
            self.db.query(BankTransferRecord)
            .filter(
                BankTransferRecord.settlement_id == settlement_id,
                BankTransferRecord.portion == portion,
            )
            .one_or_none()
        )


def _check_amount(portion: str, amount: Decimal) -> None:
    if amount < 0:
        raise ValidationError(f"{portion.upper()} transfer amount must not be negative")


def _as_result(portion: str, amount: Decimal, outcome: object) -> TransferResult:
    """Map one ``gather`` outcome to a ``TransferResult``.

    Cancellation and other ``BaseException``s are re-raised; anything else
    that escaped the leg becomes a failed result.
    """
    if isinstance(outcome, TransferResult):
        return outcome
    if not isinstance(outcome, Exception):
        raise outcome
    logger.error("%s bank transfer aborted: %s", portion.upper(), outcome)
    return TransferResult(
        portion=portion,
        amount=amount,
        success=False,
        message=f"{portion.upper()} bank transfer failed: {outcome}",
    )
