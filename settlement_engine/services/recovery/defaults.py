"""Default retry configs and recovery actions, per operation type.

Gateway-facing operations get more attempts and longer waits than local
database work; every operation that can leave money unmoved ends by flagging
itself for manual review in the audit trail.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.engine import Engine

from settlement_engine.core.config import Settings
from settlement_engine.core.logging import get_logger
from settlement_engine.services.audit import AuditTrail
from settlement_engine.services.recovery.orchestrator import (
    FailureContext,
    Priority,
    RecoveryAction,
    RecoveryKind,
    RetryConfig,
    RetryOrchestrator,
)

logger = get_logger(__name__)

SETTLEMENT_GENERATION = "settlement_generation"
SETTLEMENT_PROCESSING = "settlement_processing"
COMMISSION_PAYOUT = "commission_payout"
BANK_TRANSFER = "bank_transfer"
DATABASE_TRANSACTION = "database_transaction"
REPORT_GENERATION = "report_generation"
REPORT_CLEANUP = "report_cleanup"

# Operations whose exhaustion needs a human to look at the money.
_MANUAL_REVIEW_OPERATIONS = (
    SETTLEMENT_GENERATION,
    SETTLEMENT_PROCESSING,
    COMMISSION_PAYOUT,
    BANK_TRANSFER,
)


def default_retry_configs(config: Settings) -> dict[str, RetryConfig]:
    timeout = config.operation_timeout_seconds
    return {
        SETTLEMENT_GENERATION: RetryConfig(
            max_attempts=config.generation_retry_attempts,
            initial_delay=config.generation_retry_delay,
            backoff_multiplier=2.0,
            max_delay=30.0,
            timeout=timeout,
        ),
        SETTLEMENT_PROCESSING: RetryConfig(
            max_attempts=2,
            initial_delay=5.0,
            backoff_multiplier=2.0,
            max_delay=30.0,
        ),
        COMMISSION_PAYOUT: RetryConfig(
            max_attempts=config.payout_retry_attempts,
            initial_delay=config.payout_retry_delay,
            backoff_multiplier=1.5,
            max_delay=60.0,
            timeout=timeout,
        ),
        BANK_TRANSFER: RetryConfig(
            max_attempts=config.bank_transfer_retry_attempts,
            initial_delay=config.bank_transfer_retry_delay,
            backoff_multiplier=2.0,
            max_delay=30.0,
            timeout=timeout,
        ),
        DATABASE_TRANSACTION: RetryConfig(
            max_attempts=3,
            initial_delay=1.0,
            backoff_multiplier=2.0,
            max_delay=10.0,
        ),
        REPORT_GENERATION: RetryConfig(
            max_attempts=2,
            initial_delay=5.0,
            backoff_multiplier=1.5,
            max_delay=15.0,
        ),
        REPORT_CLEANUP: RetryConfig(
            max_attempts=1,
            initial_delay=0.0,
        ),
    }


def _flag_for_manual_review(audit: Optional[AuditTrail]):
    async def handler(failure: FailureContext) -> bool:
        logger.error(
            "%s requires manual intervention after %d attempts: %s",
            failure.operation_type,
            failure.attempts,
            failure.error,
        )
        if audit is not None:
            audit.log_event(
                action="manual_review_required",
                resource_type=failure.operation_type,
                resource_id=failure.context.get("settlement_id")
                or failure.context.get("payout_id"),
                details={
                    "error": str(failure.error),
                    "error_type": type(failure.error).__name__,
                    "attempts": failure.attempts,
                    "context": failure.context,
                },
                severity="critical",
            )
        return False

    return handler


async def _acknowledge_rollback(failure: FailureContext) -> bool:
    logger.info("Rolling back transaction after %s failure", failure.operation_type)
    return True


def register_default_recovery_actions(
    orchestrator: RetryOrchestrator, audit: Optional[AuditTrail] = None
) -> None:
    for operation_type in _MANUAL_REVIEW_OPERATIONS:
        orchestrator.register_recovery_action(
            operation_type,
            RecoveryAction(
                id=f"flag_{operation_type}_for_review",
                kind=RecoveryKind.MANUAL_INTERVENTION,
                description="Flag for manual review and intervention",
                handler=_flag_for_manual_review(audit),
                priority=Priority.HIGH,
            ),
        )

    orchestrator.register_recovery_action(
        DATABASE_TRANSACTION,
        RecoveryAction(
            id="rollback_transaction",
            kind=RecoveryKind.ROLLBACK,
            description="Rollback current transaction",
            handler=_acknowledge_rollback,
            priority=Priority.HIGH,
        ),
    )


def build_orchestrator(
    config: Settings,
    engine: Optional[Engine] = None,
    audit: Optional[AuditTrail] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOrchestrator:
    """Orchestrator with the default configs and recovery actions installed."""
    orchestrator = RetryOrchestrator(
        configs=default_retry_configs(config),
        sleep=sleep,
        audit=audit,
        engine=engine,
        reports_dir=config.reports_dir,
    )
    register_default_recovery_actions(orchestrator, audit)
    return orchestrator
