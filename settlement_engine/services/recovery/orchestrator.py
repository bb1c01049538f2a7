"""Retry and recovery orchestration for externally-facing operations.

Every call the settlement engine makes to something that can fail for
transient reasons (the payment gateway, the bank rail, the database during a
nightly batch) goes through ``RetryOrchestrator.execute_with_recovery``:

  1. Look up the ``RetryConfig`` registered for the operation type.
  2. Run the operation; on a retryable failure wait ``current_delay`` and
     grow the delay by ``backoff_multiplier`` (capped at ``max_delay``).
  3. After the last attempt, run the recovery actions registered for the
     operation type, highest priority first.
  4. If no action recovers, raise ``OperationFailedError`` chained to the
     last underlying error.

The orchestrator is a plain object: build one, register configs and
actions on it, and pass it to the services that need it.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Engine

from settlement_engine.core.exceptions import NON_RETRYABLE_ERRORS, OperationFailedError
from settlement_engine.core.logging import get_logger
from settlement_engine.services.audit import AuditTrail

logger = get_logger(__name__)

T = TypeVar("T")


class RecoveryKind(str, Enum):
    RETRY = "retry"
    ROLLBACK = "rollback"
    MANUAL_INTERVENTION = "manual_intervention"
    SKIP = "skip"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_PRIORITY_ORDER = {Priority.HIGH: 3, Priority.MEDIUM: 2, Priority.LOW: 1}


@dataclass(frozen=True)
class RetryConfig:
    """Backoff shape for one operation type.  Delays are in seconds."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass
class RetryContext:
    """Mutable state of one ``execute_with_recovery`` call."""

    operation_type: str
    config: RetryConfig
    attempt: int = 0
    current_delay: float = 0.0

    def __post_init__(self) -> None:
        self.current_delay = self.config.initial_delay

    def advance_delay(self) -> None:
        self.current_delay = min(
            self.current_delay * self.config.backoff_multiplier,
            self.config.max_delay,
        )


@dataclass
class FailureContext:
    """What recovery action handlers get to see.

    A ``retry`` handler that manages to produce a result stores it in
    ``recovered_value``; that value is returned to the original caller.
    """

    operation_type: str
    error: BaseException
    attempts: int
    context: dict[str, Any] = field(default_factory=dict)
    operation: Optional[Callable[[], Awaitable[Any]]] = None
    recovered_value: Any = None


RecoveryHandler = Callable[[FailureContext], Awaitable[bool]]


@dataclass
class RecoveryAction:
    id: str
    kind: RecoveryKind
    description: str
    handler: RecoveryHandler
    priority: Priority = Priority.MEDIUM


@dataclass
class HealthReport:
    healthy: bool
    issues: list[str] = field(default_factory=list)


class RetryOrchestrator:
    """Runs operations with bounded exponential backoff and recovery actions."""

    def __init__(
        self,
        configs: Optional[dict[str, RetryConfig]] = None,
        default_config: RetryConfig = DEFAULT_RETRY_CONFIG,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        audit: Optional[AuditTrail] = None,
        engine: Optional[Engine] = None,
        reports_dir: Optional[str] = None,
    ) -> None:
        self._configs: dict[str, RetryConfig] = dict(configs or {})
        self._actions: dict[str, list[RecoveryAction]] = {}
        self.default_config = default_config
        self.audit = audit
        self.engine = engine
        self.reports_dir = reports_dir
        self._sleep = sleep

    # ── Registration ─────────────────────────────────────────────────

    def register_config(self, operation_type: str, config: RetryConfig) -> None:
        self._configs[operation_type] = config

    def get_config(self, operation_type: str) -> RetryConfig:
        return self._configs.get(operation_type, self.default_config)

    def register_recovery_action(
        self, operation_type: str, action: RecoveryAction
    ) -> None:
        self._actions.setdefault(operation_type, []).append(action)

    def recovery_actions(self, operation_type: str) -> list[RecoveryAction]:
        """Registered actions for *operation_type*, highest priority first."""
        actions = self._actions.get(operation_type, [])
        return sorted(actions, key=lambda a: _PRIORITY_ORDER[a.priority], reverse=True)

    # ── Execution ────────────────────────────────────────────────────

    async def execute_with_recovery(
        self,
        operation_type: str,
        operation: Callable[[], Awaitable[T]],
        context: Optional[dict[str, Any]] = None,
        transaction: Any = None,
    ) -> T:
        """Run *operation* with retries, then recovery actions.

        Args:
            operation_type: Key selecting the retry config and recovery actions.
            operation: Zero-argument coroutine function.  It may be invoked
                several times, so it must be safe to re-run.
            context: Extra fields included in every log line.
            transaction: Object with a ``rollback()`` method (usually a
                ``Session``) that ``rollback`` recovery actions act on.

        Returns:
            The operation's result, or the value a ``retry`` recovery action
            recovered.

        Raises:
            Any error in ``NON_RETRYABLE_ERRORS`` immediately, otherwise
            ``OperationFailedError`` once attempts and recovery are exhausted.
        """
        context = context or {}
        config = self.get_config(operation_type)
        retry = RetryContext(operation_type=operation_type, config=config)
        last_error: Optional[BaseException] = None

        while retry.attempt < config.max_attempts:
            retry.attempt += 1
            logger.info(
                "Executing %s, attempt %d/%d context=%s",
                operation_type,
                retry.attempt,
                config.max_attempts,
                context,
            )
            try:
                result = await self._run_attempt(operation, config)
            except NON_RETRYABLE_ERRORS as exc:
                logger.warning(
                    "%s failed with non-retryable %s: %s",
                    operation_type,
                    type(exc).__name__,
                    exc,
                )
                raise
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "%s failed, attempt %d/%d: %s context=%s",
                    operation_type,
                    retry.attempt,
                    config.max_attempts,
                    repr(exc),
                    context,
                )
                if retry.attempt >= config.max_attempts:
                    break
                await self._sleep(retry.current_delay)
                retry.advance_delay()
                continue

            if retry.attempt > 1:
                logger.info(
                    "%s succeeded after %d attempts", operation_type, retry.attempt
                )
            return result

        logger.error(
            "%s failed after all %d attempts: %s context=%s",
            operation_type,
            config.max_attempts,
            last_error,
            context,
        )
        failure = FailureContext(
            operation_type=operation_type,
            error=last_error,
            attempts=retry.attempt,
            context=context,
            operation=operation,
        )
        if await self._run_recovery_actions(failure, transaction):
            return failure.recovered_value

        raise OperationFailedError(operation_type, retry.attempt, last_error) from last_error

    async def _run_attempt(
        self, operation: Callable[[], Awaitable[T]], config: RetryConfig
    ) -> T:
        if config.timeout is None:
            return await operation()
        return await asyncio.wait_for(operation(), timeout=config.timeout)

    async def _run_recovery_actions(
        self, failure: FailureContext, transaction: Any
    ) -> bool:
        """Run recovery actions in priority order.  True means recovered."""
        actions = self.recovery_actions(failure.operation_type)
        logger.info(
            "Triggering %d recovery actions for %s",
            len(actions),
            failure.operation_type,
        )

        for action in actions:
            logger.info(
                "Executing recovery action %s kind=%s priority=%s",
                action.id,
                action.kind.value,
                action.priority.value,
            )
            try:
                success = await action.handler(failure)
            except Exception as exc:
                logger.error(
                    "Recovery action %s failed: %s (original error: %s)",
                    action.id,
                    exc,
                    failure.error,
                )
                continue

            if action.kind is RecoveryKind.ROLLBACK and transaction is not None:
                transaction.rollback()
                logger.info("Transaction rolled back by recovery action %s", action.id)

            if success and action.kind in (RecoveryKind.RETRY, RecoveryKind.SKIP):
                logger.info("Recovery action %s recovered %s", action.id, failure.operation_type)
                return True

        return False

    # ── Error reporting ──────────────────────────────────────────────

    async def handle_settlement_error(
        self,
        error: BaseException,
        settlement_id: Any = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Record a settlement-level failure for operators."""
        context = context or {}
        logger.error(
            "Critical settlement error settlement_id=%s context=%s: %s",
            settlement_id,
            context,
            error,
        )
        if self.audit is not None:
            self.audit.log_event(
                action="settlement_error",
                resource_type="settlement",
                resource_id=settlement_id,
                details={
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "context": context,
                },
                severity="critical",
            )
        await self.notify_administrators(
            "settlement_error",
            {"error": str(error), "settlement_id": settlement_id, "context": context},
        )

    async def handle_payout_error(
        self,
        error: BaseException,
        payout_id: Any,
        settlement_id: Any,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        logger.error(
            "Payout error payout_id=%s settlement_id=%s: %s",
            payout_id,
            settlement_id,
            error,
        )
        if self.audit is not None:
            self.audit.log_event(
                action="payout_error",
                resource_type="commission_payout",
                resource_id=payout_id,
                details={
                    "error": str(error),
                    "settlement_id": settlement_id,
                    "context": context,
                },
                severity="critical",
            )

    async def notify_administrators(self, kind: str, details: dict[str, Any]) -> None:
        # Only logged; no notification channel is wired up yet.
        logger.info("Administrator notification kind=%s details=%s", kind, details)

    # ── Health ───────────────────────────────────────────────────────

    def validate_system_health(self) -> HealthReport:
        """Check storage and the reports directory.  Never raises."""
        issues: list[str] = []

        if self.engine is not None:
            try:
                with self.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
            except Exception as exc:
                issues.append("Database connectivity issue")
                logger.error("Database health check failed: %s", exc)

        if self.reports_dir is not None:
            try:
                reports_dir = Path(self.reports_dir)
                reports_dir.mkdir(parents=True, exist_ok=True)
                probe = reports_dir / f".health_check_{uuid.uuid4().hex}"
                probe.write_text("ok")
                probe.unlink()
            except OSError as exc:
                issues.append("File system access issue")
                logger.error("File system health check failed: %s", exc)

        return HealthReport(healthy=not issues, issues=issues)
