"""Error taxonomy shared by the settlement, payout and transfer services.

Every error carries a stable ``error_code`` and the HTTP status the API layer
should answer with.  The retry orchestrator uses the class hierarchy to decide
what is worth retrying: ``GatewayError``, ``SystemUnavailableError`` and
unexpected exceptions are retried, everything in ``NON_RETRYABLE_ERRORS``
propagates on the first attempt.  ``OperationFailedError`` is listed there so
that nested retried operations do not multiply their attempts.
"""

from __future__ import annotations

from typing import Optional


class SettlementError(Exception):
    """Base class for all domain errors raised by the settlement engine."""

    error_code = "SETTLEMENT_ERROR"
    status_code = 500

    def __init__(self, message: str, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code

    def __str__(self) -> str:
        return self.message


class ValidationError(SettlementError):
    """Bad input: unparseable date, non-positive amount, missing contact."""

    error_code = "VALIDATION_ERROR"
    status_code = 400


class InvalidStateError(SettlementError):
    """The entity exists but is not in a state that allows the operation."""

    error_code = "INVALID_STATE"
    status_code = 409


class ConflictError(SettlementError):
    """Duplicate settlement, or a concurrent run already holds the lock."""

    error_code = "CONFLICT"
    status_code = 409


class NotFoundError(SettlementError):
    error_code = "NOT_FOUND"
    status_code = 404


class AuthorizationError(SettlementError):
    """The bank-transfer confirmation secret did not match."""

    error_code = "INVALID_CONFIRMATION_SECRET"
    status_code = 401


class ConfigurationError(SettlementError):
    error_code = "CONFIG_ERROR"
    status_code = 500


class GatewayError(SettlementError):
    """The payment gateway or bank rail rejected or failed a request."""

    error_code = "GATEWAY_ERROR"
    status_code = 502


class SystemUnavailableError(SettlementError):
    """Storage or filesystem is unreachable."""

    error_code = "SYSTEM_UNAVAILABLE"
    status_code = 503


class OperationFailedError(SystemUnavailableError):
    """A retried operation exhausted its attempts and nothing recovered it.

    The last underlying exception is chained as ``__cause__``.
    """

    error_code = "OPERATION_FAILED_WITH_RECOVERY"

    def __init__(
        self,
        operation_type: str,
        attempts: int,
        cause: Optional[BaseException] = None,
    ) -> None:
        message = f"{operation_type} failed after {attempts} attempts"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation_type = operation_type
        self.attempts = attempts
        self.cause = cause


NON_RETRYABLE_ERRORS: tuple[type[SettlementError], ...] = (
    ValidationError,
    InvalidStateError,
    ConflictError,
    NotFoundError,
    AuthorizationError,
    ConfigurationError,
    OperationFailedError,
)
