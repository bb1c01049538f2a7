"""Contract the payment-gateway client must satisfy.

Submission is fire-and-forget: the gateway answers with a conversation id
straight away and reports the actual outcome later through a callback that
quotes the same id.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, Union

from settlement_engine.core.exceptions import ConfigurationError


@dataclass(frozen=True)
class GatewaySubmission:
    conversation_id: str
    originator_conversation_id: Optional[str] = None


class PaymentGatewayClient(Protocol):
    async def submit(
        self, amount: Decimal, recipient_contact: str, reference: str
    ) -> Union[GatewaySubmission, str]:
        """Submit a disbursement.

        ``reference`` is stable across retries of the same payout so the
        gateway can deduplicate.  Raise ``GatewayError`` on rejection.
        """
        ...


class UnconfiguredGatewayClient:
    """Placeholder used until a real client is injected."""

    async def submit(
        self, amount: Decimal, recipient_contact: str, reference: str
    ) -> GatewaySubmission:
        raise ConfigurationError("No payment gateway client configured")


def as_submission(result: Union[GatewaySubmission, str]) -> GatewaySubmission:
    if isinstance(result, GatewaySubmission):
        return result
    return GatewaySubmission(conversation_id=str(result))
