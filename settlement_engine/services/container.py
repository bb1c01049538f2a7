"""Wiring for the settlement services.

Long-lived collaborators (orchestrator, run locks, audit trail, gateway and
bank-rail clients) are created once per process and shared.  Everything that
holds a database session is built per unit of work by ``settlement_service``.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from settlement_engine.core.config import Settings
from settlement_engine.services.audit import AuditTrail
from settlement_engine.services.payouts.engine import CommissionPayoutEngine
from settlement_engine.services.payouts.gateway import (
    PaymentGatewayClient,
    UnconfiguredGatewayClient,
)
from settlement_engine.services.recovery.defaults import build_orchestrator
from settlement_engine.services.recovery.orchestrator import RetryOrchestrator
from settlement_engine.services.settlement.calculator import SettlementCalculator
from settlement_engine.services.settlement.locks import SettlementLocks
from settlement_engine.services.settlement.repositories import (
    SqlPaymentLedger,
    SqlRecipientDirectory,
)
from settlement_engine.services.settlement.service import SettlementService
from settlement_engine.services.transfers.bank import (
    BankRailClient,
    BankTransferGateway,
    UnconfiguredBankRailClient,
)


class ServiceContainer:
    def __init__(
        self,
        config: Settings,
        session_factory: Callable[[], Session],
        engine: Optional[Engine] = None,
        gateway: Optional[PaymentGatewayClient] = None,
        rail: Optional[BankRailClient] = None,
        orchestrator: Optional[RetryOrchestrator] = None,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        self.config = config
        self.session_factory = session_factory
        self.audit = audit or AuditTrail(session_factory)
        self.orchestrator = orchestrator or build_orchestrator(config, engine, self.audit)
        self.gateway = gateway or UnconfiguredGatewayClient()
        self.rail = rail or UnconfiguredBankRailClient()
        self.locks = SettlementLocks()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def settlement_service(self, db: Session) -> SettlementService:
        directory = SqlRecipientDirectory(db)
        payout_engine = CommissionPayoutEngine(
            db,
            gateway=self.gateway,
            directory=directory,
            orchestrator=self.orchestrator,
            audit=self.audit,
            payment_method=self.config.payout_payment_method,
        )
        transfer_gateway = BankTransferGateway(
            db,
            rail=self.rail,
            config=self.config,
            orchestrator=self.orchestrator,
        )
        return SettlementService(
            db,
            calculator=SettlementCalculator(SqlPaymentLedger(db), directory),
            payout_engine=payout_engine,
            transfer_gateway=transfer_gateway,
            config=self.config,
            orchestrator=self.orchestrator,
            locks=self.locks,
            audit=self.audit,
        )
