"""FastAPI dependencies shared by the route modules."""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from settlement_engine.core.database import get_db
from settlement_engine.services.container import ServiceContainer
from settlement_engine.services.settlement.service import SettlementService


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_settlement_service(
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> SettlementService:
    """Settlement service bound to the request's database session."""
    return container.settlement_service(db)
