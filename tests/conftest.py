"""Shared test fixtures for the settlement engine tests.

Uses a SQLite file database so tests run without PostgreSQL.  The payment
gateway and bank rail are in-memory fakes, and the retry orchestrator records
its backoff waits instead of sleeping.
"""

from __future__ import annotations

import itertools
import os
import uuid
from datetime import date
from decimal import Decimal
from typing import Optional

# Override DATABASE_URL before importing anything from settlement_engine; the
# Settings model reads .env eagerly via pydantic-settings, and the module-level
# ``engine`` in settlement_engine.core.database would try to connect to PostgreSQL.
os.environ["DATABASE_URL"] = "sqlite:///./test.db"

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from settlement_engine.core.config import Settings
from settlement_engine.core.database import Base, get_db
from settlement_engine.core.exceptions import GatewayError
from settlement_engine.main import app
from settlement_engine.models import Member, Payment
from settlement_engine.services.audit import AuditTrail
from settlement_engine.services.container import ServiceContainer
from settlement_engine.services.payouts.gateway import GatewaySubmission
from settlement_engine.services.recovery.defaults import build_orchestrator

# Use SQLite file-based database for tests (no PostgreSQL needed)
TEST_DATABASE_URL = "sqlite:///./test.db"

CONFIRMATION_SECRET = "s3cret-confirmation"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
)


# Enable foreign keys for SQLite
@event.listens_for(engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ── Fakes ────────────────────────────────────────────────────────────


class FakeGateway:
    """Payment gateway that accepts everything except configured contacts.

    ``failing`` contacts are rejected on every attempt; ``flaky`` maps a
    contact to how many attempts fail before it is accepted.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[Decimal, str, str]] = []
        self.failing: set[str] = set()
        self.flaky: dict[str, int] = {}
        self._ids = itertools.count(1)

    async def submit(self, amount: Decimal, recipient_contact: str, reference: str):
        self.calls.append((amount, recipient_contact, reference))
        if recipient_contact in self.failing:
            raise GatewayError(f"Gateway rejected {recipient_contact}")
        if self.flaky.get(recipient_contact, 0) > 0:
            self.flaky[recipient_contact] -= 1
            raise GatewayError("Gateway timeout")
        n = next(self._ids)
        return GatewaySubmission(
            conversation_id=f"AG_{n:06d}",
            originator_conversation_id=f"ORIG_{n:06d}",
        )


class FakeRail:
    """Bank rail returning ``TX-<portion>-<n>``; ``failing`` portions raise."""

    def __init__(self) -> None:
        self.calls: list[tuple[Decimal, dict, str]] = []
        self.failing: set[str] = set()
        self._ids = itertools.count(1)

    async def submit(self, amount: Decimal, account_details: dict, reference: str) -> str:
        self.calls.append((amount, account_details, reference))
        portion = reference.rsplit(":", 1)[-1]
        if portion in self.failing:
            raise GatewayError(f"Bank declined {portion} transfer")
        return f"TX-{portion}-{next(self._ids)}"


# ── Database ─────────────────────────────────────────────────────────


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def confirmation_secret() -> str:
    return CONFIRMATION_SECRET


@pytest.fixture
def config(tmp_path) -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        payment_confirmation_secret=CONFIRMATION_SECRET,
        reports_dir=str(tmp_path / "reports"),
        timezone="Africa/Nairobi",
        _env_file=None,
    )


# ── Services ─────────────────────────────────────────────────────────


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff waits requested by the orchestrator, in order."""
    return []


@pytest.fixture
def audit(db_session) -> AuditTrail:
    return AuditTrail(TestingSessionLocal)


@pytest.fixture
def orchestrator(config, audit, sleeps):
    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    return build_orchestrator(config, engine=engine, audit=audit, sleep=record_sleep)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def rail() -> FakeRail:
    return FakeRail()


@pytest.fixture
def container(config, gateway, rail, orchestrator, audit) -> ServiceContainer:
    return ServiceContainer(
        config,
        TestingSessionLocal,
        engine=engine,
        gateway=gateway,
        rail=rail,
        orchestrator=orchestrator,
        audit=audit,
    )


@pytest.fixture
def service(container, db_session):
    return container.settlement_service(db_session)


# ── Data factories ───────────────────────────────────────────────────


@pytest.fixture
def make_member(db_session):
    names = itertools.count(1)

    def _make(
        role: str = "member",
        has_phone: bool = True,
        delegate: Optional[Member] = None,
        coordinator: Optional[Member] = None,
    ) -> Member:
        n = next(names)
        member = Member(
            id=uuid.uuid4(),
            first_name=role.title(),
            last_name=f"No{n}",
            phone_number=f"2547{n:08d}" if has_phone else None,
            role=role,
            delegate_id=delegate.id if delegate else None,
            coordinator_id=coordinator.id if coordinator else None,
        )
        db_session.add(member)
        db_session.commit()
        return member

    return _make


@pytest.fixture
def make_payment(db_session):
    def _make(
        payer: Member,
        settlement_date: date,
        amount: str,
        sha: str,
        delegate_commission: str = "0",
        coordinator_commission: str = "0",
        commission_delegate: Optional[Member] = None,
        commission_coordinator: Optional[Member] = None,
        status: str = "completed",
    ) -> Payment:
        payment = Payment(
            id=uuid.uuid4(),
            user_id=payer.id,
            amount=Decimal(amount),
            status=status,
            settlement_date=settlement_date,
            sha_portion=Decimal(sha),
            delegate_commission=Decimal(delegate_commission),
            coordinator_commission=Decimal(coordinator_commission),
            commission_delegate_id=commission_delegate.id if commission_delegate else None,
            commission_coordinator_id=(
                commission_coordinator.id if commission_coordinator else None
            ),
        )
        db_session.add(payment)
        db_session.commit()
        return payment

    return _make


@pytest.fixture
def hierarchy(make_member):
    """One coordinator, one delegate under them, and two members."""
    coordinator = make_member("coordinator")
    delegate = make_member("delegate", coordinator=coordinator)
    first = make_member(delegate=delegate, coordinator=coordinator)
    second = make_member(delegate=delegate, coordinator=coordinator)
    return {
        "coordinator": coordinator,
        "delegate": delegate,
        "members": [first, second],
    }


# ── HTTP ─────────────────────────────────────────────────────────────


@pytest.fixture(scope="function")
def client(db_session, container):
    """FastAPI test client with overridden DB dependency and fake gateways."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    original_container = app.state.container
    app.dependency_overrides[get_db] = override_get_db
    app.state.container = container
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.container = original_container
