"""Shared test fixtures for all test modules."""

import contextlib
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import cadence.models  # noqa: F401  registers every table on Base.metadata
from cadence.core import database as db_module
from cadence.core.database import Base, get_db
from cadence.models.customer import Customer
from cadence.models.plan import Plan
from cadence.models.tenant import Tenant
from cadence.services import webhook_dispatcher as dispatcher_module

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

# Well-known tenant used across all tests; its GST state is Karnataka
DEFAULT_TENANT_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
DEFAULT_TENANT_STATE = "KA"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def today(self):
        return self.current.date()

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class RecordingExecutor:
    """Delivery executor that records submitted log ids instead of delivering."""

    def __init__(self):
        self.submitted: list[uuid.UUID] = []

    def submit(self, log_id: uuid.UUID) -> None:
        self.submitted.append(log_id)


def _seed_default_tenant(session: Session) -> None:
    tenant = session.query(Tenant).filter(Tenant.id == DEFAULT_TENANT_ID).first()
    if tenant is None:
        session.add(
            Tenant(
                id=DEFAULT_TENANT_ID,
                name="Default Test Tenant",
                state_code=DEFAULT_TENANT_STATE,
                invoice_prefix="INV",
                net_payment_term=30,
            )
        )
        session.commit()


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    session = _TestSessionLocal()
    try:
        _seed_default_tenant(session)
    finally:
        session.close()

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture(autouse=True)
def delivery_executor(monkeypatch):
    """Replace the threaded default executor so no test spawns delivery threads."""
    executor = RecordingExecutor()
    monkeypatch.setattr(dispatcher_module, "_default_executor", executor)
    return executor


@pytest.fixture
def db_session():
    """Create a database session for testing."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def tenant_id():
    return DEFAULT_TENANT_ID


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 15, 10, 0, tzinfo=UTC))


@pytest.fixture
def create_customer(db_session):
    """Factory for customers of the default tenant."""

    def _create(
        external_id: str | None = None,
        state_code: str | None = DEFAULT_TENANT_STATE,
        payment_terms: int | None = None,
        status: str = "active",
        tenant_id: uuid.UUID = DEFAULT_TENANT_ID,
    ) -> Customer:
        customer = Customer(
            tenant_id=tenant_id,
            external_id=external_id or f"cust-{uuid.uuid4().hex[:8]}",
            name="Test Customer",
            email="billing@example.com",
            state_code=state_code,
            payment_terms=payment_terms,
            status=status,
        )
        db_session.add(customer)
        db_session.commit()
        return customer

    return _create


@pytest.fixture
def create_plan(db_session):
    """Factory for plans of the default tenant."""

    def _create(
        code: str | None = None,
        price_cents: int = 49900,
        billing_cycle: str = "monthly",
        billing_interval: int = 1,
        trial_days: int = 0,
        is_active: bool = True,
        tenant_id: uuid.UUID = DEFAULT_TENANT_ID,
    ) -> Plan:
        plan = Plan(
            tenant_id=tenant_id,
            code=code or f"plan-{uuid.uuid4().hex[:8]}",
            name="Pro",
            price_cents=price_cents,
            billing_cycle=billing_cycle,
            billing_interval=billing_interval,
            trial_days=trial_days,
            is_active=is_active,
        )
        db_session.add(plan)
        db_session.commit()
        return plan

    return _create


@pytest.fixture
def gst_rate():
    return Decimal("18")
