import uuid
from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import JSON, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrowguard.common.dates import utcnow
from escrowguard.common.enums import BookingStatus, EscrowStatus, UserRole
from escrowguard.common.security import create_access_token
from escrowguard.core.disputes.arbitration import BindingDecisionEngine
from escrowguard.core.disputes.effects import SideEffects
from escrowguard.core.disputes.mediation import MediationProposalEngine
from escrowguard.core.disputes.negotiation import NegotiationExchange
from escrowguard.core.disputes.scheduler import PhaseScheduler
from escrowguard.core.disputes.service import DisputeService
from escrowguard.core.escrow.fees import FeeAssessor
from escrowguard.core.escrow.ledger import EscrowLedger
from escrowguard.core.escrow.resolution import ResolutionExecutor
from escrowguard.db.base import Base
from escrowguard.db.models import *  # noqa: F401,F403 - ensure all models loaded
from escrowguard.db.models.booking import Booking
from escrowguard.db.models.escrow import EscrowTransaction
from escrowguard.db.models.user import User
from escrowguard.tests.fakes import FakeMediationProvider, FakePaymentProcessor


# Make JSONB render as JSON for SQLite
@event.listens_for(Base.metadata, "before_create")
def _remap_jsonb(target, connection, **kw):
    if connection.dialect.name == "sqlite":
        for table in target.tables.values():
            for column in table.columns:
                if isinstance(column.type, JSONB):
                    column.type = JSON()


# ---------- Database ----------


@pytest.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    # Let SQLAlchemy own BEGIN so SAVEPOINTs (session.begin_nested) work on SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def enqueued(monkeypatch):
    """Capture Celery enqueues instead of sending them to a broker."""
    calls: list[tuple[str, tuple]] = []

    def _record(task_name, *args):
        calls.append((task_name, args))

    monkeypatch.setattr("escrowguard.core.disputes.effects.enqueue", _record)
    return calls


# ---------- Engines ----------


@pytest.fixture
def processor():
    return FakePaymentProcessor()


@pytest.fixture
def provider():
    return FakeMediationProvider()


@pytest.fixture
def executor(processor):
    return ResolutionExecutor(processor)


@pytest.fixture
def ledger(processor):
    return EscrowLedger(processor)


@pytest.fixture
def fees(processor):
    return FeeAssessor(processor)


@pytest.fixture
def service(ledger, fees):
    return DisputeService(ledger, fees)


@pytest.fixture
def negotiation(executor):
    return NegotiationExchange(executor)


@pytest.fixture
def mediation(provider, executor):
    return MediationProposalEngine(provider, executor)


@pytest.fixture
def arbitration(provider, executor):
    return BindingDecisionEngine(provider, executor)


@pytest.fixture
def scheduler(executor):
    return PhaseScheduler(executor)


@pytest.fixture
def effects():
    return SideEffects()


@pytest.fixture
def t0():
    return utcnow().replace(microsecond=0)


# ---------- Parties and funds ----------


async def _make_user(db, role: UserRole, **kw) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{role.value}_{uuid.uuid4().hex[:8]}@test.com",
        full_name=f"Test {role.value.title()}",
        role=role.value,
        **kw,
    )
    db.add(user)
    await db.flush()
    return user


@pytest.fixture
async def customer(db_session):
    return await _make_user(
        db_session, UserRole.CUSTOMER, stripe_customer_id="cus_customer", default_payment_method_id="pm_customer"
    )


@pytest.fixture
async def vendor(db_session):
    return await _make_user(
        db_session,
        UserRole.VENDOR,
        stripe_customer_id="cus_vendor",
        default_payment_method_id="pm_vendor",
        stripe_account_id="acct_vendor",
    )


@pytest.fixture
async def stranger(db_session):
    return await _make_user(db_session, UserRole.CUSTOMER)


@pytest.fixture
async def admin(db_session):
    return await _make_user(db_session, UserRole.ADMIN)


@pytest.fixture
async def booking(db_session, customer, vendor):
    booking = Booking(
        customer_id=customer.id,
        vendor_id=vendor.id,
        title="Deep clean, 3-room apartment",
        status=BookingStatus.COMPLETED.value,
    )
    db_session.add(booking)
    await db_session.flush()
    return booking


@pytest.fixture
async def escrow(db_session, booking):
    escrow = EscrowTransaction(
        booking_id=booking.id,
        customer_id=booking.customer_id,
        vendor_id=booking.vendor_id,
        original_amount=Decimal("200.00"),
        amount=Decimal("200.00"),
        refunded_amount=Decimal("0.00"),
        currency="chf",
        platform_fee=Decimal("20.00"),
        vendor_amount=Decimal("180.00"),
        status=EscrowStatus.HELD.value,
        stripe_payment_intent_id="pi_escrow_test",
    )
    db_session.add(escrow)
    await db_session.flush()
    return escrow


@pytest.fixture
async def dispute(db_session, service, customer, booking, escrow, effects, t0):
    """A dispute the customer opened at ``t0``, now in negotiation."""
    return await service.open_dispute(
        db_session,
        customer,
        booking.id,
        "incomplete_work",
        effects,
        description="Balcony and bathroom were skipped",
        evidence=["photo-balcony.jpg"],
        now=t0,
    )


# ---------- HTTP ----------


@pytest.fixture
async def client(db_session, processor, provider):
    from escrowguard.api.deps import get_db, get_mediation_provider, get_payment_processor
    from escrowguard.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_processor] = lambda: processor
    app.dependency_overrides[get_mediation_provider] = lambda: provider

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def _headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}


@pytest.fixture
def customer_headers(customer):
    return _headers(customer)


@pytest.fixture
def vendor_headers(vendor):
    return _headers(vendor)


@pytest.fixture
def stranger_headers(stranger):
    return _headers(stranger)


@pytest.fixture
def admin_headers(admin):
    return _headers(admin)
