"""
Pytest configuration and shared fixtures for the order lifecycle tests.

Provides an in-memory SQLite order store, a recording notification sink,
a private change feed, seeded customers/specialists/orders and an HTTP
client bound to the FastAPI app.
"""
import os
import sys
from datetime import date, datetime
from decimal import Decimal
from typing import AsyncGenerator

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import settings
from database import Base, get_db
from deps import change_feed, notification_sink
from services.change_feed import ChangeFeed
from services.notification_service import NotificationSink

# ── Test Configuration ───────────────────────────────────────────────
settings.readiness_scheduler_enabled = False
settings.admin_alert_number = ""

# Fixed clock shared by the seeded rows: 2026-03-10 09:00 (naive UTC).
NOW = datetime(2026, 3, 10, 9, 0)


# ── Notification Fixtures ────────────────────────────────────────────


class RecordingSink(NotificationSink):
    """Keeps every message instead of sending it; can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    async def send(self, destination: str, message: str) -> None:
        if self.fail:
            raise RuntimeError("gateway down")
        self.sent.append((destination, message))

    def to(self, destination: str) -> list[str]:
        return [m for d, m in self.sent if d == destination]


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def failing_sink() -> RecordingSink:
    return RecordingSink(fail=True)


@pytest.fixture
def feed() -> ChangeFeed:
    """A private feed so subscriptions never leak between tests."""
    return ChangeFeed()


# ── Database Fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    """
    Session factory over a fresh in-memory SQLite database.

    Uses StaticPool so every session sees the same in-memory database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ── Test Data Fixtures ────────────────────────────────────────────────


@pytest_asyncio.fixture
async def customer(db_session: AsyncSession):
    from db_models import Customer

    row = Customer(name="Sara", whatsapp_number="+966500000001")
    db_session.add(row)
    await db_session.commit()
    await db_session.refresh(row)
    return row


@pytest_asyncio.fixture
async def specialist(db_session: AsyncSession):
    from db_models import Specialist

    row = Specialist(name="Huda", phone="+966500000002")
    db_session.add(row)
    await db_session.commit()
    await db_session.refresh(row)
    return row


@pytest_asyncio.fixture
async def other_specialist(db_session: AsyncSession):
    from db_models import Specialist

    row = Specialist(name="Mona", phone="+966500000003")
    db_session.add(row)
    await db_session.commit()
    await db_session.refresh(row)
    return row


@pytest.fixture
def make_order(db_session: AsyncSession, customer):
    """Factory: insert an order for the seeded customer with any overrides."""
    from db_models import Order

    async def _make(**fields):
        values = {
            "customer_id": customer.id,
            "status": "upcoming",
            "total_amount": Decimal("100.00"),
            "currency": "SAR",
            "created_at": NOW,
        }
        values.update(fields)
        order = Order(**values)
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _make


@pytest_asyncio.fixture
async def awaiting_order(make_order, specialist, db_session):
    """Upcoming order whose specialist has been asked to confirm readiness."""
    from db_models import OrderSpecialist

    order = await make_order(
        order_number="A10023",
        specialist_id=specialist.id,
        booking_date=date(2026, 3, 10),
        booking_time="10:00-12:00",
        specialist_readiness_status="pending",
        readiness_check_sent_at=datetime(2026, 3, 10, 8, 50),
    )
    db_session.add(
        OrderSpecialist(
            order_id=order.id,
            specialist_id=specialist.id,
            is_accepted=True,
            quoted_price=Decimal("100.00"),
            quoted_at=datetime(2026, 3, 9, 12, 0),
        )
    )
    await db_session.commit()
    return order


# ── HTTP Client ───────────────────────────────────────────────────────


@pytest_asyncio.fixture(scope="function")
async def client(db_session, sink, feed) -> AsyncGenerator[AsyncClient, None]:
    """
    AsyncClient over the app with the test store, sink and feed injected.

    ASGITransport does not run the lifespan, so no dispatcher is started.
    """
    from main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[notification_sink] = lambda: sink
    app.dependency_overrides[change_feed] = lambda: feed

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
