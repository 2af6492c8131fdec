import os
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("JWT_SECRET", "test-secret-for-unit-tests-minimum-32-chars")
os.environ.setdefault("PAYHERE_MERCHANT_ID", "1211149")
os.environ.setdefault("PAYHERE_MERCHANT_SECRET", "test-merchant-secret")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.auth.service import create_access_token
from app.database import Base, get_db
from app.main import app
from app.models.booking import Booking
from app.models.enums import BookingStatus, PaymentStatus, ProviderKind, UserRole
from app.models.payment import Payment
from app.models.provider import Provider
from app.models.user import User
from app.services import payhere, slot_hold

# Use SQLite for tests (in-memory)
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

engine = create_async_engine(TEST_DB_URL, echo=False)
test_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# A Monday well in the future, so default business hours (09:00-21:00 UTC) apply
# and every booking starts more than a week ahead.
BOOKING_DAY = datetime(2031, 3, 3, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, days: int = 0) -> datetime:
    return BOOKING_DAY + timedelta(days=days, hours=hour, minutes=minute)


class FakeRedis:
    """Just enough of redis.asyncio for slot holds and scheduler locks."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttls[key] = ex or -1
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, key):
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0

    async def ttl(self, key):
        return self.ttls.get(key, -2)

    async def aclose(self):
        pass

    async def scan_iter(self, match=None, count=None):
        prefix = (match or "*").rstrip("*")
        for key in list(self.store):
            if key.startswith(prefix):
                yield key


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    redis = FakeRedis()
    monkeypatch.setattr(slot_hold, "_redis", redis)
    return redis


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with test_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client(db: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    # Reset rate limiter storage between tests to avoid 429 errors
    from app.utils.rate_limit import limiter
    if hasattr(limiter, "_limiter") and hasattr(limiter._limiter, "_storage"):
        limiter._limiter._storage.reset()
    elif hasattr(limiter, "reset"):
        limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def _make_user(db: AsyncSession, email: str, role: UserRole) -> User:
    user = User(
        id=uuid.uuid4(),
        email=email,
        role=role,
        first_name="Test",
        last_name=role.value.title(),
        phone="+94770000000",
        city="Colombo",
        is_active=True,
    )
    db.add(user)
    await db.flush()
    return user


@pytest_asyncio.fixture
async def client_user(db: AsyncSession) -> User:
    return await _make_user(db, "client@test.com", UserRole.CLIENT)


@pytest_asyncio.fixture
async def other_client(db: AsyncSession) -> User:
    return await _make_user(db, "other-client@test.com", UserRole.CLIENT)


@pytest_asyncio.fixture
async def studio_user(db: AsyncSession) -> User:
    return await _make_user(db, "studio@test.com", UserRole.STUDIO)


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await _make_user(db, "admin@test.com", UserRole.ADMIN)


@pytest_asyncio.fixture
async def studio(db: AsyncSession, studio_user: User) -> Provider:
    provider = Provider(
        id=uuid.uuid4(),
        kind=ProviderKind.STUDIO,
        user_id=studio_user.id,
        name="Harbour Sound Studio",
        hourly_rate=Decimal("2500.00"),
        currency="LKR",
        services=[
            {"name": "Mixing", "price": "5000.00", "category": "production", "duration_mins": 120},
            {"name": "Mastering", "price": "3000.00", "category": "production"},
        ],
        equipment=[
            {"name": "Neumann U87", "rental_price": "1500.00"},
        ],
        is_active=True,
    )
    db.add(provider)
    await db.flush()
    return provider


async def make_booking(
    db: AsyncSession,
    client: User,
    provider: Provider,
    start: datetime | None = None,
    end: datetime | None = None,
    status: BookingStatus = BookingStatus.RESERVATION_PENDING,
    total: Decimal = Decimal("5000.00"),
    created_at: datetime | None = None,
    with_payment: bool = True,
) -> Booking:
    start = start or at(10)
    end = end or start + timedelta(hours=2)
    booking_id = uuid.uuid4()
    order_id = payhere.generate_order_id(booking_id)
    booking = Booking(
        id=booking_id,
        client_id=client.id,
        provider_id=provider.id,
        provider_kind=provider.kind,
        start_time=start,
        end_time=end,
        status=status,
        base_price=total,
        total_price=total,
        currency="LKR",
        services=[],
        equipment=[],
        payhere_order_id=order_id,
    )
    if created_at is not None:
        booking.created_at = created_at
    db.add(booking)
    if with_payment:
        payment = Payment(
            payhere_order_id=order_id,
            booking_id=booking_id,
            client_id=client.id,
            provider_id=provider.id,
            amount=total,
            currency="LKR",
            booking_snapshot={"total_price": str(total)},
            status_history=[],
        )
        payment.record_status(PaymentStatus.PENDING, "system", reason="Checkout initiated")
        db.add(payment)
    await db.flush()
    return booking


def notification_form(
    order_id: str,
    amount: str = "5000.00",
    status_code: int = 2,
    payment_id: str = "320025071234",
    currency: str = "LKR",
    booking_id: str | None = None,
    secret: str | None = None,
) -> dict[str, str]:
    """A PayHere notification signed the way the gateway signs it."""
    merchant_id = os.environ["PAYHERE_MERCHANT_ID"]
    return {
        "merchant_id": merchant_id,
        "order_id": order_id,
        "payment_id": payment_id,
        "payhere_amount": amount,
        "payhere_currency": currency,
        "status_code": str(status_code),
        "md5sig": payhere.checkout_hash(merchant_id, order_id, amount, currency, secret),
        "custom_1": booking_id or "",
        "method": "VISA",
        "status_message": "Successfully completed the payment.",
    }


def client_token(user: User) -> str:
    return create_access_token(str(user.id))


def provider_token(user: User) -> str:
    return create_access_token(str(user.id))


def admin_token(user: User) -> str:
    return create_access_token(str(user.id))


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
