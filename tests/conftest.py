"""
tests/conftest.py
Shared fixtures: a fresh database per test, an HTTP client wired to it,
customers/admins, and a notifier that records instead of enqueueing.

Runs against TEST_DATABASE_URL when set (e.g. a disposable PostgreSQL),
otherwise against a temp-file SQLite database through aiosqlite.
"""

import os
import tempfile

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'detailing_app_test.db')}",
)
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

from datetime import date, time, timedelta
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config.database import Base, build_engine, build_session_factory, get_db, get_session_factory
from config.redis_client import get_redis
from main import app
from services.booking.repository import BookingRepository
from services.booking.slots import TimeSlotRegistry, add_minutes
from services.notification.dispatcher import get_notifier
from shared.models.models import Booking, BookingStatus, TimeSlot, User, UserRole
from shared.utils.security import create_access_token


# ── Fakes ──────────────────────────────────────────────────────────────────────

class FakeRedis:
    """Just enough of redis.asyncio.Redis for the JWT deny-list."""

    def __init__(self):
        self.keys: set[str] = set()

    async def exists(self, key: str) -> int:
        return 1 if key in self.keys else 0


class RecordingNotifier:
    """Stands in for NotificationDispatcher; remembers every event."""

    def __init__(self):
        self.events: list[tuple] = []

    async def notify(self, booking, customer, old_status, new_status):
        self.events.append((
            "notify",
            booking.booking_reference,
            BookingStatus(old_status).value if old_status else None,
            BookingStatus(new_status).value,
        ))

    async def reschedule_requested(self, request, booking, customer):
        self.events.append(("reschedule_requested", booking.booking_reference, str(request.id)))

    async def reschedule_declined(self, request, booking, customer):
        self.events.append(("reschedule_declined", booking.booking_reference, str(request.id)))

    def statuses(self) -> list[tuple]:
        return [(e[2], e[3]) for e in self.events if e[0] == "notify"]


class FailingNotifier:
    """Every notification blows up."""

    async def notify(self, *args):
        raise RuntimeError("broker down")

    async def reschedule_requested(self, *args):
        raise RuntimeError("broker down")

    async def reschedule_declined(self, *args):
        raise RuntimeError("broker down")


# ── Helpers ────────────────────────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


def future(days: int) -> date:
    return date.today() + timedelta(days=days)


async def create_slot(
    session_factory,
    slot_date: date,
    start: time,
    minutes: int = 120,
) -> TimeSlot:
    async with session_factory() as db:
        slot = await TimeSlotRegistry(db).create(slot_date, start, add_minutes(start, minutes))
        await db.commit()
        return slot


async def create_booking(
    session_factory,
    customer: User,
    slot: TimeSlot,
    status: Optional[BookingStatus] = None,
    total_price: Decimal = Decimal("89.99"),
) -> Booking:
    """Book `slot` for `customer` through the repository, then walk it to `status`."""
    repo = BookingRepository(session_factory)
    booking = await repo.create(customer.id, slot.id, total_price)
    assert isinstance(booking, Booking), booking

    path = {
        None: [],
        BookingStatus.PENDING: [],
        BookingStatus.CONFIRMED: [BookingStatus.CONFIRMED],
        BookingStatus.IN_PROGRESS: [BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS],
        BookingStatus.COMPLETED: [
            BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED
        ],
        BookingStatus.CANCELLED: [BookingStatus.CANCELLED],
        BookingStatus.DECLINED: [BookingStatus.DECLINED],
    }[status]
    for step in path:
        result = await repo.transition_status(booking.id, step)
        assert result.ok, result
    return await repo.get(booking.id)


async def reload(session_factory, model, pk):
    async with session_factory() as db:
        return await db.get(model, pk)


# ── Database ───────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine = build_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def client(session_factory, notifier, fake_redis):
    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_redis] = lambda: fake_redis

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Users ──────────────────────────────────────────────────────────────────────

async def _create_user(session_factory, email: str, name: str, role: UserRole) -> User:
    async with session_factory() as db:
        user = User(email=email, name=name, phone="07700900123", role=role)
        db.add(user)
        await db.commit()
        return user


@pytest_asyncio.fixture
async def user(session_factory) -> User:
    return await _create_user(session_factory, "alex@example.com", "Alex Driver", UserRole.CUSTOMER)


@pytest_asyncio.fixture
async def other_user(session_factory) -> User:
    return await _create_user(session_factory, "sam@example.com", "Sam Other", UserRole.CUSTOMER)


@pytest_asyncio.fixture
async def admin_user(session_factory) -> User:
    return await _create_user(session_factory, "ops@example.com", "Ops Admin", UserRole.ADMIN)
