"""
Pytest configuration for the dispatch tests.

An in-memory sqlite database (aiosqlite, StaticPool) stands in for
PostgreSQL; live connections and the push provider are replaced by
recording fakes so tests can assert on exactly what was sent where.
"""
import itertools
import os
from datetime import timedelta
from typing import Any, Optional

# Must be set before courier_dispatch builds its module-level engine.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENV_MODE", "development")
os.environ.setdefault("REAPER_ENABLED", "false")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from courier_dispatch import models  # noqa: F401
from courier_dispatch.container import build_container
from courier_dispatch.core.config import Settings
from courier_dispatch.core.security import hash_password
from courier_dispatch.core.timeutils import utcnow
from courier_dispatch.database import Base
from courier_dispatch.models import (
    Admin,
    Courier,
    Order,
    OrderStatus,
    PushToken,
    Restaurant,
    UserRole,
)
from courier_dispatch.realtime.connection import LiveConnection
from courier_dispatch.realtime.registry import (
    ADMINS_ROOM,
    COURIERS_ROOM,
    RESTAURANTS_ROOM,
    ConnectionRegistry,
    courier_room,
    restaurant_room,
)
from courier_dispatch.services.notifications.base import (
    BasePushService,
    PushMessage,
    PushResult,
)

PASSWORD = "secret123"
PASSWORD_HASH = hash_password(PASSWORD)


# ============================================================================
# FAKES
# ============================================================================

class FakeConnection(LiveConnection):
    """Live connection that records every frame instead of sending it."""

    def __init__(self, user_id: int, role: str, session_token: Optional[str] = None):
        super().__init__(user_id=user_id, role=role, session_token=session_token)
        self.frames: list[tuple[str, Any]] = []
        self.close_code: Optional[int] = None
        self.fail_sends = False

    async def send(self, event: str, data: Any = None) -> None:
        if self.fail_sends:
            raise ConnectionError("socket gone")
        self.frames.append((event, data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code

    def events(self) -> list[str]:
        return [event for event, _ in self.frames]

    def last(self, event: str) -> Any:
        for name, data in reversed(self.frames):
            if name == event:
                return data
        raise AssertionError(f"No '{event}' frame in {self.events()}")


class RecordingPushService(BasePushService):
    """Push provider that records messages; tokens in ``failing`` are rejected."""

    def __init__(self):
        self.messages: list[PushMessage] = []
        self.failing: set[str] = set()
        self.closed = False

    @property
    def provider_name(self) -> str:
        return "recording"

    async def send_many(self, messages: list[PushMessage]) -> list[PushResult]:
        results = []
        for message in messages:
            self.messages.append(message)
            if message.to in self.failing:
                results.append(PushResult(
                    success=False, token=message.to, error_message="DeviceNotRegistered", provider="recording"
                ))
            else:
                results.append(PushResult(success=True, token=message.to, provider="recording"))
        return results

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True

    def sent_to(self, token: str) -> list[PushMessage]:
        return [m for m in self.messages if m.to == token]


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        reaper_enabled=False,
        jwt_secret="test-secret-with-enough-length-for-hs256",
    )


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ============================================================================
# SERVICES
# ============================================================================

@pytest.fixture
def push():
    return RecordingPushService()


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def container(session_factory, settings, push, registry):
    return build_container(session_factory, settings=settings, push_service=push, registry=registry)


@pytest.fixture
def go_online(registry):
    """Bind a recording connection for an account, as a successful join would."""
    rooms = {
        UserRole.COURIER.value: lambda uid: [COURIERS_ROOM, courier_room(uid)],
        UserRole.RESTAURANT.value: lambda uid: [RESTAURANTS_ROOM, restaurant_room(uid)],
        UserRole.ADMIN.value: lambda uid: [ADMINS_ROOM],
    }

    def connect(role: str, user_id: int) -> FakeConnection:
        connection = FakeConnection(user_id=user_id, role=role)
        registry.bind_identity(connection)
        for room in rooms[role](user_id):
            registry.join(connection, room)
        return connection
    return connect


# ============================================================================
# FACTORIES
# ============================================================================

@pytest.fixture
def make_restaurant(db):
    counter = itertools.count(1)

    async def factory(**overrides) -> Restaurant:
        n = next(counter)
        restaurant = Restaurant(**{
            "name": f"Restaurant {n}",
            "email": f"restaurant{n}@example.com",
            "password_hash": PASSWORD_HASH,
            **overrides,
        })
        db.add(restaurant)
        await db.commit()
        await db.refresh(restaurant)
        return restaurant
    return factory


@pytest.fixture
def make_courier(db):
    counter = itertools.count(1)

    async def factory(**overrides) -> Courier:
        n = next(counter)
        courier = Courier(**{
            "name": f"Courier {n}",
            "email": f"courier{n}@example.com",
            "phone": f"0555000{n:04d}",
            "password_hash": PASSWORD_HASH,
            **overrides,
        })
        db.add(courier)
        await db.commit()
        await db.refresh(courier)
        return courier
    return factory


@pytest.fixture
def make_admin(db):
    counter = itertools.count(1)

    async def factory(**overrides) -> Admin:
        n = next(counter)
        admin = Admin(**{
            "name": f"Admin {n}",
            "email": f"admin{n}@example.com",
            "password_hash": PASSWORD_HASH,
            **overrides,
        })
        db.add(admin)
        await db.commit()
        await db.refresh(admin)
        return admin
    return factory


@pytest.fixture
def make_order(db):
    async def factory(
        restaurant: Restaurant,
        courier: Optional[Courier] = None,
        status: OrderStatus = OrderStatus.PENDING,
        age: timedelta = timedelta(0),
        held_for: Optional[timedelta] = None,
        **overrides,
    ) -> Order:
        now = utcnow()
        order = Order(**{
            "restaurant_id": restaurant.id,
            "restaurant_name": restaurant.name,
            "neighborhood": "Moda",
            "customer_address": "Moda Cd. No 1",
            "payment_method": "nakit",
            "courier_fee": 45.0,
            "status": status,
            "courier_id": courier.id if courier else None,
            "created_at": now - age,
            "accepted_at": (now - held_for) if held_for is not None else (now if courier else None),
            **overrides,
        })
        db.add(order)
        await db.commit()
        await db.refresh(order)
        return order
    return factory


@pytest.fixture
def make_push_token(db):
    async def factory(user_id: int, user_type: str, token: str, platform: str = "android") -> PushToken:
        row = PushToken(user_id=user_id, user_type=user_type, token=token, platform=platform, is_active=True)
        db.add(row)
        await db.commit()
        await db.refresh(row)
        return row
    return factory
