"""
HTTP and WebSocket surface.

HTTP tests drive the app in-process over httpx's ASGI transport with the
test container preset on ``app.state``. The live channel is exercised
through Starlette's TestClient, which runs the app (and its lifespan) on
its own event loop, so that test builds its own engine there.
"""
import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from courier_dispatch.container import build_container
from courier_dispatch.database import Base, get_db
from courier_dispatch.main import app
from courier_dispatch.models import Courier, PushToken
from courier_dispatch.realtime.registry import ConnectionRegistry
from tests.conftest import PASSWORD, PASSWORD_HASH


def db_override(session_factory):
    async def override():
        async with session_factory() as session:
            yield session
    return override


@pytest.fixture
async def client(container, session_factory):
    app.state.container = container
    app.dependency_overrides[get_db] = db_override(session_factory)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()
    del app.state.container


async def login(client, email: str, role: str) -> str:
    response = await client.post("/api/auth/login", json={"email": email, "password": PASSWORD, "role": role})
    assert response.status_code == 200, response.text
    return response.json()["token"]


def auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestAuth:
    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200

    async def test_bad_credentials(self, client, make_courier):
        courier = await make_courier()

        response = await client.post(
            "/api/auth/login", json={"email": courier.email, "password": "wrong", "role": "courier"}
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_credentials"

    async def test_missing_token(self, client):
        response = await client.get("/api/orders/pending-approval")

        assert response.status_code == 401
        assert response.json()["forceLogout"] is True

    async def test_new_login_invalidates_old_token(self, client, make_courier):
        courier = await make_courier()
        old = await login(client, courier.email, "courier")
        new = await login(client, courier.email, "courier")

        stale = await client.get("/api/orders/active", headers=auth(old))
        fresh = await client.get("/api/orders/active", headers=auth(new))

        assert stale.status_code == 401
        assert stale.json()["error"] == "session_expired"
        assert fresh.status_code == 200

    async def test_logout(self, client, make_restaurant):
        restaurant = await make_restaurant()
        token = await login(client, restaurant.email, "restaurant")

        assert (await client.post("/api/auth/logout", headers=auth(token))).status_code == 200
        assert (await client.get("/api/orders/restaurant", headers=auth(token))).status_code == 401


class TestOrderFlow:
    async def test_create_accept_deliver_approve(self, client, make_restaurant, make_courier):
        restaurant = await make_restaurant()
        courier = await make_courier()
        r_token = await login(client, restaurant.email, "restaurant")
        c_token = await login(client, courier.email, "courier")

        created = await client.post(
            "/api/orders",
            json={"neighborhood": "Moda", "payment_method": "nakit", "courier_fee": 45},
            headers=auth(r_token),
        )
        assert created.status_code == 201, created.text
        order = created.json()["order"]
        assert order["status"] == "pending"
        assert order["restaurant_id"] == restaurant.id

        available = await client.get("/api/orders/available", headers=auth(c_token))
        assert [o["id"] for o in available.json()["orders"]] == [order["id"]]

        accepted = await client.post("/api/orders/accept", json={"order_ids": [order["id"]]}, headers=auth(c_token))
        assert accepted.json() == {"success": True, "accepted": [order["id"]], "failed": []}

        delivered = await client.post(f"/api/orders/{order['id']}/deliver", headers=auth(c_token))
        assert delivered.json()["order"]["status"] == "awaiting_approval"

        approved = await client.post(f"/api/orders/{order['id']}/approve", headers=auth(r_token))
        assert approved.json()["order"]["status"] == "delivered"

    async def test_second_accept_reports_already_taken(self, client, make_restaurant, make_courier, make_order):
        restaurant = await make_restaurant()
        first, second = await make_courier(), await make_courier()
        order = await make_order(restaurant)
        t1 = await login(client, first.email, "courier")
        t2 = await login(client, second.email, "courier")

        await client.post("/api/orders/accept", json={"order_ids": [order.id]}, headers=auth(t1))
        late = await client.post("/api/orders/accept", json={"order_ids": [order.id]}, headers=auth(t2))

        assert late.json()["success"] is False
        assert late.json()["failed"] == [{"order_id": order.id, "reason": "already_taken"}]

    async def test_courier_cannot_read_restaurant_orders(self, client, make_courier):
        courier = await make_courier()
        token = await login(client, courier.email, "courier")

        response = await client.get("/api/orders/restaurant", headers=auth(token))

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    async def test_unknown_order(self, client, make_restaurant):
        restaurant = await make_restaurant()
        token = await login(client, restaurant.email, "restaurant")

        response = await client.get("/api/orders/999", headers=auth(token))

        assert response.status_code == 404


class TestAccounts:
    async def test_push_token_upsert(self, client, db, make_courier):
        courier = await make_courier()
        token = await login(client, courier.email, "courier")

        for device in ("ExponentPushToken[first]", "ExponentPushToken[second]"):
            response = await client.post(
                "/api/push-tokens", json={"token": device, "platform": "android"}, headers=auth(token)
            )
            assert response.status_code == 200

        rows = (await db.execute(select(PushToken.token).where(PushToken.user_id == courier.id))).scalars().all()
        assert rows == ["ExponentPushToken[second]"]

    async def test_preferences_only_for_self(self, client, make_restaurant, make_courier):
        mine, other = await make_restaurant(), await make_restaurant()
        courier = await make_courier()
        token = await login(client, mine.email, "restaurant")
        body = {"courier_visibility_mode": "selected_couriers", "selected_courier_ids": [courier.id]}

        ok = await client.put(f"/api/restaurants/{mine.id}/preferences", json=body, headers=auth(token))
        denied = await client.put(f"/api/restaurants/{other.id}/preferences", json=body, headers=auth(token))

        assert ok.json() == body
        assert denied.status_code == 403

    async def test_admin_blocks_courier(self, client, db, make_admin, make_courier):
        admin = await make_admin()
        courier = await make_courier()
        admin_token = await login(client, admin.email, "admin")
        courier_token = await login(client, courier.email, "courier")

        response = await client.post(f"/api/couriers/{courier.id}/block", headers=auth(admin_token))

        assert response.status_code == 200
        await db.refresh(courier)
        assert courier.is_blocked
        assert (await client.get("/api/orders/active", headers=auth(courier_token))).status_code == 401


# =============================================================================
# LIVE CHANNEL
# =============================================================================

async def create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def seed_courier(session_factory):
    async def seed() -> Courier:
        async with session_factory() as session:
            courier = Courier(name="Live Courier", email="live@example.com", phone="05550000000",
                              password_hash=PASSWORD_HASH)
            session.add(courier)
            await session.commit()
            return courier
    return seed


@pytest.fixture
def live_client(settings, push):
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    app.state.container = build_container(
        session_factory, settings=settings, push_service=push, registry=ConnectionRegistry()
    )
    app.dependency_overrides[get_db] = db_override(session_factory)
    with TestClient(app) as test_client:
        test_client.portal.call(create_schema, engine)
        yield test_client, session_factory
        test_client.portal.call(engine.dispose)
    app.dependency_overrides.clear()
    del app.state.container


def receive_until(ws, event: str, limit: int = 5) -> dict:
    for _ in range(limit):
        frame = ws.receive_json()
        if frame["event"] == event:
            return frame["data"]
    raise AssertionError(f"No '{event}' frame received")


class TestLiveChannel:
    def test_invalid_token_gets_force_logout(self, live_client):
        test_client, _ = live_client

        with test_client.websocket_connect("/ws?token=garbage") as ws:
            frame = ws.receive_json()

        assert frame["event"] == "forceLogout"
        assert frame["data"]["reason"] == "SESSION_INVALID"

    def test_courier_joins_and_pings(self, live_client):
        test_client, session_factory = live_client
        courier = test_client.portal.call(seed_courier(session_factory))
        token = test_client.post(
            "/api/auth/login", json={"email": courier.email, "password": PASSWORD, "role": "courier"}
        ).json()["token"]

        with test_client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_json({"event": "joinCourierRoom", "data": {"courierId": courier.id}})
            joined = receive_until(ws, "connectionSuccess")

            ws.send_text("not json")
            error = receive_until(ws, "error")

            ws.send_json({"event": "ping"})
            pong = receive_until(ws, "pong")

        assert joined["courierId"] == courier.id
        assert error["error"] == "malformed_message"
        assert "timestamp" in pong
        assert not app.state.container.registry.is_online("courier", courier.id)
