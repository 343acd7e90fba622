"""
Inbound live-channel frames: parsing, routing and error replies.
"""
import pytest

from courier_dispatch.models import OrderStatus, UserRole
from courier_dispatch.realtime.messages import INBOUND_EVENTS
from courier_dispatch.realtime.router import MessageRouter
from tests.conftest import FakeConnection


@pytest.fixture
def connect(registry):
    def factory(role: str, user_id: int) -> FakeConnection:
        connection = FakeConnection(user_id=user_id, role=role)
        registry.add(connection)
        return connection
    return factory


async def send(container, connection, event, data=None):
    return await container.router.dispatch(container, connection, {"event": event, "data": data})


class TestRejectedFrames:
    async def test_unknown_event(self, container, connect):
        conn = connect(UserRole.COURIER.value, 1)

        assert await send(container, conn, "hackTheGibson") is None
        assert conn.last("error")["error"] == "unknown_event"

    async def test_frame_that_is_not_an_object(self, container, connect):
        conn = connect(UserRole.COURIER.value, 1)

        assert await container.router.dispatch(container, conn, ["ping"]) is None
        assert conn.last("error")["error"] == "unknown_event"

    async def test_malformed_payload(self, container, connect):
        conn = connect(UserRole.COURIER.value, 1)

        handled = await send(container, conn, "locationUpdate", {"latitude": "north"})

        assert handled is None
        error = conn.last("error")
        assert error["error"] == "malformed_message"
        assert error["event"] == "locationUpdate"
        assert "orderId" in error["detail"]

    async def test_business_error_becomes_error_event(self, container, connect):
        conn = connect(UserRole.COURIER.value, 1)

        handled = await send(container, conn, "deliverOrder", {"orderId": 404})

        assert handled == "deliverOrder"
        error = conn.last("error")
        assert error["error"] == "not_found"
        assert error["event"] == "deliverOrder"
        assert not conn.closed

    async def test_courier_cannot_request_live_couriers(self, container, connect):
        conn = connect(UserRole.COURIER.value, 1)

        await send(container, conn, "requestLiveCouriers")

        assert conn.last("error")["error"] == "forbidden"


class TestHandlers:
    async def test_ping_pong(self, container, connect):
        conn = connect(UserRole.RESTAURANT.value, 1)

        await send(container, conn, "ping")

        assert isinstance(conn.last("pong")["timestamp"], int)

    async def test_any_frame_resets_missed_heartbeats(self, container, connect):
        conn = connect(UserRole.COURIER.value, 1)
        conn.missed_heartbeats = 9

        await send(container, conn, "courierHeartbeat")

        assert conn.missed_heartbeats == 0
        assert conn.frames == []

    async def test_join_courier_room(self, container, registry, connect, make_courier):
        courier = await make_courier()
        conn = connect(UserRole.COURIER.value, courier.id)

        await send(container, conn, "joinCourierRoom", {"courierId": courier.id, "deviceInfo": "iPhone"})

        assert registry.is_online("courier", courier.id)
        assert conn.last("connectionSuccess")["courierId"] == courier.id

    async def test_join_restaurant_room_accepts_legacy_key(self, container, registry, connect, make_restaurant):
        restaurant = await make_restaurant()
        conn = connect(UserRole.RESTAURANT.value, restaurant.id)

        await send(container, conn, "joinRestaurantRoom", {"firmaid": restaurant.id})

        assert registry.is_online("restaurant", restaurant.id)

    async def test_location_for_another_courier_dropped(
        self, db, container, connect, go_online, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        order = await make_order(restaurant, courier=courier, status=OrderStatus.ASSIGNED)
        owner = go_online(UserRole.RESTAURANT.value, restaurant.id)
        impostor = connect(UserRole.COURIER.value, courier.id + 100)

        handled = await send(container, impostor, "locationUpdate", {
            "courierId": courier.id, "orderId": order.id, "restaurantId": restaurant.id,
            "latitude": 41.0, "longitude": 29.0,
        })

        assert handled == "locationUpdate"
        assert impostor.frames == []
        assert owner.frames == []

    async def test_location_from_carrier_relayed(
        self, container, connect, go_online, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        order = await make_order(restaurant, courier=courier, status=OrderStatus.ASSIGNED)
        owner = go_online(UserRole.RESTAURANT.value, restaurant.id)
        conn = connect(UserRole.COURIER.value, courier.id)

        await send(container, conn, "locationUpdate", {
            "orderId": order.id, "restaurantId": restaurant.id, "latitude": 41.0, "longitude": 29.0,
        })

        assert owner.last("locationUpdate")["courierId"] == courier.id

    async def test_deliver_over_live_channel(self, db, container, connect, make_restaurant, make_courier, make_order):
        restaurant = await make_restaurant()
        courier = await make_courier()
        order = await make_order(restaurant, courier=courier, status=OrderStatus.ASSIGNED)
        conn = connect(UserRole.COURIER.value, courier.id)

        await send(container, conn, "deliveryConfirmation", {"orderId": order.id})

        assert conn.last("orderStatusUpdate")["status"] == OrderStatus.AWAITING_APPROVAL.value

    async def test_active_orders_for_courier(self, container, connect, make_restaurant, make_courier, make_order):
        restaurant = await make_restaurant()
        courier = await make_courier()
        mine = await make_order(restaurant, courier=courier, status=OrderStatus.ASSIGNED)
        await make_order(restaurant)
        conn = connect(UserRole.COURIER.value, courier.id)

        await send(container, conn, "requestActiveOrders")

        assert [o["id"] for o in conn.last("activeOrders")["orders"]] == [mine.id]

    async def test_restaurant_live_couriers(self, container, connect, make_restaurant):
        restaurant = await make_restaurant()
        conn = connect(UserRole.RESTAURANT.value, restaurant.id)

        await send(container, conn, "requestLiveCouriers")

        assert conn.last("liveCouriersData")["couriers"] == []


class TestRegistration:
    def test_duplicate_handler_rejected(self):
        router = MessageRouter()

        @router.register("ping")
        async def first(ctx, message):
            return None

        with pytest.raises(ValueError):
            router.add("ping", first)

    def test_default_handlers_cover_every_inbound_event(self, container):
        assert set(container.router.events) == INBOUND_EVENTS
