"""
Order lifecycle tests.

Covers the guarded transitions (accept, assign, deliver, approve, cancel,
delete), race resolution between concurrent accepts, and who gets told
about each change.
"""
import asyncio

import pytest
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from courier_dispatch.container import build_container
from courier_dispatch.core.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    OrderAlreadyTakenError,
)
from courier_dispatch.core.security import Actor
from courier_dispatch.database import Base
from courier_dispatch.models import Courier, Order, OrderStatus, Restaurant, UserRole
from courier_dispatch.realtime.registry import ConnectionRegistry
from scripts.verify import count_courier_mismatches


def courier_actor(courier) -> Actor:
    return Actor(user_id=courier.id, role=UserRole.COURIER.value)


def restaurant_actor(restaurant) -> Actor:
    return Actor(user_id=restaurant.id, role=UserRole.RESTAURANT.value)


ADMIN = Actor(user_id=1, role=UserRole.ADMIN.value)


class TestCreateOrder:
    """Order creation and the new-order broadcast"""

    async def test_restaurant_creates_pending_order_and_live_couriers_hear_it(
        self, db, container, make_restaurant, make_courier, go_online
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        conn = go_online(UserRole.COURIER.value, courier.id)

        order, result = await container.lifecycle.create_order(
            db, restaurant_actor(restaurant), {"neighborhood": "Moda", "payment_method": "online"}
        )

        assert order.status == OrderStatus.PENDING
        assert order.courier_id is None
        assert order.restaurant_name == restaurant.name
        assert result.live_sent == 1
        assert conn.last("new_order")["id"] == order.id

    async def test_offline_couriers_get_push(
        self, db, container, push, make_restaurant, make_courier, make_push_token
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        await make_push_token(courier.id, UserRole.COURIER.value, "ExponentPushToken[courier-1]")

        order, result = await container.lifecycle.create_order(
            db, restaurant_actor(restaurant), {"neighborhood": "Moda"}
        )

        assert result.push_sent == 1
        [message] = push.sent_to("ExponentPushToken[courier-1]")
        assert message.data["type"] == "new_order"
        assert message.data["orderId"] == order.id

    async def test_courier_cannot_create_orders(self, db, container, make_courier):
        courier = await make_courier()
        with pytest.raises(AuthorizationError):
            await container.lifecycle.create_order(db, courier_actor(courier), {"neighborhood": "Moda"})

    async def test_admin_must_name_restaurant(self, db, container, make_restaurant):
        restaurant = await make_restaurant()
        order, _ = await container.lifecycle.create_order(
            db, ADMIN, {"restaurant_id": restaurant.id, "neighborhood": "Moda"}
        )
        assert order.restaurant_id == restaurant.id


class TestAcceptOrder:
    """pending -> assigned"""

    async def test_accept_assigns_courier_and_counts_package(
        self, db, container, make_restaurant, make_courier, make_order, go_online
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        order = await make_order(restaurant)
        restaurant_conn = go_online(UserRole.RESTAURANT.value, restaurant.id)

        outcome = await container.lifecycle.accept_orders(db, courier_actor(courier), [order.id])

        assert [o.id for o in outcome.accepted] == [order.id]
        assert outcome.failed == []
        accepted = outcome.accepted[0]
        assert accepted.status == OrderStatus.ASSIGNED
        assert accepted.courier_id == courier.id
        assert accepted.accepted_at is not None

        await db.refresh(courier)
        assert courier.total_packages == 1

        update = restaurant_conn.last("orderStatusUpdate")
        assert update["orderId"] == order.id
        assert update["courierName"] == courier.name

    async def test_second_accept_is_already_taken(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        first, second = await make_courier(), await make_courier()
        order = await make_order(restaurant)

        await container.lifecycle.accept_orders(db, courier_actor(first), [order.id])
        outcome = await container.lifecycle.accept_orders(db, courier_actor(second), [order.id])

        assert outcome.accepted == []
        assert outcome.failed == [(order.id, "already_taken")]
        reloaded = await db.scalar(select(Order).where(Order.id == order.id).execution_options(populate_existing=True))
        assert reloaded.courier_id == first.id

    async def test_batch_reports_each_order(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        courier, rival = await make_courier(), await make_courier()
        free = await make_order(restaurant)
        taken = await make_order(restaurant, courier=rival, status=OrderStatus.ASSIGNED)

        outcome = await container.lifecycle.accept_orders(
            db, courier_actor(courier), [free.id, taken.id, 9999]
        )

        assert [o.id for o in outcome.accepted] == [free.id]
        assert (taken.id, "already_taken") in outcome.failed
        assert (9999, "not_found") in outcome.failed

    async def test_lost_order_before_won_order_still_notifies(
        self, db, container, make_restaurant, make_courier, make_order, go_online
    ):
        restaurant = await make_restaurant()
        courier, rival = await make_courier(), await make_courier()
        taken = await make_order(restaurant, courier=rival, status=OrderStatus.ASSIGNED)
        free = await make_order(restaurant)
        restaurant_conn = go_online(UserRole.RESTAURANT.value, restaurant.id)

        outcome = await container.lifecycle.accept_orders(
            db, courier_actor(courier), [taken.id, free.id]
        )

        assert outcome.failed == [(taken.id, "already_taken")]
        assert [o.id for o in outcome.accepted] == [free.id]
        update = restaurant_conn.last("orderStatusUpdate")
        assert update["orderId"] == free.id
        assert update["courierName"] == courier.name
        assert taken.courier_id == rival.id

    async def test_blocked_courier_cannot_accept(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        courier = await make_courier(is_blocked=True)
        order = await make_order(restaurant)

        with pytest.raises(AuthorizationError):
            await container.lifecycle.accept_orders(db, courier_actor(courier), [order.id])

    async def test_accept_clears_timeout_tracking(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        order = await make_order(restaurant)
        container.tracking.mark_timeout_reported(order.id)

        await container.lifecycle.accept_orders(db, courier_actor(courier), [order.id])

        assert order.id not in container.tracking.timeout_reported


@pytest.fixture
async def race_engine(tmp_path):
    """
    File-backed sqlite where every transaction takes the write lock up
    front, so concurrent sessions serialize like row locks would.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}", poolclass=NullPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


class TestAcceptRace:
    """Concurrent accepts of the same order"""

    async def test_exactly_one_courier_wins(self, race_engine, settings, push):
        session_factory = async_sessionmaker(race_engine, expire_on_commit=False)
        container = build_container(
            session_factory, settings=settings, push_service=push, registry=ConnectionRegistry()
        )

        async with session_factory() as db:
            restaurant = Restaurant(name="Race Kitchen", email="race@example.com")
            couriers = [Courier(name=f"Racer {i}", email=f"racer{i}@example.com") for i in range(5)]
            db.add_all([restaurant, *couriers])
            await db.commit()
            order = Order(restaurant_id=restaurant.id, restaurant_name=restaurant.name, neighborhood="Moda")
            db.add(order)
            await db.commit()
            courier_ids = [c.id for c in couriers]
            order_id = order.id

        async def attempt(courier_id: int):
            async with session_factory() as db:
                return await container.lifecycle.accept_orders(
                    db, Actor(user_id=courier_id, role=UserRole.COURIER.value), [order_id]
                )

        outcomes = await asyncio.gather(*[attempt(cid) for cid in courier_ids])

        winners = [o for o in outcomes if o.accepted]
        losers = [o for o in outcomes if o.failed]
        assert len(winners) == 1
        assert len(losers) == 4
        assert all(o.failed == [(order_id, "already_taken")] for o in losers)

        async with session_factory() as db:
            stored = await db.get(Order, order_id)
            assert stored.status == OrderStatus.ASSIGNED
            assert stored.courier_id == winners[0].accepted[0].courier_id


class TestAssignCourier:
    """Admin or owning restaurant hands a pending order to a courier"""

    async def test_admin_assigns_and_courier_is_told(
        self, db, container, make_restaurant, make_courier, make_order, go_online
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        order = await make_order(restaurant)
        conn = go_online(UserRole.COURIER.value, courier.id)

        assigned = await container.lifecycle.assign_courier(db, ADMIN, order.id, courier.id)

        assert assigned.status == OrderStatus.ASSIGNED
        assert assigned.courier_id == courier.id
        assert conn.last("new_order_assigned")["id"] == order.id

    async def test_other_restaurant_cannot_assign(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        owner, other = await make_restaurant(), await make_restaurant()
        courier = await make_courier()
        order = await make_order(owner)

        with pytest.raises(AuthorizationError):
            await container.lifecycle.assign_courier(db, restaurant_actor(other), order.id, courier.id)

    async def test_assigning_held_order_is_already_taken(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        holder, other = await make_courier(), await make_courier()
        order = await make_order(restaurant, courier=holder, status=OrderStatus.ASSIGNED)

        with pytest.raises(OrderAlreadyTakenError):
            await container.lifecycle.assign_courier(db, ADMIN, order.id, other.id)


class TestDeliverOrder:
    """assigned -> delivered | awaiting_approval, by payment method"""

    @pytest.mark.parametrize("payment_method", ["online", "Hediye Çeki", "gift card"])
    async def test_prepaid_orders_complete_immediately(
        self, db, container, make_restaurant, make_courier, make_order, go_online, payment_method
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        order = await make_order(
            restaurant, courier=courier, status=OrderStatus.ASSIGNED, payment_method=payment_method
        )
        restaurant_conn = go_online(UserRole.RESTAURANT.value, restaurant.id)
        courier_conn = go_online(UserRole.COURIER.value, courier.id)

        delivered = await container.lifecycle.deliver_order(db, courier_actor(courier), order.id)

        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.delivered_at is not None
        assert delivered.approved_at is not None
        assert "delivery:completed" in restaurant_conn.events()
        assert "order_delivered" in courier_conn.events()

    @pytest.mark.parametrize("payment_method", ["nakit", "kredi kartı", "Kart", "card"])
    async def test_cash_and_card_wait_for_restaurant(
        self, db, container, make_restaurant, make_courier, make_order, go_online, payment_method
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        order = await make_order(
            restaurant, courier=courier, status=OrderStatus.ASSIGNED, payment_method=payment_method
        )
        restaurant_conn = go_online(UserRole.RESTAURANT.value, restaurant.id)

        delivered = await container.lifecycle.deliver_order(db, courier_actor(courier), order.id)

        assert delivered.status == OrderStatus.AWAITING_APPROVAL
        assert delivered.courier_id == courier.id
        assert delivered.approved_at is None
        assert restaurant_conn.last("delivery:needs-approval")["orderId"] == order.id

    async def test_delivered_orders_keep_courier_and_pass_verification(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        prepaid = await make_order(restaurant, courier=courier, status=OrderStatus.ASSIGNED, payment_method="online")
        cash = await make_order(restaurant, courier=courier, status=OrderStatus.ASSIGNED, payment_method="nakit")
        await make_order(restaurant)

        await container.lifecycle.deliver_order(db, courier_actor(courier), prepaid.id)
        await container.lifecycle.deliver_order(db, courier_actor(courier), cash.id)
        approved = await container.lifecycle.approve_delivery(db, restaurant_actor(restaurant), cash.id)

        assert approved.status == OrderStatus.DELIVERED
        assert approved.courier_id == courier.id
        assert await count_courier_mismatches(db) == (0, 0)

    async def test_verification_flags_pending_order_with_courier(
        self, db, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        await make_order(restaurant, courier=courier, status=OrderStatus.PENDING)
        await make_order(restaurant, status=OrderStatus.ASSIGNED)

        assert await count_courier_mismatches(db) == (1, 1)

    async def test_only_holder_can_deliver(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        holder, other = await make_courier(), await make_courier()
        order = await make_order(restaurant, courier=holder, status=OrderStatus.ASSIGNED)

        with pytest.raises(AuthorizationError):
            await container.lifecycle.deliver_order(db, courier_actor(other), order.id)

    async def test_pending_order_cannot_be_delivered(
        self, db, container, make_restaurant, make_order
    ):
        restaurant = await make_restaurant()
        order = await make_order(restaurant)

        with pytest.raises(InvalidTransitionError):
            await container.lifecycle.deliver_order(db, ADMIN, order.id)


class TestApproveDelivery:
    """awaiting_approval -> delivered"""

    async def test_restaurant_approves_and_courier_is_told(
        self, db, container, make_restaurant, make_courier, make_order, go_online
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        order = await make_order(restaurant, courier=courier, status=OrderStatus.AWAITING_APPROVAL)
        courier_conn = go_online(UserRole.COURIER.value, courier.id)

        approved = await container.lifecycle.approve_delivery(db, restaurant_actor(restaurant), order.id)

        assert approved.status == OrderStatus.DELIVERED
        assert approved.approved_at is not None
        assert courier_conn.last("order_approved")["orderId"] == order.id

    async def test_second_approval_is_rejected(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        order = await make_order(restaurant, courier=courier, status=OrderStatus.AWAITING_APPROVAL)

        await container.lifecycle.approve_delivery(db, restaurant_actor(restaurant), order.id)
        with pytest.raises(InvalidTransitionError):
            await container.lifecycle.approve_delivery(db, restaurant_actor(restaurant), order.id)

    async def test_other_restaurant_cannot_approve(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        owner, other = await make_restaurant(), await make_restaurant()
        courier = await make_courier()
        order = await make_order(owner, courier=courier, status=OrderStatus.AWAITING_APPROVAL)

        with pytest.raises(AuthorizationError):
            await container.lifecycle.approve_delivery(db, restaurant_actor(other), order.id)


class TestCancelOrder:
    """assigned -> pending"""

    async def test_courier_cancel_returns_order_to_pool(
        self, db, container, make_restaurant, make_courier, make_order, go_online
    ):
        restaurant = await make_restaurant()
        holder, other = await make_courier(), await make_courier()
        order = await make_order(restaurant, courier=holder, status=OrderStatus.ASSIGNED)
        restaurant_conn = go_online(UserRole.RESTAURANT.value, restaurant.id)
        other_conn = go_online(UserRole.COURIER.value, other.id)

        cancelled = await container.lifecycle.cancel_order(
            db, courier_actor(holder), order.id, reason="Motor arızası"
        )

        assert cancelled.status == OrderStatus.PENDING
        assert cancelled.courier_id is None
        assert cancelled.accepted_at is None
        notice = restaurant_conn.last("orderCancelled")
        assert notice["reason"] == "Motor arızası"
        assert notice["courierName"] == holder.name
        # Back in the pool: other couriers are offered it again.
        assert other_conn.last("new_order")["id"] == order.id

    async def test_restaurant_cancel_notifies_courier(
        self, db, container, make_restaurant, make_courier, make_order, go_online
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        order = await make_order(restaurant, courier=courier, status=OrderStatus.ASSIGNED)
        courier_conn = go_online(UserRole.COURIER.value, courier.id)

        await container.lifecycle.cancel_order(db, restaurant_actor(restaurant), order.id)

        assert courier_conn.last("order_cancelled")["orderId"] == order.id

    async def test_non_holder_cannot_cancel(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        holder, other = await make_courier(), await make_courier()
        order = await make_order(restaurant, courier=holder, status=OrderStatus.ASSIGNED)

        with pytest.raises(AuthorizationError):
            await container.lifecycle.cancel_order(db, courier_actor(other), order.id)

    async def test_pending_order_cannot_be_cancelled(
        self, db, container, make_restaurant, make_order
    ):
        restaurant = await make_restaurant()
        order = await make_order(restaurant)

        with pytest.raises(InvalidTransitionError):
            await container.lifecycle.cancel_order(db, restaurant_actor(restaurant), order.id)


class TestDeleteOrder:
    async def test_delete_tells_courier_pool_and_holder(
        self, db, container, make_restaurant, make_courier, make_order, go_online
    ):
        restaurant = await make_restaurant()
        holder, bystander = await make_courier(), await make_courier()
        order = await make_order(restaurant, courier=holder, status=OrderStatus.ASSIGNED)
        holder_conn = go_online(UserRole.COURIER.value, holder.id)
        bystander_conn = go_online(UserRole.COURIER.value, bystander.id)
        container.tracking.mark_reminded(order.id)

        await container.lifecycle.delete_order(db, restaurant_actor(restaurant), order.id)

        assert await db.get(Order, order.id, populate_existing=True) is None
        assert bystander_conn.last("orderDeleted")["orderId"] == order.id
        # Room event plus the direct notice.
        assert holder_conn.events().count("orderDeleted") == 2
        assert order.id not in container.tracking.reminded

    async def test_unknown_order(self, db, container):
        with pytest.raises(NotFoundError):
            await container.lifecycle.delete_order(db, ADMIN, 424242)


class TestOrderReads:
    async def test_available_orders_exclude_held_and_unselected(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        courier, other = await make_courier(), await make_courier()
        pending = await make_order(restaurant)
        await make_order(restaurant, courier=other, status=OrderStatus.ASSIGNED)

        available = await container.lifecycle.get_available_orders(db, courier.id)

        assert [o.id for o in available] == [pending.id]

    async def test_restaurant_orders_are_pending_and_assigned(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        restaurant = await make_restaurant()
        courier = await make_courier()
        pending = await make_order(restaurant)
        assigned = await make_order(restaurant, courier=courier, status=OrderStatus.ASSIGNED)
        await make_order(restaurant, courier=courier, status=OrderStatus.AWAITING_APPROVAL)

        orders = await container.lifecycle.get_restaurant_orders(db, restaurant.id)

        assert {o.id for o in orders} == {pending.id, assigned.id}

    async def test_pending_approval_scoped_to_restaurant(
        self, db, container, make_restaurant, make_courier, make_order
    ):
        mine, theirs = await make_restaurant(), await make_restaurant()
        courier = await make_courier()
        waiting = await make_order(mine, courier=courier, status=OrderStatus.AWAITING_APPROVAL)
        await make_order(theirs, courier=courier, status=OrderStatus.AWAITING_APPROVAL)

        orders = await container.lifecycle.get_pending_approval_orders(db, restaurant_actor(mine))

        assert [o.id for o in orders] == [waiting.id]
