"""
Default live-channel handlers.

Identity always comes from the authenticated connection; ids inside the
payload are only cross-checked against it.
"""

import logging

from courier_dispatch.core.errors import AuthorizationError
from courier_dispatch.models import UserRole
from courier_dispatch.realtime.messages import (
    ApproveDeliveryMessage,
    CancelOrderMessage,
    DeliverOrderMessage,
    JoinAdminRoom,
    JoinCourierRoom,
    JoinRestaurantRoom,
    LocationUpdateMessage,
)
from courier_dispatch.realtime.router import HandlerContext, MessageRouter
from courier_dispatch.services.location import LocationUpdate
from courier_dispatch.services.orders import OrderLifecycleManager, now_ms

logger = logging.getLogger(__name__)


def register_default_handlers(router: MessageRouter) -> MessageRouter:

    @router.register("joinCourierRoom")
    async def join_courier(ctx: HandlerContext, message: JoinCourierRoom):
        await ctx.services.presence.join_courier(
            ctx.db, ctx.connection,
            courier_id=message.data.courier_id,
            device_info=message.data.device_info,
        )

    @router.register("joinRestaurantRoom")
    async def join_restaurant(ctx: HandlerContext, message: JoinRestaurantRoom):
        await ctx.services.presence.join_restaurant(
            ctx.db, ctx.connection, restaurant_id=message.data.restaurant_id
        )

    @router.register("joinAdminRoom")
    async def join_admin(ctx: HandlerContext, message: JoinAdminRoom):
        await ctx.services.presence.join_admin(ctx.db, ctx.connection)

    @router.register("locationUpdate")
    async def location_update(ctx: HandlerContext, message: LocationUpdateMessage):
        conn = ctx.connection
        data = message.data
        if conn.role != UserRole.COURIER.value:
            logger.warning(f"Location frame from non-courier {conn!r} dropped")
            return
        if data.courier_id is not None and data.courier_id != conn.user_id:
            logger.warning(f"Location frame from {conn!r} claims courier #{data.courier_id}; dropped")
            return
        await ctx.services.location.handle(ctx.db, LocationUpdate(
            courier_id=conn.user_id,
            order_id=data.order_id,
            restaurant_id=data.restaurant_id,
            latitude=data.latitude,
            longitude=data.longitude,
        ))

    @router.register("cancelOrder")
    async def cancel_order(ctx: HandlerContext, message: CancelOrderMessage):
        order = await ctx.services.lifecycle.cancel_order(
            ctx.db, ctx.actor, message.data.order_id, reason=message.data.reason
        )
        await ctx.reply("orderStatusUpdate", OrderLifecycleManager._status_event(order))

    @router.register("deliverOrder", "deliveryConfirmation")
    async def deliver_order(ctx: HandlerContext, message: DeliverOrderMessage):
        order = await ctx.services.lifecycle.deliver_order(ctx.db, ctx.actor, message.data.order_id)
        await ctx.reply("orderStatusUpdate", OrderLifecycleManager._status_event(order))

    @router.register("approveDelivery")
    async def approve_delivery(ctx: HandlerContext, message: ApproveDeliveryMessage):
        order = await ctx.services.lifecycle.approve_delivery(ctx.db, ctx.actor, message.data.order_id)
        await ctx.reply("orderStatusUpdate", OrderLifecycleManager._status_event(order))

    @router.register("courierHeartbeat", "pong")
    async def heartbeat(ctx: HandlerContext, message):
        # The router already touched the connection.
        return None

    @router.register("ping")
    async def ping(ctx: HandlerContext, message):
        await ctx.reply("pong", {"timestamp": now_ms()})

    @router.register("requestLiveCouriers")
    async def live_couriers(ctx: HandlerContext, message):
        actor = ctx.actor
        if actor.is_admin:
            couriers = await ctx.services.presence.live_couriers(ctx.db)
        elif actor.is_restaurant:
            couriers = await ctx.services.presence.live_couriers(ctx.db, restaurant_id=actor.user_id)
        else:
            raise AuthorizationError("Only restaurants and admins can see live couriers")
        await ctx.reply("liveCouriersData", {"couriers": couriers, "timestamp": now_ms()})

    @router.register("requestActiveOrders")
    async def active_orders(ctx: HandlerContext, message):
        actor = ctx.actor
        lifecycle = ctx.services.lifecycle
        if actor.is_courier:
            orders = await lifecycle.get_active_orders(ctx.db, actor.user_id)
        elif actor.is_restaurant:
            orders = await lifecycle.get_restaurant_orders(ctx.db, actor.user_id)
        else:
            orders = await lifecycle.get_pending_approval_orders(ctx.db, actor)
        await ctx.reply("activeOrders", {"orders": [o.to_dict() for o in orders], "timestamp": now_ms()})

    return router
