"""
Typed live-channel messages.

Every inbound frame is ``{"event": <name>, "data": {...}}``; the event name
selects the variant. Field names follow the mobile apps (camelCase); the
legacy ``firmaid`` key is still accepted for the restaurant id.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EmptyData(_Payload):
    pass


class JoinCourierData(_Payload):
    courier_id: Optional[int] = Field(None, alias="courierId")
    device_info: Optional[str] = Field(None, alias="deviceInfo")


class JoinRestaurantData(_Payload):
    restaurant_id: Optional[int] = Field(
        None, validation_alias=AliasChoices("restaurantId", "firmaid", "restaurant_id")
    )


class JoinAdminData(_Payload):
    admin_id: Optional[int] = Field(None, alias="adminId")


class LocationData(_Payload):
    courier_id: Optional[int] = Field(None, alias="courierId")
    order_id: int = Field(..., alias="orderId")
    restaurant_id: int = Field(
        ..., validation_alias=AliasChoices("restaurantId", "firmaid", "restaurant_id")
    )
    latitude: float
    longitude: float


class OrderRef(_Payload):
    order_id: int = Field(..., alias="orderId")


class CancelData(OrderRef):
    reason: Optional[str] = None


# =============================================================================
# VARIANTS
# =============================================================================

class JoinCourierRoom(BaseModel):
    event: Literal["joinCourierRoom"]
    data: JoinCourierData = Field(default_factory=JoinCourierData)


class JoinRestaurantRoom(BaseModel):
    event: Literal["joinRestaurantRoom"]
    data: JoinRestaurantData = Field(default_factory=JoinRestaurantData)


class JoinAdminRoom(BaseModel):
    event: Literal["joinAdminRoom"]
    data: JoinAdminData = Field(default_factory=JoinAdminData)


class LocationUpdateMessage(BaseModel):
    event: Literal["locationUpdate"]
    data: LocationData


class CancelOrderMessage(BaseModel):
    event: Literal["cancelOrder"]
    data: CancelData


class DeliverOrderMessage(BaseModel):
    event: Literal["deliverOrder", "deliveryConfirmation"]
    data: OrderRef


class ApproveDeliveryMessage(BaseModel):
    event: Literal["approveDelivery"]
    data: OrderRef


class CourierHeartbeat(BaseModel):
    event: Literal["courierHeartbeat"]
    data: EmptyData = Field(default_factory=EmptyData)


class Ping(BaseModel):
    event: Literal["ping"]
    data: EmptyData = Field(default_factory=EmptyData)


class Pong(BaseModel):
    event: Literal["pong"]
    data: EmptyData = Field(default_factory=EmptyData)


class RequestLiveCouriers(BaseModel):
    event: Literal["requestLiveCouriers"]
    data: EmptyData = Field(default_factory=EmptyData)


class RequestActiveOrders(BaseModel):
    event: Literal["requestActiveOrders"]
    data: EmptyData = Field(default_factory=EmptyData)


InboundMessage = Annotated[
    Union[
        JoinCourierRoom,
        JoinRestaurantRoom,
        JoinAdminRoom,
        LocationUpdateMessage,
        CancelOrderMessage,
        DeliverOrderMessage,
        ApproveDeliveryMessage,
        CourierHeartbeat,
        Ping,
        Pong,
        RequestLiveCouriers,
        RequestActiveOrders,
    ],
    Field(discriminator="event"),
]

inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)

INBOUND_EVENTS = frozenset({
    "joinCourierRoom",
    "joinRestaurantRoom",
    "joinAdminRoom",
    "locationUpdate",
    "cancelOrder",
    "deliverOrder",
    "deliveryConfirmation",
    "approveDelivery",
    "courierHeartbeat",
    "ping",
    "pong",
    "requestLiveCouriers",
    "requestActiveOrders",
})


def parse_message(raw: object) -> InboundMessage:
    """Raises pydantic.ValidationError for malformed frames."""
    if isinstance(raw, dict) and raw.get("data") is None:
        raw = {**raw, "data": {}}
    return inbound_adapter.validate_python(raw)
