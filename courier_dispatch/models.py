"""
SQLAlchemy Database Models

Persistence gateway for the dispatch core:
- Orders and their guarded lifecycle columns
- Couriers, restaurants and admin accounts
- Bidirectional courier/restaurant preference edges
- Login sessions (at most one active per user and role)
- Push tokens and admin key/value settings

All timestamps are naive UTC.

Version: 1.0.0
"""

import enum
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, Enum, Boolean,
    ForeignKey, Index, UniqueConstraint,
)

from courier_dispatch.core.timeutils import utcnow
from courier_dispatch.database import Base


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    ASSIGNED = "assigned"
    AWAITING_APPROVAL = "awaiting_approval"
    DELIVERED = "delivered"
    # Cancelling returns an order to PENDING; no transition ends here.
    CANCELLED = "cancelled"


HELD_STATUSES = (OrderStatus.ASSIGNED, OrderStatus.AWAITING_APPROVAL)


class UserRole(str, enum.Enum):
    COURIER = "courier"
    RESTAURANT = "restaurant"
    ADMIN = "admin"


class NotificationMode(str, enum.Enum):
    """Which restaurants a courier wants to hear from."""
    ALL_RESTAURANTS = "all_restaurants"
    SELECTED_RESTAURANTS = "selected_restaurants"


class VisibilityMode(str, enum.Enum):
    """Which couriers may see a restaurant's orders."""
    ALL_COURIERS = "all_couriers"
    SELECTED_COURIERS = "selected_couriers"


class PaymentKind(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    ONLINE = "online"
    GIFT_CARD = "gift_card"


def classify_payment(method: Optional[str]) -> PaymentKind:
    """
    Classify a free-text payment method, case-insensitively.

    "online" must match exactly; gift cards are recognised by "hediye"/"gift";
    card terminals by "kredi"/"kart"/"card". Anything else is cash.
    """
    value = (method or "").strip().lower()
    if value == "online":
        return PaymentKind.ONLINE
    if "hediye" in value or "gift" in value:
        return PaymentKind.GIFT_CARD
    if "kredi" in value or "kart" in value or "card" in value:
        return PaymentKind.CARD
    return PaymentKind.CASH


def requires_approval(method: Optional[str]) -> bool:
    """Cash and card deliveries must be confirmed by the restaurant."""
    return classify_payment(method) not in (PaymentKind.ONLINE, PaymentKind.GIFT_CARD)


class Order(Base):
    """
    Delivery order.

    courier_id is empty while the order is PENDING and names the holding courier
    while it is ASSIGNED or AWAITING_APPROVAL. Delivered orders keep it as the
    delivery record.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    restaurant_id = Column(
        Integer, ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    courier_id = Column(
        Integer, ForeignKey("couriers.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # =========================================================================
    # ORDER STATUS
    # =========================================================================
    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    restaurant_name = Column(String(150), nullable=True)
    neighborhood = Column(String(150), nullable=True)
    customer_address = Column(Text, nullable=True)
    image_url = Column(String(500), nullable=True)
    preparation_time = Column(Integer, nullable=False, default=20)  # minutes
    notes = Column(Text, nullable=True)

    # =========================================================================
    # PAYMENT
    # =========================================================================
    payment_method = Column(String(50), nullable=False, default="nakit")
    courier_fee = Column(Float, nullable=False, default=0.0)
    restaurant_price = Column(Float, nullable=False, default=0.0)
    cash_amount = Column(Float, nullable=False, default=0.0)
    card_amount = Column(Float, nullable=False, default=0.0)
    gift_amount = Column(Float, nullable=False, default=0.0)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    accepted_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True, default=utcnow, onupdate=utcnow)

    @property
    def payment_kind(self) -> PaymentKind:
        return classify_payment(self.payment_method)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "restaurantId": self.restaurant_id,
            "courierId": self.courier_id,
            "status": self.status.value if self.status else None,
            "restaurantName": self.restaurant_name,
            "neighborhood": self.neighborhood,
            "customerAddress": self.customer_address,
            "imageUrl": self.image_url,
            "preparationTime": self.preparation_time,
            "paymentMethod": self.payment_method,
            "courierFee": self.courier_fee,
            "restaurantPrice": self.restaurant_price,
            "cashAmount": self.cash_amount,
            "cardAmount": self.card_amount,
            "giftAmount": self.gift_amount,
            "createdAt": _iso(self.created_at),
            "acceptedAt": _iso(self.accepted_at),
            "deliveredAt": _iso(self.delivered_at),
            "approvedAt": _iso(self.approved_at),
        }

    def __repr__(self):
        return f"<Order #{self.id} - restaurant {self.restaurant_id} - {self.status.value}>"


class Courier(Base):
    __tablename__ = "couriers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    phone = Column(String(20), nullable=True)
    password_hash = Column(String(255), nullable=True)

    # =========================================================================
    # PRESENCE / STATE
    # =========================================================================
    is_online = Column(Boolean, nullable=False, default=False)
    is_blocked = Column(Boolean, nullable=False, default=False)
    notification_mode = Column(
        Enum(NotificationMode),
        nullable=False,
        default=NotificationMode.ALL_RESTAURANTS,
    )

    # =========================================================================
    # LOCATION
    # =========================================================================
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    location_updated_at = Column(DateTime, nullable=True)

    # =========================================================================
    # COUNTERS
    # =========================================================================
    package_limit = Column(Integer, nullable=False, default=5)
    total_packages = Column(Integer, nullable=False, default=0)
    total_online_minutes = Column(Integer, nullable=False, default=0)
    last_online_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "isOnline": self.is_online,
            "isBlocked": self.is_blocked,
            "notificationMode": self.notification_mode.value,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "totalPackages": self.total_packages,
        }

    def __repr__(self):
        return f"<Courier #{self.id} {self.name}>"


class Restaurant(Base):
    __tablename__ = "restaurants"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(150), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    phone = Column(String(20), nullable=True)
    password_hash = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)
    courier_visibility_mode = Column(
        Enum(VisibilityMode),
        nullable=False,
        default=VisibilityMode.ALL_COURIERS,
    )
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Restaurant #{self.id} {self.name}>"


class Admin(Base):
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# PREFERENCE EDGES
# =============================================================================

class CourierRestaurantPreference(Base):
    """Courier opted in to orders from this restaurant."""
    __tablename__ = "courier_restaurant_preferences"
    __table_args__ = (
        UniqueConstraint("courier_id", "restaurant_id", name="uq_courier_restaurant_pref"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    courier_id = Column(
        Integer, ForeignKey("couriers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    restaurant_id = Column(
        Integer, ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_selected = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, default=utcnow, onupdate=utcnow)


class RestaurantCourierPreference(Base):
    """Restaurant opted in to show its orders to this courier."""
    __tablename__ = "restaurant_courier_preferences"
    __table_args__ = (
        UniqueConstraint("restaurant_id", "courier_id", name="uq_restaurant_courier_pref"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    restaurant_id = Column(
        Integer, ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    courier_id = Column(
        Integer, ForeignKey("couriers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_selected = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, default=utcnow, onupdate=utcnow)


# =============================================================================
# SESSIONS / PUSH / SETTINGS
# =============================================================================

class ActiveSession(Base):
    """
    Login session backing one issued token.

    The partial unique index below lets the store reject a second active
    row for the same (user_id, user_role).
    """
    __tablename__ = "active_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True)
    user_role = Column(String(20), nullable=False)
    session_token = Column(String(1024), nullable=False, unique=True)
    socket_id = Column(String(64), nullable=True)
    device_info = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=False)
    last_activity = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        state = "active" if self.is_active else "inactive"
        return f"<ActiveSession {self.user_role}:{self.user_id} {state}>"


Index(
    "uq_active_session_per_user_role",
    ActiveSession.user_id,
    ActiveSession.user_role,
    unique=True,
    postgresql_where=ActiveSession.is_active.is_(True),
    sqlite_where=ActiveSession.is_active.is_(True),
)


class PushToken(Base):
    """Latest registered device token per (user_id, user_type)."""
    __tablename__ = "push_tokens"
    __table_args__ = (
        UniqueConstraint("user_id", "user_type", name="uq_push_token_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    user_type = Column(String(20), nullable=False)
    token = Column(String(255), nullable=False, index=True)
    platform = Column(String(20), nullable=True)  # ios, android
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, default=utcnow, onupdate=utcnow)


class AdminSetting(Base):
    __tablename__ = "admin_settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=True, default=utcnow, onupdate=utcnow)


def _iso(value):
    return value.isoformat() if value else None
