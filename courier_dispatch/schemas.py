"""
Pydantic Schemas for Request/Response Validation

Covers authentication, order lifecycle actions, preferences,
push-token registration, health and statistics.

Version: 1.0.0
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime

from courier_dispatch.models import (
    NotificationMode,
    OrderStatus,
    UserRole,
    VisibilityMode,
)


# =============================================================================
# AUTH SCHEMAS
# =============================================================================

class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, examples=["kurye@example.com"])
    password: str = Field(..., min_length=1, max_length=128)
    role: UserRole = Field(..., examples=["courier"])
    device_info: Optional[str] = Field(None, max_length=500)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    user_id: int
    role: UserRole
    name: str
    expires_at: datetime


# =============================================================================
# ORDER SCHEMAS
# =============================================================================

class OrderCreate(BaseModel):
    """Request schema for creating a new order."""

    # Admins create orders on behalf of a restaurant
    restaurant_id: Optional[int] = Field(None, ge=1)

    neighborhood: str = Field(..., min_length=1, max_length=150, examples=["Kadıköy"])
    customer_address: Optional[str] = Field(None, max_length=1000)
    image_url: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)
    preparation_time: int = Field(default=20, ge=0, le=240)

    payment_method: str = Field(default="nakit", max_length=50, examples=["nakit", "kredi kartı", "online"])
    courier_fee: float = Field(default=0.0, ge=0)
    restaurant_price: float = Field(default=0.0, ge=0)
    cash_amount: float = Field(default=0.0, ge=0)
    card_amount: float = Field(default=0.0, ge=0)
    gift_amount: float = Field(default=0.0, ge=0)


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: int
    restaurant_id: int
    courier_id: Optional[int]
    status: OrderStatus
    restaurant_name: Optional[str]
    neighborhood: Optional[str]
    customer_address: Optional[str]
    image_url: Optional[str]
    preparation_time: int
    payment_method: str
    courier_fee: float
    restaurant_price: float
    cash_amount: float
    card_amount: float
    gift_amount: float
    created_at: datetime
    accepted_at: Optional[datetime]
    delivered_at: Optional[datetime]
    approved_at: Optional[datetime]

    class Config:
        from_attributes = True


class OrderListResponse(BaseModel):
    total: int
    orders: List[OrderResponse]


class AcceptOrdersRequest(BaseModel):
    order_ids: List[int] = Field(..., min_length=1, max_length=50)


class AcceptFailure(BaseModel):
    order_id: int
    reason: str


class AcceptOrdersResponse(BaseModel):
    """Per-order outcome of a multi-order accept."""
    success: bool
    accepted: List[int]
    failed: List[AcceptFailure]


class AssignCourierRequest(BaseModel):
    courier_id: int = Field(..., ge=1)


class OrderActionResponse(BaseModel):
    success: bool = True
    message: str
    order: Optional[OrderResponse] = None


# =============================================================================
# PREFERENCE SCHEMAS
# =============================================================================

class CourierPreferences(BaseModel):
    notification_mode: NotificationMode
    selected_restaurant_ids: List[int] = Field(default_factory=list)


class RestaurantPreferences(BaseModel):
    courier_visibility_mode: VisibilityMode
    selected_courier_ids: List[int] = Field(default_factory=list)


# =============================================================================
# PUSH TOKEN SCHEMAS
# =============================================================================

class PushTokenRegister(BaseModel):
    token: str = Field(..., min_length=10, max_length=255)
    platform: Optional[str] = Field(None, examples=["ios", "android"])

    @field_validator("platform")
    @classmethod
    def normalize_platform(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        if v not in ("ios", "android"):
            raise ValueError("platform must be 'ios' or 'android'")
        return v


# =============================================================================
# GENERIC RESPONSES
# =============================================================================

class SuccessResponse(BaseModel):
    success: bool = True
    message: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None
    forceLogout: Optional[bool] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    push_service: str
    live_connections: int
    timestamp: datetime


class StatsResponse(BaseModel):
    """Live counters for the admin overview."""
    online_couriers: int
    online_restaurants: int
    online_admins: int
    total_connections: int
    pending_orders: int
    active_orders: int
    awaiting_approval_orders: int
