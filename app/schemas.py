"""
Pydantic Schemas for Request/Response Validation

Covers:
- Platform config admin payloads (partial updates, masked responses)
- Menu overlay and override lists
- Orders, order lines and kitchen tickets
- Webhook and status-callback responses
- Aggregator analytics

Author: Khalil Bannouri
Version: 4.0.0
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Any
from datetime import datetime, date

from app.models import (
    Platform,
    OrderType,
    OrderStatus,
    KitchenStatus,
    PaymentMethod,
    PaymentStatus,
    ConnectionStatus,
)


# =============================================================================
# PLATFORM CONFIG SCHEMAS
# =============================================================================

class PlatformConfigUpdate(BaseModel):
    """
    Partial update of a platform config.

    Only fields present in the request body are written; omitted credentials
    are left untouched rather than cleared.
    """
    is_enabled: Optional[bool] = None
    api_key: Optional[str] = Field(None, max_length=255)
    api_secret: Optional[str] = Field(None, max_length=255)
    store_id: Optional[str] = Field(None, max_length=100)
    webhook_secret: Optional[str] = Field(None, max_length=255)
    auto_accept: Optional[bool] = None
    default_prep_time: Optional[int] = Field(None, ge=1, le=240, examples=[20])
    platform_base_url: Optional[str] = Field(None, max_length=500, examples=["https://partner.swiggy.com"])

    @field_validator("platform_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip().rstrip("/")


class MenuOverrideResponse(BaseModel):
    menu_item_id: int
    platform_price: Optional[float]
    is_available: bool

    class Config:
        from_attributes = True


class PlatformConfigResponse(BaseModel):
    """Masked view of a platform config. Secrets are never included."""
    platform: Platform
    is_enabled: bool
    api_key: str
    store_id: str
    has_api_secret: bool
    has_webhook_secret: bool
    auto_accept: bool
    default_prep_time: int
    connection_status: ConnectionStatus
    last_sync_at: Optional[datetime] = None
    platform_base_url: str
    menu_overrides: List[MenuOverrideResponse] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConnectionTestResponse(BaseModel):
    connected: bool
    message: str
    connection_status: ConnectionStatus


class MenuOverrideIn(BaseModel):
    """One entry of the override list for a platform."""
    menu_item_id: int = Field(..., ge=1)
    platform_price: Optional[float] = Field(None, ge=0)
    is_available: bool = True


class MenuOverridesUpdate(BaseModel):
    overrides: List[MenuOverrideIn]


class MenuOverridesSaved(BaseModel):
    message: str
    count: int


class MenuOverlayItem(BaseModel):
    """Menu item with the platform's price/availability applied on top."""
    id: int
    name: str
    category: str
    base_price: float
    is_veg: bool
    available: bool
    platform_price: Optional[float] = None
    platform_available: bool = True


class MenuSyncResponse(BaseModel):
    message: str
    last_sync_at: datetime


# =============================================================================
# ORDER SCHEMAS
# =============================================================================

class OrderItemResponse(BaseModel):
    id: int
    menu_item_id: Optional[int]
    name: str
    quantity: int
    unit_price: float
    notes: str
    kitchen_status: KitchenStatus

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: int
    order_number: int
    order_type: OrderType
    status: OrderStatus
    platform: Optional[Platform]
    platform_order_id: Optional[str]
    customer_name: Optional[str]
    customer_phone: Optional[str]
    delivery_address: Optional[str]
    items: List[OrderItemResponse]
    subtotal: float
    tax: float
    discount: float
    total: float
    payment_method: Optional[PaymentMethod]
    payment_status: PaymentStatus
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    extra_data: Optional[dict[str, Any]] = Field(
        default=None,
        description="Merged into the platform callback, e.g. {\"reason\": \"out of stock\"} on cancel",
    )


class KitchenItemResponse(BaseModel):
    id: int
    order_id: int
    order_number: int
    order_item_id: Optional[int]
    table_number: Optional[int]
    item_name: str
    quantity: int
    status: KitchenStatus
    notes: str
    is_online: bool
    platform: Optional[Platform]
    priority: int
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class KitchenStatusUpdate(BaseModel):
    status: KitchenStatus

    @field_validator("status")
    @classmethod
    def validate_ticket_status(cls, v: KitchenStatus) -> KitchenStatus:
        if v == KitchenStatus.SERVED:
            raise ValueError("Kitchen tickets move through queued, cooking and ready only")
        return v


# =============================================================================
# WEBHOOK / CALLBACK SCHEMAS
# =============================================================================

class WebhookResponse(BaseModel):
    """Response returned to the delivery platform."""
    message: str
    order_id: Optional[int] = None
    order_number: Optional[int] = None


class NotifyRequest(BaseModel):
    """Extra data merged into the outbound status payload (e.g. cancel reason)."""
    extra_data: dict[str, Any] = Field(default_factory=dict)


class CallbackResponse(BaseModel):
    success: bool
    disposition: str
    action: Optional[str] = None


# =============================================================================
# ANALYTICS SCHEMAS
# =============================================================================

class PlatformStats(BaseModel):
    total_orders: int = 0
    total_revenue: float = 0.0
    avg_order_value: float = 0.0
    completed_orders: int = 0
    cancelled_orders: int = 0


class DailyTrendPoint(BaseModel):
    date: date
    platform: Platform
    orders: int
    revenue: float


class AnalyticsResponse(BaseModel):
    platforms: dict[Platform, PlatformStats]
    daily_trend: List[DailyTrendPoint]


# =============================================================================
# COMMON
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    timestamp: datetime
