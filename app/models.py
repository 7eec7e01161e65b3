"""
SQLAlchemy Database Models

Aggregator order ingestion schema:
- Per-platform integration config with menu overrides
- Orders with line items (platform orders deduplicated per platform)
- Kitchen tickets, one per order line
- Atomic counters for human-facing order numbers

Author: Khalil Bannouri
Version: 4.0.0
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Text,
    Enum,
    Boolean,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    event,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.config import get_settings
from app.database import Base
import enum

ORDER_NUMBER_COUNTER = "order_number"


class Platform(str, enum.Enum):
    """Supported food-delivery platforms."""
    SWIGGY = "swiggy"
    ZOMATO = "zomato"


class OrderType(str, enum.Enum):
    DINE_IN = "dine_in"
    TAKEAWAY = "takeaway"
    ONLINE = "online"


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class KitchenStatus(str, enum.Enum):
    """Per-line kitchen progress. SERVED is only used on order lines."""
    QUEUED = "queued"
    COOKING = "cooking"
    READY = "ready"
    SERVED = "served"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    ONLINE = "online"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


# =============================================================================
# PLATFORM CONFIGURATION
# =============================================================================

class PlatformConfig(Base):
    """
    Integration settings for one delivery platform.

    At most one row per platform; rows are created lazily on the first
    configuration write (upsert).
    """
    __tablename__ = "platform_configs"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    platform = Column(Enum(Platform), nullable=False, unique=True, index=True)

    is_enabled = Column(Boolean, default=False, nullable=False)

    # =========================================================================
    # CREDENTIALS (api_secret and webhook_secret are never serialized)
    # =========================================================================
    api_key = Column(String(255), default="", nullable=False)
    api_secret = Column(String(255), default="", nullable=False)
    store_id = Column(String(100), default="", nullable=False)
    webhook_secret = Column(String(255), default="", nullable=False)
    platform_base_url = Column(String(500), default="", nullable=False)

    # =========================================================================
    # POLICY
    # =========================================================================
    auto_accept = Column(Boolean, default=False, nullable=False)
    default_prep_time = Column(Integer, default=20, nullable=False)

    # =========================================================================
    # SYNC STATE
    # =========================================================================
    connection_status = Column(
        Enum(ConnectionStatus),
        default=ConnectionStatus.DISCONNECTED,
        nullable=False,
    )
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    menu_overrides = relationship(
        "MenuOverride",
        order_by="MenuOverride.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<PlatformConfig {self.platform.value} enabled={self.is_enabled}>"


class MenuOverride(Base):
    """Platform-specific price/availability for one menu item."""
    __tablename__ = "menu_overrides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_id = Column(
        Integer,
        ForeignKey("platform_configs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=False)
    platform_price = Column(Float, nullable=True)
    is_available = Column(Boolean, default=True, nullable=False)
    position = Column(Integer, default=0, nullable=False)


# =============================================================================
# MENU CATALOG
# =============================================================================

class MenuItem(Base):
    """Menu catalog entry, used to reconcile platform line items by name."""
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(150), nullable=False, index=True)
    category = Column(String(50), nullable=False)
    price = Column(Float, nullable=False)
    is_veg = Column(Boolean, default=True, nullable=False)
    available = Column(Boolean, default=True, nullable=False)
    description = Column(Text, default="")
    preparation_time = Column(Integer, default=15)  # minutes

    def __repr__(self):
        return f"<MenuItem {self.name} {self.price}>"


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    Order header.

    Platform orders are unique per (platform, platform_order_id); the
    constraint is the source of truth for webhook deduplication.
    Totals are recomputed from the line items on every insert/update.
    """
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("platform", "platform_order_id", name="uq_orders_platform_order"),
    )
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_number = Column(Integer, nullable=False, unique=True, index=True)

    order_type = Column(Enum(OrderType), nullable=False, index=True)
    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )

    # =========================================================================
    # PLATFORM ORIGIN (online orders only)
    # =========================================================================
    platform = Column(Enum(Platform), nullable=True, index=True)
    platform_order_id = Column(String(100), nullable=True)

    # =========================================================================
    # CUSTOMER INFORMATION
    # =========================================================================
    customer_name = Column(String(100), nullable=True)
    customer_phone = Column(String(30), nullable=True)
    delivery_address = Column(Text, nullable=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(Float, nullable=False, default=0.0)
    tax = Column(Float, nullable=False, default=0.0)
    discount = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)

    # =========================================================================
    # PAYMENT INFO
    # =========================================================================
    payment_method = Column(Enum(PaymentMethod), nullable=True)
    payment_status = Column(
        Enum(PaymentStatus),
        default=PaymentStatus.PENDING,
        nullable=False,
    )

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship(
        "OrderItem",
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def recalculate_totals(self) -> None:
        """subtotal = Σ price × qty, tax at the configured rate, total = subtotal + tax − discount."""
        tax_rate = get_settings().tax_rate
        subtotal = sum(item.unit_price * item.quantity for item in self.items)
        self.subtotal = round(subtotal, 2)
        self.tax = round(self.subtotal * tax_rate, 2)
        self.total = round(self.subtotal + self.tax - (self.discount or 0.0), 2)

    def __repr__(self):
        return f"<Order #{self.order_number} - {self.order_type.value} - {self.status.value}>"


class OrderItem(Base):
    """Single line of an order."""
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_items_quantity"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    menu_item_id = Column(Integer, ForeignKey("menu_items.id"), nullable=True)
    name = Column(String(150), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, nullable=False)
    notes = Column(Text, default="", nullable=False)
    kitchen_status = Column(
        Enum(KitchenStatus),
        default=KitchenStatus.QUEUED,
        nullable=False,
    )
    position = Column(Integer, default=0, nullable=False)


@event.listens_for(Order, "before_insert")
@event.listens_for(Order, "before_update")
def _recalculate_order_totals(mapper, connection, target: Order) -> None:
    target.recalculate_totals()


# =============================================================================
# KITCHEN
# =============================================================================

class KitchenItem(Base):
    """
    Kitchen ticket for one order line, tracked queued → cooking → ready.

    When every ticket of an order is ready the order itself becomes ready.
    """
    __tablename__ = "kitchen_items"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_number = Column(Integer, nullable=False)
    order_item_id = Column(Integer, ForeignKey("order_items.id"), nullable=True)
    table_number = Column(Integer, nullable=True)
    item_name = Column(String(150), nullable=False)
    quantity = Column(Integer, nullable=False)
    status = Column(
        Enum(KitchenStatus),
        default=KitchenStatus.QUEUED,
        nullable=False,
        index=True,
    )
    notes = Column(Text, default="", nullable=False)
    is_online = Column(Boolean, default=False, nullable=False)
    platform = Column(Enum(Platform), nullable=True)
    priority = Column(Integer, default=0, nullable=False)  # Higher = sooner

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self):
        return f"<KitchenItem {self.item_name} x{self.quantity} - {self.status.value}>"


# =============================================================================
# COUNTERS
# =============================================================================

class Counter(Base):
    """Named monotonic counter, incremented atomically in the database."""
    __tablename__ = "counters"

    name = Column(String(50), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
