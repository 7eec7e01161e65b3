"""
Platform Order Payload Mapper

Translates a loosely structured platform webhook payload into the internal
order shape. Vendors disagree on field names (snake_case vs nested objects,
``qty`` vs ``quantity``), so every field is read through an ordered alias
list declared per platform in PLATFORM_FIELD_MAPS. Supporting another
platform means adding an entry to that table.

Mapping either produces a complete MappedOrder or raises
PayloadMappingError; a partially populated order is never returned.

Usage:
    mapped = await map_platform_order(db, Platform.SWIGGY, payload)
    print(mapped.platform_order_id, mapped.subtotal)

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    MenuItem,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    Platform,
)

logger = logging.getLogger(__name__)


class PayloadMappingError(ValueError):
    """The platform payload cannot be turned into an order."""


# =============================================================================
# FIELD ALIAS TABLES
# =============================================================================

@dataclass(frozen=True)
class ItemFieldMap:
    """Alias lists for one line item. Dotted names reach into nested objects."""
    name: tuple[str, ...] = ("name", "item_name")
    quantity: tuple[str, ...] = ("quantity", "qty")
    unit_price: tuple[str, ...] = ("unit_price",)
    line_total: tuple[str, ...] = ("total_price", "price")
    notes: tuple[str, ...] = ("notes", "special_instructions")


@dataclass(frozen=True)
class PlatformFieldMap:
    """Alias lists for the order envelope of one platform."""
    customer_placeholder: str
    order_id: tuple[str, ...] = ("order_id", "id")
    items: tuple[str, ...] = ("items", "order_items")
    customer_name: tuple[str, ...] = ("customer.name", "customer_name")
    customer_phone: tuple[str, ...] = ("customer.phone", "customer_phone")
    address: tuple[str, ...] = ("delivery_address", "address")
    item: ItemFieldMap = field(default_factory=ItemFieldMap)


PLATFORM_FIELD_MAPS: dict[Platform, PlatformFieldMap] = {
    Platform.SWIGGY: PlatformFieldMap(customer_placeholder="Swiggy Customer"),
    Platform.ZOMATO: PlatformFieldMap(customer_placeholder="Zomato Customer"),
}

# Structured address components, in output order
ADDRESS_COMPONENTS: tuple[tuple[str, ...], ...] = (
    ("line1", "address_line_1"),
    ("line2", "address_line_2"),
    ("landmark",),
    ("area", "locality"),
    ("city",),
    ("pincode", "zip"),
)
ADDRESS_DELIMITER = ", "

UNKNOWN_ITEM_NAME = "Unknown Item"

# Column widths in app.models; vendor text is clipped to fit, ids are not
MAX_ORDER_ID_LENGTH = 100
MAX_CUSTOMER_NAME_LENGTH = 100
MAX_PHONE_LENGTH = 30
MAX_ITEM_NAME_LENGTH = 150


# =============================================================================
# MAPPED RECORDS
# =============================================================================

@dataclass
class MappedLineItem:
    name: str
    quantity: int
    unit_price: float
    notes: str = ""
    menu_item_id: Optional[int] = None

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity


@dataclass
class MappedOrder:
    """
    Normalized order-creation record.

    Platform orders are always online, pending and already paid on the
    platform side.
    """
    platform: Platform
    platform_order_id: str
    customer_name: str
    customer_phone: str
    delivery_address: str
    items: list[MappedLineItem]
    order_type: OrderType = OrderType.ONLINE
    status: OrderStatus = OrderStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    payment_status: PaymentStatus = PaymentStatus.PAID

    @property
    def subtotal(self) -> float:
        return round(sum(item.line_total for item in self.items), 2)


# =============================================================================
# FIELD HELPERS
# =============================================================================

def _lookup(source: dict, path: str) -> Any:
    value: Any = source
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def first_present(source: dict, aliases: tuple[str, ...]) -> Any:
    """First alias whose value is neither missing, None nor an empty string."""
    for alias in aliases:
        value = _lookup(source, alias)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _clip(text: str, limit: int) -> str:
    return text[:limit].rstrip()


def _as_number(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise PayloadMappingError(f"{label} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise PayloadMappingError(f"{label} must be a number, got {value!r}")
    if number != number or number in (float("inf"), float("-inf")):
        raise PayloadMappingError(f"{label} must be a finite number")
    return number


def _as_quantity(value: Any, label: str) -> int:
    if value is None:
        return 1
    number = _as_number(value, label)
    if not number.is_integer():
        raise PayloadMappingError(f"{label} must be a whole number, got {value!r}")
    quantity = int(number)
    if quantity < 1:
        raise PayloadMappingError(f"{label} must be at least 1, got {quantity}")
    return quantity


def format_address(address: Any) -> str:
    """
    Free-text addresses pass through; structured ones are flattened.

    Empty components are skipped, so {"line1": "12 MG Road", "city": "Pune"}
    becomes "12 MG Road, Pune".
    """
    if not address:
        return ""
    if isinstance(address, str):
        return address
    if not isinstance(address, dict):
        return _as_text(address)

    parts = []
    for aliases in ADDRESS_COMPONENTS:
        part = _as_text(first_present(address, aliases))
        if part:
            parts.append(part)
    return ADDRESS_DELIMITER.join(parts)


# =============================================================================
# MAPPING
# =============================================================================

def _map_item(raw: Any, index: int, fields: ItemFieldMap) -> MappedLineItem:
    label = f"items[{index}]"
    if not isinstance(raw, dict):
        raise PayloadMappingError(f"{label} must be an object")

    name = _clip(_as_text(first_present(raw, fields.name)), MAX_ITEM_NAME_LENGTH) or UNKNOWN_ITEM_NAME
    quantity = _as_quantity(first_present(raw, fields.quantity), f"{label}.quantity")

    unit_price_raw = first_present(raw, fields.unit_price)
    if unit_price_raw is not None:
        unit_price = _as_number(unit_price_raw, f"{label}.unit_price")
    else:
        line_total_raw = first_present(raw, fields.line_total)
        if line_total_raw is None:
            logger.warning(f"{label} ({name}) has no price, mapped as 0")
            unit_price = 0.0
        else:
            unit_price = _as_number(line_total_raw, f"{label}.price") / quantity

    if unit_price < 0:
        raise PayloadMappingError(f"{label} price must not be negative")

    return MappedLineItem(
        name=name,
        quantity=quantity,
        unit_price=unit_price,
        notes=_as_text(first_present(raw, fields.notes)),
    )


def extract_order(platform: Platform, payload: Any) -> MappedOrder:
    """
    Map a platform payload without touching the database.

    Raises:
        PayloadMappingError: payload is not an object, has no order id,
            no line items, or a line item is malformed
    """
    fields = PLATFORM_FIELD_MAPS.get(platform)
    if fields is None:
        raise PayloadMappingError(f"No field map for platform {platform!r}")

    if not isinstance(payload, dict):
        raise PayloadMappingError("Payload must be a JSON object")

    order_id = first_present(payload, fields.order_id)
    if order_id is None or isinstance(order_id, (bool, dict, list)):
        raise PayloadMappingError(
            f"Missing {platform.value} order identifier (tried {', '.join(fields.order_id)})"
        )

    platform_order_id = _as_text(order_id)
    if len(platform_order_id) > MAX_ORDER_ID_LENGTH:
        raise PayloadMappingError(
            f"{platform.value} order identifier longer than {MAX_ORDER_ID_LENGTH} characters"
        )

    raw_items = first_present(payload, fields.items)
    if not isinstance(raw_items, list) or not raw_items:
        raise PayloadMappingError(
            f"{platform.value} order {order_id} has no line items"
        )

    items = [_map_item(raw, index, fields.item) for index, raw in enumerate(raw_items)]

    return MappedOrder(
        platform=platform,
        platform_order_id=platform_order_id,
        customer_name=(
            _clip(_as_text(first_present(payload, fields.customer_name)), MAX_CUSTOMER_NAME_LENGTH)
            or fields.customer_placeholder
        ),
        customer_phone=_clip(_as_text(first_present(payload, fields.customer_phone)), MAX_PHONE_LENGTH),
        delivery_address=format_address(first_present(payload, fields.address)),
        items=items,
    )


async def reconcile_menu_items(db: AsyncSession, items: list[MappedLineItem]) -> None:
    """
    Link line items to catalog entries by case-insensitive exact name.

    Unmatched items keep menu_item_id=None; the order is valid without
    a catalog link.
    """
    names = {item.name.strip().lower() for item in items}
    if not names:
        return

    normalized = func.lower(func.trim(MenuItem.name))
    result = await db.execute(
        select(MenuItem.id, normalized.label("key"))
        .where(normalized.in_(names))
        .order_by(MenuItem.id)
    )

    catalog: dict[str, int] = {}
    for menu_item_id, key in result.all():
        catalog.setdefault(key, menu_item_id)

    for item in items:
        item.menu_item_id = catalog.get(item.name.strip().lower())
        if item.menu_item_id is None:
            logger.debug(f"No menu match for platform item '{item.name}'")


async def map_platform_order(db: AsyncSession, platform: Platform, payload: Any) -> MappedOrder:
    """Map a payload and reconcile its items against the menu catalog."""
    mapped = extract_order(platform, payload)
    await reconcile_menu_items(db, mapped.items)
    return mapped
