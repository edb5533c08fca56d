"""
Domain Models

Pydantic models for the documents the dispatch core reads and writes.
Documents are stored with camelCase keys (the mobile and admin clients read
them directly), so every multi-word field carries a camelCase alias.

Collections:
    - orders: Order lifecycle records
    - drivers: Driver availability and last known position
    - users: Roles and push tokens (owned by the auth system)
    - restaurants: Restaurant settings such as autoDispatch
    - coupons: Checkout discounts
    - orderEvents: Append-only audit log
"""

import enum
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from restaurant_dispatch.services.store.base import DocumentSnapshot


class Collections:
    """Document store collection names."""
    USERS = "users"
    RESTAURANTS = "restaurants"
    ORDERS = "orders"
    DRIVERS = "drivers"
    ORDER_EVENTS = "orderEvents"
    COUPONS = "coupons"


def utc_now() -> datetime:
    """Timezone-aware current instant; the default clock of every service."""
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    RECEIVED = "RECEIVED"
    PREPARING = "PREPARING"
    READY = "READY"
    PICKED_UP = "PICKED_UP"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class DeliveryType(str, enum.Enum):
    """Order type - Delivery or Pickup."""
    DELIVERY = "delivery"
    PICKUP = "pickup"


class PaymentMethod(str, enum.Enum):
    COD = "COD"
    CARD = "CARD"


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    DRIVER = "driver"
    ADMIN = "admin"


class DiscountType(str, enum.Enum):
    PERCENT = "PERCENT"
    FIXED = "FIXED"


class EventType(str, enum.Enum):
    """Audit event categories."""
    STATUS_CHANGE = "STATUS_CHANGE"
    NOTE = "NOTE"
    DRIVER_ASSIGNED = "DRIVER_ASSIGNED"


# =============================================================================
# BASE
# =============================================================================

class DocumentModel(BaseModel):
    """Base for models persisted as store documents."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str

    @classmethod
    def from_snapshot(cls, snapshot: DocumentSnapshot):
        """Build a model from a stored document, using the document key as id."""
        return cls.model_validate({**snapshot.data, "id": snapshot.id})

    def to_document(self) -> dict[str, Any]:
        """Dump to the stored representation (camelCase, no id)."""
        return self.model_dump(by_alias=True, exclude={"id"})


class EmbeddedModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# =============================================================================
# ORDER
# =============================================================================

class SelectedOption(EmbeddedModel):
    """A modifier option chosen for a line item."""
    modifier_id: str = Field(alias="modifierId")
    modifier_name: str = Field(default="", alias="modifierName")
    option_name: str = Field(alias="optionName")
    price_delta: float = Field(default=0.0, alias="priceDelta")


class OrderItem(EmbeddedModel):
    """Single line item of an order."""
    item_id: str = Field(alias="itemId")
    name: str
    qty: int = Field(ge=1)
    price: float = Field(ge=0)
    selected_options: list[SelectedOption] = Field(default_factory=list, alias="selectedOptions")
    notes: Optional[str] = None

    @property
    def unit_price(self) -> float:
        """Base price plus the deltas of all selected options."""
        return self.price + sum(option.price_delta for option in self.selected_options)

    @property
    def line_total(self) -> float:
        return self.unit_price * self.qty


class OrderAddress(EmbeddedModel):
    lat: float
    lng: float
    line1: str
    notes: Optional[str] = None


class Delivery(EmbeddedModel):
    type: DeliveryType = DeliveryType.DELIVERY
    address: Optional[OrderAddress] = None


class Order(DocumentModel):
    """
    Order document.

    ``total`` and the other pricing fields are fixed at checkout and never
    recomputed. ``timestamps`` maps stage keys (createdAt, preparingAt,
    readyAt, pickedUpAt, deliveredAt, cancelledAt) to the instant the order
    entered that stage.
    """
    restaurant_id: str = Field(default="", alias="restaurantId")
    customer_id: str = Field(alias="customerId")
    driver_id: Optional[str] = Field(default=None, alias="driverId")

    items: list[OrderItem] = Field(default_factory=list)
    subtotal: float = 0.0
    tax: float = 0.0
    delivery_fee: float = Field(default=0.0, alias="deliveryFee")
    tip: float = 0.0
    total: float = 0.0
    coupon_code: Optional[str] = Field(default=None, alias="couponCode")
    discount_amount: float = Field(default=0.0, alias="discountAmount")

    payment_method: PaymentMethod = Field(default=PaymentMethod.COD, alias="paymentMethod")
    payment_status: str = Field(default="unpaid", alias="paymentStatus")

    delivery: Delivery = Field(default_factory=Delivery)
    status: OrderStatus = OrderStatus.RECEIVED
    tracking_enabled: bool = Field(default=False, alias="trackingEnabled")
    timestamps: dict[str, datetime] = Field(default_factory=dict)

    @property
    def reference(self) -> str:
        """Short human-facing order number."""
        return self.id[-8:].upper()

    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    def __repr__(self) -> str:
        return f"<Order #{self.reference} - {self.status.value} - driver={self.driver_id}>"


# =============================================================================
# DRIVER
# =============================================================================

class Driver(DocumentModel):
    """Driver availability and last reported position."""
    is_online: bool = Field(default=False, alias="isOnline")
    active_order_id: Optional[str] = Field(default=None, alias="activeOrderId")
    lat: Optional[float] = None
    lng: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @property
    def is_available(self) -> bool:
        """Online and not holding an order."""
        return self.is_online and not self.active_order_id

    @property
    def has_position(self) -> bool:
        return self.lat is not None and self.lng is not None


class Location(BaseModel):
    """A position fix reported by the driver client."""
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    heading: Optional[float] = None
    speed: Optional[float] = None


# =============================================================================
# USERS, RESTAURANT, COUPONS, EVENTS
# =============================================================================

class User(DocumentModel):
    role: UserRole = UserRole.CUSTOMER
    name: str = ""
    expo_push_token: Optional[str] = Field(default=None, alias="expoPushToken")


class Restaurant(DocumentModel):
    name: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None
    auto_dispatch: bool = Field(default=False, alias="autoDispatch")


class Coupon(DocumentModel):
    code: str
    discount_type: DiscountType = Field(alias="discountType")
    discount_value: float = Field(alias="discountValue")
    min_order_amount: float = Field(default=0.0, alias="minOrderAmount")
    is_active: bool = Field(default=True, alias="isActive")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")


class OrderEvent(DocumentModel):
    """Append-only audit record."""
    order_id: str = Field(alias="orderId")
    type: EventType = EventType.STATUS_CHANGE
    message: str
    created_at: datetime = Field(alias="createdAt")
