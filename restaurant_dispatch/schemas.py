"""
Pydantic Schemas for Request/Response Validation

Request and response bodies of the HTTP surface. Clients speak camelCase,
so every multi-word field has a camelCase alias; both spellings are accepted
on input.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from restaurant_dispatch.models import (
    Delivery,
    DeliveryType,
    OrderItem,
    OrderStatus,
    PaymentMethod,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderCreate(ApiModel):
    """Checkout request; prices are computed server-side from the items."""
    items: list[OrderItem] = Field(..., min_length=1)
    delivery: Delivery = Field(default_factory=Delivery)
    payment_method: PaymentMethod = Field(default=PaymentMethod.COD, alias="paymentMethod")
    tip: float = Field(default=0.0, ge=0)
    coupon_code: Optional[str] = Field(default=None, alias="couponCode", max_length=40)

    @model_validator(mode="after")
    def check_delivery_address(self) -> "OrderCreate":
        if self.delivery.type == DeliveryType.DELIVERY and self.delivery.address is None:
            raise ValueError("Delivery address is required for delivery orders")
        return self


class StatusUpdate(ApiModel):
    status: OrderStatus


class AssignDriverRequest(ApiModel):
    driver_id: str = Field(..., min_length=1, alias="driverId")


class DispatchRequest(ApiModel):
    # Optional so a missing id surfaces as invalid-argument, not a 422
    order_id: Optional[str] = Field(default=None, alias="orderId")


class CouponValidateRequest(ApiModel):
    code: Optional[str] = None
    subtotal: Optional[float] = None


class DriverOnlineRequest(ApiModel):
    is_online: bool = Field(..., alias="isOnline")


class NoteCreate(ApiModel):
    message: str = Field(..., min_length=1, max_length=500)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class SuccessResponse(ApiModel):
    success: bool = True


class DispatchResponse(SuccessResponse):
    assigned: bool = False
    driver_id: Optional[str] = Field(default=None, alias="driverId")
    distance_km: Optional[float] = Field(default=None, alias="distanceKm")
    reason: Optional[str] = None


class ErrorDetail(BaseModel):
    kind: str
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail


class CouponValidateResponse(ApiModel):
    valid: bool
    discount: Optional[float] = None
    message: Optional[str] = None


class EtaResponse(ApiModel):
    order_id: str = Field(alias="orderId")
    driver_id: Optional[str] = Field(default=None, alias="driverId")
    distance_km: Optional[float] = Field(default=None, alias="distanceKm")
    eta_minutes: Optional[int] = Field(default=None, alias="etaMinutes")


class OrderEventResponse(ApiModel):
    id: str
    order_id: str = Field(alias="orderId")
    type: str
    message: str
    created_at: datetime = Field(alias="createdAt")


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str
    services: dict[str, str]
    timestamp: datetime
