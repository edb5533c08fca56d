"""
Coupon Validation

Checks a checkout coupon against the ``coupons`` collection and computes the
discount. Validation failures a customer can fix (unknown code, expired,
order too small) are answers, not errors: they come back as
``CouponValidation(valid=False, message=...)``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from restaurant_dispatch.core.exceptions import InvalidArgumentError
from restaurant_dispatch.models import Collections, Coupon, DiscountType, utc_now
from restaurant_dispatch.services.store.base import BaseDocumentStore, FieldFilter

logger = logging.getLogger(__name__)


@dataclass
class CouponValidation:
    valid: bool
    discount: float = 0.0
    message: Optional[str] = None
    code: Optional[str] = None

    def to_dict(self) -> dict:
        if self.valid:
            return {"valid": True, "discount": self.discount}
        return {"valid": False, "message": self.message}


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def compute_discount(coupon: Coupon, subtotal: float) -> float:
    if coupon.discount_type == DiscountType.PERCENT:
        return round(subtotal * coupon.discount_value / 100, 2)
    return coupon.discount_value


class CouponService:
    def __init__(self, store: BaseDocumentStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def find_active(self, code: str) -> Optional[Coupon]:
        snapshots = await self.store.query(
            Collections.COUPONS,
            [
                FieldFilter("code", "==", code.strip().upper()),
                FieldFilter("isActive", "==", True),
            ],
            limit=1,
        )
        return Coupon.from_snapshot(snapshots[0]) if snapshots else None

    async def validate(self, code: Optional[str], subtotal: Optional[float]) -> CouponValidation:
        """
        Validate ``code`` for an order of ``subtotal``.

        Raises:
            InvalidArgumentError: If code or subtotal is missing (a zero
                subtotal counts as missing)
        """
        if not code or not code.strip() or not subtotal or subtotal < 0:
            raise InvalidArgumentError("code and subtotal required")

        coupon = await self.find_active(code)
        if coupon is None:
            logger.info(f"Coupon {code.upper()!r} rejected: unknown or inactive")
            return CouponValidation(valid=False, message="Invalid coupon")

        if coupon.expires_at is not None and _as_utc(coupon.expires_at) < self.clock():
            return CouponValidation(valid=False, message="Coupon expired", code=coupon.code)

        if coupon.min_order_amount and subtotal < coupon.min_order_amount:
            return CouponValidation(
                valid=False,
                message=f"Min order: ${coupon.min_order_amount:g}",
                code=coupon.code,
            )

        discount = compute_discount(coupon, subtotal)
        logger.info(f"🎟️ Coupon {coupon.code} accepted: -{discount:.2f} on {subtotal:.2f}")
        return CouponValidation(valid=True, discount=discount, code=coupon.code)
