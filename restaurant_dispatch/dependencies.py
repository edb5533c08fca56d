"""
Service Wiring

Process-wide service instances (cached like the infrastructure factories)
and the FastAPI dependencies built on them.

Usage:
    from restaurant_dispatch.dependencies import get_order_service

    orders = get_order_service()
    await orders.advance(order_id, caller)
"""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header

from restaurant_dispatch.core.config import get_settings
from restaurant_dispatch.services.auth import Caller, resolve_caller
from restaurant_dispatch.services.coupons import CouponService
from restaurant_dispatch.services.dispatch import DispatchEngine
from restaurant_dispatch.services.drivers import DriverService
from restaurant_dispatch.services.notifications import get_notifier, reset_notification_service
from restaurant_dispatch.services.orders import OrderService
from restaurant_dispatch.services.store import (
    BaseDocumentStore,
    get_document_store,
    reset_document_store,
)
from restaurant_dispatch.services.sweeper import StaleOrderSweeper


@lru_cache()
def get_dispatch_engine() -> DispatchEngine:
    return DispatchEngine(get_document_store(), get_notifier(), get_settings())


@lru_cache()
def get_coupon_service() -> CouponService:
    return CouponService(get_document_store())


@lru_cache()
def get_order_service() -> OrderService:
    return OrderService(
        get_document_store(),
        get_notifier(),
        get_dispatch_engine(),
        coupon_service=get_coupon_service(),
        settings=get_settings(),
    )


@lru_cache()
def get_driver_service() -> DriverService:
    return DriverService(get_document_store(), get_settings())


@lru_cache()
def get_sweeper() -> StaleOrderSweeper:
    return StaleOrderSweeper(get_document_store(), get_order_service(), get_settings())


def reset_services() -> None:
    """Drop every cached instance, infrastructure included."""
    for factory in (
        get_sweeper,
        get_driver_service,
        get_order_service,
        get_coupon_service,
        get_dispatch_engine,
    ):
        factory.cache_clear()
    reset_notification_service()
    reset_document_store()


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

async def get_current_caller(
    authorization: Optional[str] = Header(None),
    store: BaseDocumentStore = Depends(get_document_store),
) -> Optional[Caller]:
    """Caller from the bearer token, or None when unauthenticated."""
    return await resolve_caller(store, authorization, get_settings())
