"""
                        Services Module

Business logic of the dispatch core. Infrastructure services keep the
hybrid pattern: a base contract plus an in-process implementation for
development and a real one for staging/production.

Services:
    - store: Versioned document store (in-memory / SQLAlchemy)
    - notifications: Push gateway (mock / Expo) behind a bounded queue
    - geo: Haversine distance and ETA
    - state_machine: Pure order status transitions
    - dispatch: Nearest-driver selection and binding
    - orders: Order lifecycle write path
    - sweeper: Stale-order cancellation
    - drivers: Driver availability and location tracking
    - coupons: Checkout coupon validation
    - auth: Caller resolution from bearer tokens
"""
