"""
Error Taxonomy

Every error the lifecycle, dispatch and coupon code raises on purpose derives
from DispatchServiceError. Each class carries the machine-readable ``kind``
returned to callers and the HTTP status the API maps it to.

    unauthenticated      401  caller has no valid identity
    permission-denied    403  caller lacks the required role
    invalid-argument     400  required input missing or malformed
    not-found            404  referenced document does not exist
    failed-precondition  409  request is well-formed but illegal right now
    already-exists       409  document created twice under one id
    aborted              409  versioned write lost a concurrent race
"""

from typing import Any, Optional


class DispatchServiceError(Exception):
    """Base class for errors surfaced to callers."""

    kind: str = "internal"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to the API error payload."""
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# =============================================================================
# AUTHORIZATION
# =============================================================================

class UnauthenticatedError(DispatchServiceError):
    kind = "unauthenticated"
    status_code = 401


class PermissionDeniedError(DispatchServiceError):
    kind = "permission-denied"
    status_code = 403


# =============================================================================
# VALIDATION
# =============================================================================

class InvalidArgumentError(DispatchServiceError):
    kind = "invalid-argument"
    status_code = 400


# =============================================================================
# LOOKUP
# =============================================================================

class NotFoundError(DispatchServiceError):
    kind = "not-found"
    status_code = 404


class DocumentNotFoundError(NotFoundError):
    """Raised by the document store when updating a missing document."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(
            f"Document {collection}/{doc_id} not found",
            {"collection": collection, "id": doc_id},
        )
        self.collection = collection
        self.doc_id = doc_id


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", {"order_id": order_id})
        self.order_id = order_id


class DriverNotFoundError(NotFoundError):
    def __init__(self, driver_id: str):
        super().__init__(f"Driver {driver_id} not found", {"driver_id": driver_id})
        self.driver_id = driver_id


# =============================================================================
# STATE
# =============================================================================

class FailedPreconditionError(DispatchServiceError):
    kind = "failed-precondition"
    status_code = 409


class InvalidTransitionError(FailedPreconditionError):
    """Requested status is not reachable from the order's current status."""

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move order from {current} to {target}",
            {"current": current, "target": target},
        )
        self.current = current
        self.target = target


class DriverUnavailableError(FailedPreconditionError):
    pass


class DocumentExistsError(DispatchServiceError):
    """Raised by the document store when adding under an id already in use."""

    kind = "already-exists"
    status_code = 409

    def __init__(self, collection: str, doc_id: str):
        super().__init__(
            f"Document {collection}/{doc_id} already exists",
            {"collection": collection, "id": doc_id},
        )
        self.collection = collection
        self.doc_id = doc_id


class ConcurrentModificationError(DispatchServiceError):
    """A versioned write found the document changed since it was read."""

    kind = "aborted"
    status_code = 409

    def __init__(self, collection: str, doc_id: str, expected: int, actual: Optional[int]):
        super().__init__(
            f"{collection}/{doc_id} changed concurrently "
            f"(expected version {expected}, found {actual})",
            {"collection": collection, "id": doc_id},
        )
        self.collection = collection
        self.doc_id = doc_id
        self.expected = expected
        self.actual = actual
