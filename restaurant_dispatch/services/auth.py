"""
Caller Resolution

Identity is issued elsewhere; this service only verifies the bearer JWT
(``sub`` = user id) and looks the role up in the ``users`` collection. The
role claim inside the token, if any, is ignored: the user record is the
authority.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from restaurant_dispatch.core.config import Settings, get_settings
from restaurant_dispatch.core.exceptions import PermissionDeniedError, UnauthenticatedError
from restaurant_dispatch.models import Collections, UserRole
from restaurant_dispatch.services.store.base import BaseDocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    uid: str
    role: Optional[UserRole] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_driver(self) -> bool:
        return self.role == UserRole.DRIVER


def create_access_token(
    user_id: str,
    settings: Optional[Settings] = None,
    expires_minutes: int = 60,
) -> str:
    """Issue a token the way the auth system does (used by tooling and tests)."""
    settings = settings or get_settings()
    payload = {
        "sub": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_subject(token: str, settings: Optional[Settings] = None) -> Optional[str]:
    """User id of a valid token, or None."""
    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.debug(f"Rejected bearer token: {e}")
        return None
    return payload.get("sub")


async def resolve_caller(
    store: BaseDocumentStore,
    authorization: Optional[str],
    settings: Optional[Settings] = None,
) -> Optional[Caller]:
    """
    Resolve an ``Authorization`` header to a Caller.

    Returns None for a missing or invalid token. A valid token whose user has
    no record resolves to a Caller without role.
    """
    if not authorization or not authorization.lower().startswith("bearer "):
        return None

    uid = decode_subject(authorization.split(" ", 1)[1].strip(), settings)
    if not uid:
        return None

    snapshot = await store.get(Collections.USERS, uid)
    role = snapshot.get("role") if snapshot else None
    try:
        return Caller(uid=uid, role=UserRole(role) if role else None)
    except ValueError:
        logger.warning(f"User {uid} has unknown role {role!r}")
        return Caller(uid=uid)


def require_authenticated(caller: Optional[Caller]) -> Caller:
    if caller is None:
        raise UnauthenticatedError("Login required")
    return caller


def require_admin(caller: Optional[Caller]) -> Caller:
    caller = require_authenticated(caller)
    if not caller.is_admin:
        raise PermissionDeniedError("Admin only")
    return caller
