"""
Authentication and authorization

Passwords are hashed with passlib/bcrypt. Bearer tokens are HS256 JWTs carrying
the user id. Roles map to sets of permissions; routes ask for a permission,
never for a role name.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Dict, FrozenSet, Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

from config import Settings
from database import Store, utcnow
from errors import Forbidden, NotFound, Unauthenticated

logger = logging.getLogger(__name__)

ACCESS_PURPOSE = "access"
RESET_PURPOSE = "reset"


def make_password_context(rounds: int = 12) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


# ===================== Tokens =====================

def _encode(user_id: str, purpose: str, expires: timedelta, settings: Settings) -> str:
    now = utcnow()
    payload = {"user_id": user_id, "purpose": purpose, "iat": now, "exp": now + expires}
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def create_access_token(user_id: str, settings: Settings) -> str:
    return _encode(user_id, ACCESS_PURPOSE, timedelta(hours=settings.jwt_expires_hours), settings)


def create_reset_token(user_id: str, settings: Settings) -> str:
    return _encode(user_id, RESET_PURPOSE, timedelta(minutes=settings.reset_token_expires_minutes), settings)


def decode_token(token: str, settings: Settings, purpose: str = ACCESS_PURPOSE) -> Optional[str]:
    """Return the user id in a valid token of the given purpose, else None."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except jwt.PyJWTError as e:
        logger.warning(f"Rejected token: {e}")
        return None
    if payload.get("purpose") != purpose:
        return None
    return payload.get("user_id")


# ===================== Permissions =====================

class Permission(str, Enum):
    MANAGE_CATALOG = "manage_catalog"
    MANAGE_ORDERS = "manage_orders"
    VIEW_ALL_ORDERS = "view_all_orders"
    MANAGE_SHIPPING = "manage_shipping"
    MANAGE_USERS = "manage_users"


ROLE_PERMISSIONS: Dict[str, FrozenSet[Permission]] = {
    "admin": frozenset(Permission),
    "customer": frozenset(),
}


@dataclass
class Principal:
    """The authenticated caller."""
    user: dict

    @property
    def id(self) -> str:
        return self.user["_id"]

    @property
    def role(self) -> str:
        return self.user.get("role", "customer")

    @property
    def permissions(self) -> FrozenSet[Permission]:
        return ROLE_PERMISSIONS.get(self.role, frozenset())

    def can(self, permission: Permission) -> bool:
        return permission in self.permissions

    def owns(self, doc: dict) -> bool:
        return doc.get("user_id") == self.id


def public_user(user: dict) -> dict:
    return {
        "_id": user["_id"],
        "name": user["name"],
        "email": user["email"],
        "role": user.get("role", "customer"),
        "created_at": user.get("created_at"),
    }


# ===================== Dependencies =====================

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(request: Request,
                     credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Principal:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Access token is required")
    settings: Settings = request.app.state.settings
    store: Store = request.app.state.store
    user_id = decode_token(credentials.credentials, settings)
    if user_id is None:
        raise Forbidden("Invalid or expired token")
    user = store.get_document_by_id("user", user_id)
    if not user:
        raise NotFound("User not found")
    return Principal(user=user)


def require(permission: Permission):
    def dependency(principal: Principal = Depends(get_current_user)) -> Principal:
        if not principal.can(permission):
            logger.warning(f"User {principal.id} denied {permission.value}")
            raise Forbidden("Admin access required")
        return principal

    return dependency
