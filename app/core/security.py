"""
Staff Access Control

Resolves a bearer token to a staff role and checks role capabilities.
User accounts and sessions are managed elsewhere; this service only needs
to know which capability the caller holds.

Usage:
    @app.get("/api/aggregator/config",
             dependencies=[Depends(require_permission(Permission.MANAGE_AGGREGATORS))])
"""

import hmac
import logging
from enum import Enum
from typing import Callable, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import get_settings

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class Permission(str, Enum):
    ACCEPT_ONLINE_ORDERS = "accept_online_orders"
    UPDATE_KITCHEN_STATUS = "update_kitchen_status"
    MANAGE_AGGREGATORS = "manage_aggregators"
    VIEW_AGGREGATOR_STATS = "view_aggregator_stats"


class Role(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.ADMIN: frozenset(Permission),
    Role.STAFF: frozenset({
        Permission.ACCEPT_ONLINE_ORDERS,
        Permission.UPDATE_KITCHEN_STATUS,
    }),
}


def has_permission(role: Role, permission: Permission) -> bool:
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def _token_matches(expected: Optional[str], provided: str) -> bool:
    if not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


async def get_current_role(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Role:
    """Map the bearer token onto a role, or reject with 401."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized")

    settings = get_settings()
    token = credentials.credentials

    if _token_matches(settings.admin_api_token, token):
        return Role.ADMIN
    if _token_matches(settings.staff_api_token, token):
        return Role.STAFF

    logger.warning("Rejected request with unknown bearer token")
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized")


def require_permission(*permissions: Permission) -> Callable:
    """Dependency factory: the caller's role must hold at least one permission."""

    async def checker(role: Role = Depends(get_current_role)) -> Role:
        if not any(has_permission(role, p) for p in permissions):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to perform this action",
            )
        return role

    return checker
