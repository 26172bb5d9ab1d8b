"""
Authentication Middleware and Dependencies

Provides:
- get_current_principal: Verify the bearer token and load the caller
- RoleChecker: Dependency requiring a minimum role

Role checks always use the role stored now, not the one in the token.
"""

from typing import Optional
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from identity.errors import AuthenticationError
from identity.roles import Role, outranks_or_equals
from services.auth import AuthenticatedPrincipal, AuthService, TokenService, get_token_service
from services.storage import DocumentStore
from services.store_provider import get_document_store

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


# ==================== DEPENDENCIES ====================

async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    store: DocumentStore = Depends(get_document_store),
    token_service: TokenService = Depends(get_token_service),
) -> AuthenticatedPrincipal:
    """
    Verify the bearer token and resolve the caller.
    Raises 401 if no token, invalid token, or the identity is gone.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"}
        )

    try:
        return await AuthService(store, token_service).verify_token(credentials.credentials)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"}
        )


class RoleChecker:
    """
    Dependency class for role-based access control.

    Passes when the caller's stored role is at least ``minimum_role``.

    Usage:
        @router.get("/admin-only")
        async def admin_endpoint(principal = Depends(RoleChecker(Role.DISTRICT_ADMIN))):
            ...
    """

    def __init__(self, minimum_role: Role):
        self.minimum_role = minimum_role

    async def __call__(
        self,
        principal: AuthenticatedPrincipal = Depends(get_current_principal),
    ) -> AuthenticatedPrincipal:
        if not outranks_or_equals(principal.role, self.minimum_role):
            logger.info(
                f"Denied {principal.email} ({principal.role.value}); "
                f"requires {self.minimum_role.value}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Requires {self.minimum_role.value} or higher"
            )
        return principal


# Convenience role checkers
require_lodge_admin = RoleChecker(Role.LODGE_ADMIN)
require_district_admin = RoleChecker(Role.DISTRICT_ADMIN)
require_system_admin = RoleChecker(Role.SYSTEM_ADMIN)
