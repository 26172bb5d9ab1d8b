"""
Identity - API Router

Provides REST API endpoints for identity management:
- POST /api/identity/register - Member self-registration
- GET /api/identity/person/by-email - Get identity by email
- GET /api/identity/person/{id} - Get identity by ID
- GET /api/identity/me - Current caller's identity
- PATCH /api/identity/me - Update own profile

Permissions:
- register: public
- person lookups: LODGE_ADMIN or higher, within their lodges
- me: any authenticated member
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from identity.errors import ForbiddenError
from middleware.auth import get_current_principal, require_lodge_admin
from services.auth import AuthenticatedPrincipal
from services.authorization import AuthorizationResolver
from services.storage import DocumentStore
from services.store_provider import get_document_store

from .models import Identity
from .service import IdentityService

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/identity", tags=["Identity"])


# ==================== REQUEST/RESPONSE MODELS ====================

class RegisterRequest(BaseModel):
    """Request model for member registration"""
    email: EmailStr = Field(..., description="Member email address")
    password: str = Field(..., min_length=8, description="Plaintext password, hashed before storage")
    name: Optional[str] = Field(None, max_length=200)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=50)
    primary_lodge: Optional[str] = Field(None, description="Primary lodge id")
    lodges: Optional[List[str]] = Field(None, description="Additional lodge ids")


class ProfileUpdateRequest(BaseModel):
    """Profile fields a member may change themselves (camelCase keys)"""
    model_config = ConfigDict(extra="allow")


# ==================== HELPERS ====================

async def _ensure_can_view(principal: AuthenticatedPrincipal, identity: Identity, store: DocumentStore):
    if principal.user_id == identity.id:
        return
    permission = await AuthorizationResolver(store).resolve(principal.identity)
    if permission.is_system_wide:
        return
    if not set(identity.lodge_refs()) & permission.administered_lodge_ids:
        raise ForbiddenError(
            "Identity is outside the lodges you administer",
            details={"identity_id": identity.id},
        )


# ==================== ENDPOINTS ====================

@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    store: DocumentStore = Depends(get_document_store),
) -> Dict[str, Any]:
    """
    Register a new member.

    **Rules:**
    - Email must not exist in any identity store (409 otherwise)
    - New members always start as MEMBER

    **No authentication required** (public endpoint)
    """
    identity = await IdentityService(store).register(
        email=request.email,
        password=request.password,
        name=request.name,
        first_name=request.first_name,
        last_name=request.last_name,
        primary_lodge=request.primary_lodge,
        lodges=request.lodges,
        phone=request.phone,
    )
    return {"user": identity.to_public_dict(), "message": "Registered successfully"}


@router.get("/person/by-email")
async def get_person_by_email(
    email: str = Query(..., description="Email address"),
    principal: AuthenticatedPrincipal = Depends(require_lodge_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """Get an identity by email (case-insensitive)."""
    identity = await IdentityService(store).get_by_email(email)
    await _ensure_can_view(principal, identity, store)
    return identity.to_public_dict()


@router.get("/person/{person_id}")
async def get_person(
    person_id: str,
    principal: AuthenticatedPrincipal = Depends(require_lodge_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """Get an identity by id."""
    identity = await IdentityService(store).get_by_id(person_id)
    await _ensure_can_view(principal, identity, store)
    return identity.to_public_dict()


@router.get("/me")
async def get_me(principal: AuthenticatedPrincipal = Depends(get_current_principal)):
    """The caller's own identity, with the primary lodge name."""
    return {**principal.identity.to_public_dict(), "lodgeName": principal.lodge_name}


@router.patch("/me")
async def update_me(
    request: ProfileUpdateRequest,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    store: DocumentStore = Depends(get_document_store),
):
    """
    Update the caller's profile.

    Role, status, email and credentials cannot be changed here (422).
    """
    identity = await IdentityService(store).update_profile(principal.user_id, request.model_extra or {})
    return identity.to_public_dict()
