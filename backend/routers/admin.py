from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from typing import Optional
import logging

from identity.errors import ValidationError
from identity.roles import Role
from identity.service import IdentityService
from services.audit import get_audit_logs
from services.auth import AuthenticatedPrincipal
from services.authorization import AuthorizationResolver
from services.privilege_transfer import PrivilegeTransferService
from services.storage import DocumentStore
from services.store_provider import get_document_store
from middleware.auth import require_district_admin, require_lodge_admin, require_system_admin

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["Admin - Roles & Lodges"])


# ==================== REQUEST MODELS ====================

class TransferRoleRequest(BaseModel):
    candidate_id: str = Field(..., description="Identity receiving the admin role")
    scope_id: str = Field(..., description="Lodge the role applies to")
    tier: Optional[Role] = Field(None, description="LODGE_ADMIN or DISTRICT_ADMIN; defaults to the caller's role")


class ChangeRoleRequest(BaseModel):
    role: Role
    lodge_id: Optional[str] = Field(None, description="Required for LODGE_ADMIN unless the member has a primary lodge")


# ==================== ROLE MANAGEMENT ====================

@router.post("/transfer-role")
async def transfer_role(
    body: TransferRoleRequest,
    principal: AuthenticatedPrincipal = Depends(require_lodge_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """
    Hand a scoped admin role to another member.

    The current holder becomes MEMBER and the candidate gets the role in
    every stored representation. Anything short of a verified transfer is
    returned as 409 with the roles observed in each store.
    """
    result = await PrivilegeTransferService(store).transfer_role(
        requester_id=principal.user_id,
        candidate_id=body.candidate_id,
        scope_id=body.scope_id,
        tier=body.tier,
    )
    result.raise_for_status()
    return result.to_dict()


@router.put("/members/{member_id}/role")
async def change_member_role(
    member_id: str,
    body: ChangeRoleRequest,
    principal: AuthenticatedPrincipal = Depends(require_district_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """
    Set a member's role directly.

    District admins cannot grant or touch SYSTEM_ADMIN. Demoting the last
    SYSTEM_ADMIN is allowed but reported in ``warnings``.
    """
    result = await IdentityService(store).change_role(
        principal.identity, member_id, body.role, lodge_id=body.lodge_id
    )
    return result.model_dump(mode="json")


# ==================== LODGE HIERARCHY ====================

@router.get("/district/lodges")
async def district_lodges(
    principal: AuthenticatedPrincipal = Depends(require_district_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """Lodges in the caller's district (closure of their primary lodge)."""
    if not principal.identity.primary_lodge:
        raise ValidationError("Caller has no primary lodge to anchor a district")

    resolver = AuthorizationResolver(store)
    district = await resolver.district_of(principal.identity.primary_lodge)
    lodges = await resolver.lodge_map()
    return {
        "district": district.to_dict(),
        "lodges": [lodges[lodge_id].to_document() for lodge_id in sorted(district.lodge_ids)],
    }


# ==================== AUDIT ====================

@router.get("/audit")
async def audit_trail(
    action: Optional[str] = Query(None, description="Filter by action, e.g. role.transfer"),
    user_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    principal: AuthenticatedPrincipal = Depends(require_system_admin),
):
    """Most recent audit entries first."""
    entries = get_audit_logs(action=action, user_id=user_id, limit=limit)
    return {"entries": [e.model_dump() for e in entries], "count": len(entries)}
