"""
Authorization Resolver

Resolves an identity's effective role and the lodges it may act on.

The core is ``resolve_permission``: a pure function of the identity, the
lodge hierarchy and the identity's explicit admin grants. ``AuthorizationResolver``
loads those inputs from the store.

District closure of lodge L:
    {L} ∪ {X : X.district == L.district} ∪ {X : X.parentLodge == L.id}

``district`` and ``parentLodge`` are independent edges. A lodge whose two
edges disagree is kept (union) and reported in ``DistrictScope.conflicts``.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from config import get_settings
from identity.errors import ForbiddenError, ScopeNotFoundError
from identity.models import Identity, Lodge, LodgeAdminGrant
from identity.roles import Role, outranks
from identity.store import IdentityStore
from services.storage import DocumentStore

logger = logging.getLogger(__name__)


# ==================== DISTRICT SCOPE ====================

@dataclass(frozen=True)
class DistrictScope:
    """
    The lodges under one district anchor.

    ``via_district`` and ``via_parent`` record which edge brought each lodge
    in; a lodge can appear in both.
    """
    anchor_id: str
    district_key: Optional[str]
    lodge_ids: FrozenSet[str]
    via_district: FrozenSet[str] = frozenset()
    via_parent: FrozenSet[str] = frozenset()
    conflicts: Tuple[str, ...] = ()

    def __contains__(self, lodge_id: object) -> bool:
        return lodge_id in self.lodge_ids

    def to_dict(self) -> Dict[str, object]:
        return {
            "anchor_id": self.anchor_id,
            "district_key": self.district_key,
            "lodge_ids": sorted(self.lodge_ids),
            "via_district": sorted(self.via_district),
            "via_parent": sorted(self.via_parent),
            "conflicts": list(self.conflicts),
        }


def district_closure(anchor: Lodge, lodges: Iterable[Lodge]) -> DistrictScope:
    """Compute the district closure of ``anchor`` over ``lodges``."""
    via_district = set()
    via_parent = set()
    conflicts: List[str] = []

    for lodge in lodges:
        if lodge.id == anchor.id:
            continue
        by_district = anchor.district is not None and lodge.district == anchor.district
        by_parent = lodge.parent_lodge == anchor.id
        if by_district:
            via_district.add(lodge.id)
        if by_parent:
            via_parent.add(lodge.id)
        # One edge points here, the other points somewhere else
        if (by_district or by_parent) and lodge.district and lodge.parent_lodge and by_district != by_parent:
            conflicts.append(lodge.id)

    if conflicts:
        logger.warning(
            f"District closure of {anchor.id}: lodges with conflicting district/parentLodge "
            f"edges: {', '.join(sorted(conflicts))}"
        )

    return DistrictScope(
        anchor_id=anchor.id,
        district_key=anchor.district,
        lodge_ids=frozenset({anchor.id} | via_district | via_parent),
        via_district=frozenset(via_district),
        via_parent=frozenset(via_parent),
        conflicts=tuple(sorted(conflicts)),
    )


# ==================== EFFECTIVE PERMISSION ====================

@dataclass(frozen=True)
class EffectivePermission:
    role: Role
    allowed_lodge_ids: FrozenSet[str]
    administered_lodge_ids: FrozenSet[str]
    is_system_wide: bool = False
    requested_scope: Optional[str] = None
    can_administer_scope: bool = False
    district: Optional[DistrictScope] = None

    def can_access(self, lodge_id: str) -> bool:
        return self.is_system_wide or lodge_id in self.allowed_lodge_ids

    def can_administer(self, lodge_id: str) -> bool:
        return self.is_system_wide or lodge_id in self.administered_lodge_ids

    def to_dict(self) -> Dict[str, object]:
        return {
            "role": self.role.value,
            "is_system_wide": self.is_system_wide,
            "allowed_lodge_ids": sorted(self.allowed_lodge_ids),
            "administered_lodge_ids": sorted(self.administered_lodge_ids),
            "requested_scope": self.requested_scope,
            "can_administer_scope": self.can_administer_scope,
            "district": self.district.to_dict() if self.district else None,
        }


def granted_lodges(identity: Identity, grants: Sequence[LodgeAdminGrant]) -> FrozenSet[str]:
    """Lodges covered by the identity's current LODGE_ADMIN grants."""
    return frozenset(g.lodge_id for g in grants if g.user_id == identity.id and g.is_current())


def resolve_permission(
    identity: Identity,
    lodges: Mapping[str, Lodge],
    grants: Sequence[LodgeAdminGrant] = (),
    requested_scope: Optional[str] = None,
    district_admin_system_wide: bool = False,
) -> EffectivePermission:
    """
    Resolve what ``identity`` may do.

    Args:
        identity: Freshly loaded identity
        lodges: Every known lodge, keyed by id
        grants: The identity's explicit admin grants
        requested_scope: Lodge id the caller wants to act on, if any
        district_admin_system_wide: Treat DISTRICT_ADMIN like SYSTEM_ADMIN

    Returns:
        EffectivePermission

    Raises:
        ScopeNotFoundError: requested lodge does not exist
        ForbiddenError: the identity has no access to the requested lodge
    """
    if requested_scope is not None and requested_scope not in lodges:
        raise ScopeNotFoundError(f"Lodge {requested_scope} not found", details={"lodge_id": requested_scope})

    role = identity.role
    own_lodges = frozenset(ref for ref in identity.lodge_refs() if ref in lodges)
    district: Optional[DistrictScope] = None

    if role == Role.SYSTEM_ADMIN or (role == Role.DISTRICT_ADMIN and district_admin_system_wide):
        everything = frozenset(lodges)
        return EffectivePermission(
            role=role,
            allowed_lodge_ids=everything,
            administered_lodge_ids=everything,
            is_system_wide=True,
            requested_scope=requested_scope,
            can_administer_scope=requested_scope is not None,
        )

    if role == Role.DISTRICT_ADMIN:
        anchor = lodges.get(identity.primary_lodge) if identity.primary_lodge else None
        if anchor is None:
            logger.warning(f"District admin {identity.id} has no valid primary lodge; no district scope")
            administered: FrozenSet[str] = frozenset()
        else:
            district = district_closure(anchor, lodges.values())
            administered = district.lodge_ids
    elif role == Role.LODGE_ADMIN:
        administered = frozenset(
            ref for ref in (
                granted_lodges(identity, grants)
                | {identity.primary_lodge}
                | set(identity.administered_lodges)
            )
            if ref and ref in lodges
        )
    else:
        administered = frozenset()

    allowed = administered | own_lodges

    if requested_scope is not None and requested_scope not in allowed:
        raise ForbiddenError(
            f"{role.value} {identity.id} has no access to lodge {requested_scope}",
            details={"lodge_id": requested_scope, "role": role.value},
        )

    return EffectivePermission(
        role=role,
        allowed_lodge_ids=allowed,
        administered_lodge_ids=administered,
        is_system_wide=False,
        requested_scope=requested_scope,
        can_administer_scope=requested_scope is not None and requested_scope in administered,
        district=district,
    )


# ==================== RESOURCE OWNERSHIP ====================

@dataclass(frozen=True)
class OwnedResource:
    """A collaborator-owned resource (event, post, ...) being mutated."""
    created_by: Optional[str]
    lodge_id: Optional[str] = None
    is_district_wide: bool = False


def authorize_mutation(identity: Identity, permission: EffectivePermission, resource: OwnedResource) -> None:
    """
    Check that ``identity`` may modify or delete ``resource``.

    The creator may always mutate within lodges they can access. Otherwise the
    role must outrank the resource scope's admin tier: LODGE_ADMIN for lodge
    resources, DISTRICT_ADMIN for district-wide ones, and the lodge must be
    inside the identity's administered scope.

    Raises:
        ForbiddenError
    """
    tier = Role.DISTRICT_ADMIN if resource.is_district_wide else Role.LODGE_ADMIN

    if resource.created_by and resource.created_by == identity.id:
        if resource.lodge_id is None or permission.can_access(resource.lodge_id):
            return

    if outranks(identity.role, tier):
        if resource.lodge_id is None or permission.can_administer(resource.lodge_id):
            return

    raise ForbiddenError(
        "Only the creator or a higher-ranking admin can modify this resource",
        details={"lodge_id": resource.lodge_id, "role": identity.role.value},
    )


# ==================== STORE-BACKED RESOLVER ====================

class AuthorizationResolver:
    """Loads lodges and grants from the store and resolves permissions."""

    def __init__(self, store: DocumentStore, district_admin_system_wide: Optional[bool] = None):
        self.identities = IdentityStore(store)
        if district_admin_system_wide is None:
            district_admin_system_wide = get_settings().DISTRICT_ADMIN_SYSTEM_WIDE
        self.district_admin_system_wide = district_admin_system_wide

    async def lodge_map(self) -> Dict[str, Lodge]:
        return {lodge.id: lodge for lodge in await self.identities.list_lodges()}

    async def resolve(self, identity: Identity, requested_scope: Optional[str] = None) -> EffectivePermission:
        lodges = await self.lodge_map()
        grants = await self.identities.list_admin_grants(identity.id) if identity.role == Role.LODGE_ADMIN else []
        return resolve_permission(
            identity,
            lodges,
            grants,
            requested_scope=requested_scope,
            district_admin_system_wide=self.district_admin_system_wide,
        )

    async def district_of(self, lodge_id: str) -> DistrictScope:
        """District closure anchored at ``lodge_id``."""
        lodges = await self.lodge_map()
        anchor = lodges.get(lodge_id)
        if anchor is None:
            raise ScopeNotFoundError(f"Lodge {lodge_id} not found", details={"lodge_id": lodge_id})
        return district_closure(anchor, lodges.values())
