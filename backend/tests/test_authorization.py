"""
Unit Tests for the Authorization Resolver

Tests:
- District closure: {L} ∪ same district ∪ parentLodge == L
- Effective permission per role
- Scope errors (unknown lodge, no access)
- Explicit lodge admin grants
- Resource ownership overlay

Run with: pytest backend/tests/test_authorization.py -v
"""

import pytest
from datetime import datetime, timedelta, timezone

from identity.errors import ForbiddenError, ScopeNotFoundError
from identity.models import Identity, Lodge, LodgeAdminGrant
from identity.roles import Role
from services.authorization import (
    AuthorizationResolver,
    OwnedResource,
    authorize_mutation,
    district_closure,
    resolve_permission,
)


def lodge(lodge_id, district=None, parent=None):
    return Lodge(id=lodge_id, name=f"Lodge {lodge_id}", district=district, parent_lodge=parent)


@pytest.fixture
def lodges():
    items = [
        lodge("L1", district="D1"),
        lodge("L2", district="D1"),
        lodge("L3", parent="L1"),
        lodge("L4", district="D2"),
        lodge("L5"),
    ]
    return {l.id: l for l in items}


def person(role, primary_lodge=None, **kwargs):
    return Identity(
        id=kwargs.pop("id", "p1"),
        email="p@example.org",
        name="P",
        role=role,
        primary_lodge=primary_lodge,
        **kwargs,
    )


class TestDistrictClosure:

    def test_exact_closure(self, lodges):
        scope = district_closure(lodges["L1"], lodges.values())
        assert scope.lodge_ids == {"L1", "L2", "L3"}
        assert scope.via_district == {"L2"}
        assert scope.via_parent == {"L3"}
        assert scope.conflicts == ()

    def test_anchor_without_district_uses_parent_edges_only(self):
        items = [lodge("A"), lodge("B", parent="A"), lodge("C"), lodge("D")]
        scope = district_closure(items[0], items)
        assert scope.lodge_ids == {"A", "B"}

    def test_non_anchor_lodge_closure(self, lodges):
        scope = district_closure(lodges["L3"], lodges.values())
        assert scope.lodge_ids == {"L3"}

    def test_conflicting_edges_unioned_and_reported(self):
        items = [
            lodge("A", district="D1"),
            lodge("B", district="D1", parent="Z"),
            lodge("C", district="D9", parent="A"),
            lodge("Z", district="D9"),
        ]
        scope = district_closure(items[0], items)
        assert scope.lodge_ids == {"A", "B", "C"}
        assert scope.conflicts == ("B", "C")

    def test_both_edges_agree(self):
        items = [lodge("A", district="D1"), lodge("B", district="D1", parent="A")]
        scope = district_closure(items[0], items)
        assert scope.lodge_ids == {"A", "B"}
        assert scope.conflicts == ()
        assert "B" in scope


class TestResolvePermission:

    def test_system_admin_is_system_wide(self, lodges):
        permission = resolve_permission(person(Role.SYSTEM_ADMIN), lodges, requested_scope="L4")
        assert permission.is_system_wide
        assert permission.can_administer("L5")
        assert permission.can_administer_scope

    def test_district_admin_scoped_to_closure(self, lodges):
        permission = resolve_permission(person(Role.DISTRICT_ADMIN, primary_lodge="L1"), lodges)
        assert not permission.is_system_wide
        assert permission.administered_lodge_ids == {"L1", "L2", "L3"}
        assert permission.district.anchor_id == "L1"

    def test_district_admin_outside_district_forbidden(self, lodges):
        with pytest.raises(ForbiddenError):
            resolve_permission(person(Role.DISTRICT_ADMIN, primary_lodge="L1"), lodges, requested_scope="L4")

    def test_district_admin_system_wide_setting(self, lodges):
        permission = resolve_permission(
            person(Role.DISTRICT_ADMIN, primary_lodge="L1"),
            lodges,
            requested_scope="L4",
            district_admin_system_wide=True,
        )
        assert permission.is_system_wide

    def test_district_admin_without_primary_lodge(self, lodges):
        permission = resolve_permission(person(Role.DISTRICT_ADMIN), lodges)
        assert permission.administered_lodge_ids == frozenset()

    def test_lodge_admin_scope(self, lodges):
        admin = person(Role.LODGE_ADMIN, primary_lodge="L2", administered_lodges=["L5", "GONE"])
        permission = resolve_permission(admin, lodges)
        assert permission.administered_lodge_ids == {"L2", "L5"}
        assert not permission.can_administer("L1")

    def test_lodge_admin_grants(self, lodges):
        admin = person(Role.LODGE_ADMIN, primary_lodge="L2")
        expired = datetime.now(timezone.utc) - timedelta(days=1)
        grants = [
            LodgeAdminGrant(user_id="p1", lodge_id="L4"),
            LodgeAdminGrant(user_id="p1", lodge_id="L5", end_date=expired),
            LodgeAdminGrant(user_id="someone-else", lodge_id="L1"),
        ]
        permission = resolve_permission(admin, lodges, grants, requested_scope="L4")
        assert permission.administered_lodge_ids == {"L2", "L4"}
        assert permission.can_administer_scope

    def test_member_sees_own_lodges_only(self, lodges):
        member = person(Role.MEMBER, primary_lodge="L1", lodges=["L4"])
        permission = resolve_permission(member, lodges, requested_scope="L4")
        assert permission.allowed_lodge_ids == {"L1", "L4"}
        assert permission.administered_lodge_ids == frozenset()
        assert not permission.can_administer_scope

        with pytest.raises(ForbiddenError):
            resolve_permission(member, lodges, requested_scope="L2")

    def test_unknown_scope(self, lodges):
        with pytest.raises(ScopeNotFoundError):
            resolve_permission(person(Role.SYSTEM_ADMIN), lodges, requested_scope="NOPE")

    def test_to_dict(self, lodges):
        payload = resolve_permission(person(Role.DISTRICT_ADMIN, primary_lodge="L1"), lodges).to_dict()
        assert payload["role"] == "DISTRICT_ADMIN"
        assert payload["district"]["lodge_ids"] == ["L1", "L2", "L3"]


class TestAuthorizeMutation:

    def test_creator_may_mutate(self, lodges):
        member = person(Role.MEMBER, primary_lodge="L1")
        permission = resolve_permission(member, lodges)
        authorize_mutation(member, permission, OwnedResource(created_by="p1", lodge_id="L1"))

    def test_other_member_may_not(self, lodges):
        member = person(Role.MEMBER, primary_lodge="L1")
        permission = resolve_permission(member, lodges)
        with pytest.raises(ForbiddenError):
            authorize_mutation(member, permission, OwnedResource(created_by="someone", lodge_id="L1"))

    def test_lodge_admin_cannot_override_peer_content(self, lodges):
        admin = person(Role.LODGE_ADMIN, primary_lodge="L1")
        permission = resolve_permission(admin, lodges)
        with pytest.raises(ForbiddenError):
            authorize_mutation(admin, permission, OwnedResource(created_by="someone", lodge_id="L1"))

    def test_district_admin_overrides_inside_district(self, lodges):
        admin = person(Role.DISTRICT_ADMIN, primary_lodge="L1")
        permission = resolve_permission(admin, lodges)
        authorize_mutation(admin, permission, OwnedResource(created_by="someone", lodge_id="L3"))
        with pytest.raises(ForbiddenError):
            authorize_mutation(admin, permission, OwnedResource(created_by="someone", lodge_id="L4"))

    def test_district_wide_resource_needs_system_admin(self, lodges):
        admin = person(Role.DISTRICT_ADMIN, primary_lodge="L1")
        with pytest.raises(ForbiddenError):
            authorize_mutation(
                admin,
                resolve_permission(admin, lodges),
                OwnedResource(created_by="someone", lodge_id="L1", is_district_wide=True),
            )

        root = person(Role.SYSTEM_ADMIN)
        authorize_mutation(
            root,
            resolve_permission(root, lodges),
            OwnedResource(created_by="someone", lodge_id="L1", is_district_wide=True),
        )


class TestAuthorizationResolver:
    """Store-backed resolution."""

    @pytest.mark.asyncio
    async def test_resolve_with_stored_grants(self, seed, store):
        await seed.hierarchy()
        await seed.grant("p1", "L4")
        resolver = AuthorizationResolver(store, district_admin_system_wide=False)

        permission = await resolver.resolve(person(Role.LODGE_ADMIN, primary_lodge="L2"))
        assert permission.administered_lodge_ids == {"L2", "L4"}

    @pytest.mark.asyncio
    async def test_district_of(self, seed, store):
        await seed.hierarchy()
        resolver = AuthorizationResolver(store)
        assert (await resolver.district_of("L1")).lodge_ids == {"L1", "L2", "L3"}
        with pytest.raises(ScopeNotFoundError):
            await resolver.district_of("NOPE")
