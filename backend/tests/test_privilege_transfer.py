"""
Unit Tests for the Privilege Transfer Protocol

Phases: validate -> reconcile dual presence -> validate membership ->
apply -> verify read-back.

Run with: pytest backend/tests/test_privilege_transfer.py -v
"""

import pytest
from unittest.mock import patch

from identity.errors import (
    AuthorizationError,
    ConflictError,
    ConsistencyError,
    NotFoundError,
    ScopeNotFoundError,
    ValidationError,
)
from identity.roles import Role
from identity.store import LEGACY_ACCOUNT_COLLECTION, LEGACY_PROFILE_COLLECTION, IdentityStore
from services import audit
from services.authorization import AuthorizationResolver
from services.passwords import is_password_hash
from services.privilege_transfer import PrivilegeTransferService, TransferStatus
from services.storage import WriteOutcome

from conftest import PASSWORD_HASH


@pytest.fixture
def service(store):
    return PrivilegeTransferService(store)


@pytest.fixture
async def lodge_setup(seed):
    """LODGE_ADMIN 'la' of L1 and member 'cand' of L1, both with account and profile."""
    await seed.hierarchy()
    await seed.both("la", "la@example.org", "LODGE_ADMIN", "L1", administeredLodges=["L1"])
    await seed.both("cand", "cand@example.org", "LODGE_MEMBER", "L1")


@pytest.fixture
async def district_setup(seed):
    """DISTRICT_ADMIN 'da' anchored at L1 and member 'cand' of L2 (same district, not L1)."""
    await seed.hierarchy()
    await seed.both("da", "da@example.org", "DISTRICT_ADMIN", "L1")
    await seed.both("cand", "cand@example.org", "LODGE_MEMBER", "L2")


async def roles_of(store, identity_id):
    return {
        collection: (await store.get(collection, identity_id) or {}).get("role")
        for collection in (LEGACY_ACCOUNT_COLLECTION, LEGACY_PROFILE_COLLECTION)
    }


class TestCompletedTransfer:

    @pytest.mark.asyncio
    async def test_lodge_admin_hands_over(self, store, service, lodge_setup):
        result = await service.transfer_role("la", "cand", "L1")

        assert result.status == TransferStatus.COMPLETED
        assert result.succeeded
        assert result.tier == Role.LODGE_ADMIN
        assert result.previous_admin.identity_id == "la"
        assert result.new_admin.consistent and result.previous_admin.consistent
        assert result.phases == [
            "validate", "reconcile_dual_presence", "validate_membership", "apply", "verify_read_back",
        ]

        assert await roles_of(store, "cand") == {"users": "LODGE_ADMIN", "members": "LODGE_ADMIN"}
        assert await roles_of(store, "la") == {"users": "MEMBER", "members": "MEMBER"}
        assert (await store.get("users", "cand"))["administeredLodges"] == ["L1"]
        assert (await store.get("users", "la"))["administeredLodges"] == []
        assert result.raise_for_status() is result

    @pytest.mark.asyncio
    async def test_district_transfer_repairs_membership(self, store, service, district_setup):
        result = await service.transfer_role("da", "cand", "L1")

        assert result.status == TransferStatus.COMPLETED
        assert result.membership_repaired
        assert any("membership repaired" in w for w in result.warnings)

        for collection in (LEGACY_ACCOUNT_COLLECTION, LEGACY_PROFILE_COLLECTION):
            document = await store.get(collection, "cand")
            assert document["primaryLodge"] == "L1"
            assert document["lodges"] == ["L1"]
            assert document["role"] == "DISTRICT_ADMIN"
            assert (await store.get(collection, "da"))["role"] == "MEMBER"

        actions = [e.action for e in audit.get_audit_logs()]
        assert "membership.repaired" in actions
        assert "role.transfer" in actions

    @pytest.mark.asyncio
    async def test_candidate_outside_district_is_repaired(self, seed, store, service):
        await seed.hierarchy()
        await seed.both("da", "da@example.org", "DISTRICT_ADMIN", "L1")
        await seed.both("far", "far@example.org", "LODGE_MEMBER", "L4")

        result = await service.transfer_role("da", "far", "L1")

        assert result.status == TransferStatus.COMPLETED
        assert result.membership_repaired
        for collection in (LEGACY_ACCOUNT_COLLECTION, LEGACY_PROFILE_COLLECTION):
            document = await store.get(collection, "far")
            assert document["primaryLodge"] == "L1"
            assert document["lodges"] == ["L1"]
            assert document["role"] == "DISTRICT_ADMIN"

    @pytest.mark.asyncio
    async def test_new_district_admin_anchored_at_scope(self, seed, store, service):
        await seed.hierarchy()
        await seed.both("da", "da@example.org", "DISTRICT_ADMIN", "L1")
        # Member of L1 through lodges only; primary lodge is L2
        await seed.both("cand", "cand@example.org", "LODGE_MEMBER", "L2", lodges=["L2", "L1"])

        result = await service.transfer_role("da", "cand", "L1")

        assert result.status == TransferStatus.COMPLETED
        assert result.membership_repaired
        account = await store.get(LEGACY_ACCOUNT_COLLECTION, "cand")
        assert account["primaryLodge"] == "L1"
        assert account["lodges"] == ["L1", "L2"]

        identities = IdentityStore(store)
        permission = await AuthorizationResolver(store).resolve((await identities.require_by_id("cand")).identity)
        assert permission.district.lodge_ids == {"L1", "L2", "L3"}
        assert permission.administered_lodge_ids == frozenset({"L1", "L2", "L3"})

    @pytest.mark.asyncio
    async def test_lodge_member_keeps_primary_lodge_for_lodge_tier(self, seed, store, service):
        await seed.hierarchy()
        await seed.both("la", "la@example.org", "LODGE_ADMIN", "L1")
        await seed.both("cand", "cand@example.org", "LODGE_MEMBER", "L2", lodges=["L2", "L1"])

        result = await service.transfer_role("la", "cand", "L1")

        assert result.status == TransferStatus.COMPLETED
        assert not result.membership_repaired
        account = await store.get(LEGACY_ACCOUNT_COLLECTION, "cand")
        assert account["primaryLodge"] == "L2"
        assert account["administeredLodges"] == ["L1"]

    @pytest.mark.asyncio
    async def test_missing_profile_is_synthesized(self, seed, store, service):
        await seed.hierarchy()
        await seed.both("la", "la@example.org", "LODGE_ADMIN", "L1")
        await seed.account("cand", "cand@example.org", primary_lodge="L1")

        result = await service.transfer_role("la", "cand", "L1")

        assert result.status == TransferStatus.COMPLETED
        assert result.synthesized_records == ["members/cand"]
        profile = await store.get(LEGACY_PROFILE_COLLECTION, "cand")
        assert profile["role"] == "LODGE_ADMIN"
        assert profile["password"] == PASSWORD_HASH
        assert is_password_hash(profile["password"])

    @pytest.mark.asyncio
    async def test_system_admin_transfers_someone_elses_role(self, seed, store, service):
        await seed.hierarchy()
        await seed.both("root", "root@example.org", "SUPER_ADMIN", "L4")
        await seed.both("holder", "holder@example.org", "LODGE_ADMIN", "L2")
        await seed.both("cand", "cand@example.org", "LODGE_MEMBER", "L2")

        result = await service.transfer_role("root", "cand", "L2", tier="LODGE_ADMIN")

        assert result.status == TransferStatus.COMPLETED
        assert result.previous_admin.identity_id == "holder"
        assert await roles_of(store, "holder") == {"users": "MEMBER", "members": "MEMBER"}
        assert (await store.get("users", "root"))["role"] == "SUPER_ADMIN"

    @pytest.mark.asyncio
    async def test_holder_found_through_administered_lodges(self, seed, store, service):
        await seed.hierarchy()
        await seed.both("root", "root@example.org", "SYSTEM_ADMIN", "L4")
        await seed.both("holder", "holder@example.org", "LODGE_ADMIN", "L1", administeredLodges=["L2"])
        await seed.both("cand", "cand@example.org", "LODGE_MEMBER", "L2")

        result = await service.transfer_role("root", "cand", "L2", tier=Role.LODGE_ADMIN)

        assert result.status == TransferStatus.COMPLETED
        assert result.previous_admin.identity_id == "holder"
        assert result.warnings == []
        assert await roles_of(store, "holder") == {"users": "MEMBER", "members": "MEMBER"}
        assert (await store.get("users", "holder"))["administeredLodges"] == []

    @pytest.mark.asyncio
    async def test_holder_found_through_current_grant(self, seed, store, service):
        await seed.hierarchy()
        await seed.both("root", "root@example.org", "SYSTEM_ADMIN", "L4")
        await seed.both("holder", "holder@example.org", "LODGE_ADMIN", "L1")
        await seed.grant("holder", "L2")
        await seed.both("cand", "cand@example.org", "LODGE_MEMBER", "L2")

        result = await service.transfer_role("root", "cand", "L2", tier=Role.LODGE_ADMIN)

        assert result.previous_admin.identity_id == "holder"
        assert await roles_of(store, "holder") == {"users": "MEMBER", "members": "MEMBER"}

    @pytest.mark.asyncio
    async def test_expired_grant_is_not_a_holder(self, seed, service):
        await seed.hierarchy()
        await seed.both("root", "root@example.org", "SYSTEM_ADMIN", "L4")
        await seed.both("holder", "holder@example.org", "LODGE_ADMIN", "L1")
        await seed.grant("holder", "L2", endDate="2020-01-01T00:00:00+00:00")
        await seed.both("cand", "cand@example.org", "LODGE_MEMBER", "L2")

        result = await service.transfer_role("root", "cand", "L2", tier=Role.LODGE_ADMIN)

        assert result.previous_admin is None
        assert result.warnings == ["No current LODGE_ADMIN found for lodge L2"]

    @pytest.mark.asyncio
    async def test_vacant_scope_has_no_previous_admin(self, seed, service):
        await seed.hierarchy()
        await seed.both("root", "root@example.org", "SYSTEM_ADMIN", "L4")
        await seed.both("cand", "cand@example.org", "LODGE_MEMBER", "L3")

        result = await service.transfer_role("root", "cand", "L3", tier=Role.LODGE_ADMIN)

        assert result.status == TransferStatus.COMPLETED
        assert result.previous_admin is None
        assert result.warnings == ["No current LODGE_ADMIN found for lodge L3"]


class TestValidation:
    """Every precondition failure aborts before any write."""

    @pytest.mark.asyncio
    async def test_candidate_already_holds_tier(self, seed, store, service, lodge_setup):
        await store.update_one(LEGACY_PROFILE_COLLECTION, "cand", {"role": "LODGE_ADMIN"})
        with pytest.raises(ConflictError):
            await service.transfer_role("la", "cand", "L1")
        assert (await store.get("users", "cand"))["role"] == "LODGE_MEMBER"

    @pytest.mark.asyncio
    async def test_self_transfer(self, service, lodge_setup):
        with pytest.raises(ValidationError):
            await service.transfer_role("la", "la", "L1")

    @pytest.mark.asyncio
    async def test_member_cannot_transfer(self, seed, service, lodge_setup):
        await seed.both("plain", "plain@example.org", "LODGE_MEMBER", "L1")
        with pytest.raises(ValidationError):
            await service.transfer_role("plain", "cand", "L1")
        with pytest.raises(AuthorizationError):
            await service.transfer_role("plain", "cand", "L1", tier=Role.LODGE_ADMIN)

    @pytest.mark.asyncio
    async def test_lodge_admin_cannot_transfer_district_tier(self, service, lodge_setup):
        with pytest.raises(AuthorizationError):
            await service.transfer_role("la", "cand", "L1", tier=Role.DISTRICT_ADMIN)

    @pytest.mark.asyncio
    async def test_unscoped_tier_rejected(self, seed, service, lodge_setup):
        await seed.both("root", "root@example.org", "SYSTEM_ADMIN", "L1")
        with pytest.raises(ValidationError):
            await service.transfer_role("root", "cand", "L1")
        with pytest.raises(ValidationError):
            await service.transfer_role("root", "cand", "L1", tier="WIZARD")

    @pytest.mark.asyncio
    async def test_lodge_admin_outside_own_lodge(self, seed, service, lodge_setup):
        await seed.both("other", "other@example.org", "LODGE_MEMBER", "L2")
        with pytest.raises(AuthorizationError):
            await service.transfer_role("la", "other", "L2")

    @pytest.mark.asyncio
    async def test_district_admin_other_anchor(self, service, district_setup):
        with pytest.raises(ValidationError):
            await service.transfer_role("da", "cand", "L2")

    @pytest.mark.asyncio
    async def test_unknown_scope_and_candidate(self, service, lodge_setup):
        with pytest.raises(ScopeNotFoundError):
            await service.transfer_role("la", "cand", "NOPE")
        with pytest.raises(NotFoundError):
            await service.transfer_role("la", "ghost", "L1")
        with pytest.raises(NotFoundError):
            await service.transfer_role("ghost", "cand", "L1")


class TestReadBack:
    """Write failures are reported, never normalized."""

    @pytest.mark.asyncio
    async def test_partial_transfer(self, store, service, lodge_setup):
        apply = store.bulk_update

        async def first_write_only(writes):
            outcomes = await apply(writes[:1])
            return outcomes + [WriteOutcome(write=w, ok=False, error="disk full") for w in writes[1:]]

        with patch.object(store, "bulk_update", side_effect=first_write_only):
            result = await service.transfer_role("la", "cand", "L1")

        assert result.status == TransferStatus.PARTIAL
        assert result.message == "Partial transfer, verify manually"
        assert len(result.write_failures) == 3
        assert result.previous_admin.observed_roles() == {"users": "MEMBER", "members": "LODGE_ADMIN"}
        assert result.new_admin.observed_roles() == {"users": "LODGE_MEMBER", "members": "LODGE_MEMBER"}

        with pytest.raises(ConsistencyError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.to_dict()["result"]["status"] == "partial"

        entry = audit.get_audit_logs(action="role.transfer_partial")[0]
        assert not entry.success

    @pytest.mark.asyncio
    async def test_nothing_applied(self, store, service, lodge_setup):
        async def all_fail(writes):
            return [WriteOutcome(write=w, ok=False, error="read-only") for w in writes]

        with patch.object(store, "bulk_update", side_effect=all_fail):
            result = await service.transfer_role("la", "cand", "L1")

        assert result.status == TransferStatus.NOT_APPLIED
        assert await roles_of(store, "la") == {"users": "LODGE_ADMIN", "members": "LODGE_ADMIN"}

    @pytest.mark.asyncio
    async def test_failed_membership_repair_aborts(self, store, service, district_setup):
        async def all_fail(writes):
            return [WriteOutcome(write=w, ok=False, error="read-only") for w in writes]

        with patch.object(store, "bulk_update", side_effect=all_fail):
            with pytest.raises(ConsistencyError):
                await service.transfer_role("da", "cand", "L1")
