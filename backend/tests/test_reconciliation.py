"""
Unit Tests for Identity Reconciliation

Tests the legacy -> canonical merge:
- Account hash wins over a profile password
- Role is the higher of the two records
- Lodge references are unioned
- Duplicate emails are skipped, first seen wins
- Profile-only identities get a hashed credential
- Repeated runs produce the same canonical store

Run with: pytest backend/tests/test_reconciliation.py -v
"""

import pytest

from identity.errors import MaintenanceLockError, ReconciliationError
from identity.models import LegacyMemberProfileRecord, Identity
from identity.roles import Role
from identity.store import CANONICAL_COLLECTION
from reconciliation.merge_rules import merge_profile, resolve_profile_credential
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.snapshot_service import MAINTENANCE_LOCK
from services import audit
from services.passwords import is_password_hash, verify_password

from conftest import PASSWORD, PASSWORD_HASH


@pytest.fixture
def service(store):
    return ReconciliationService(store)


async def canonical_by_email(store, email):
    return await store.find_by_email(CANONICAL_COLLECTION, email)


class TestMergeRules:
    """Profile folded into an account draft."""

    def test_non_empty_profile_values_override(self):
        draft = Identity(email="a@example.org", name="Old Name", phone="111", occupation="Mason")
        profile = LegacyMemberProfileRecord(
            id="m1", email="a@example.org", first_name="New", last_name="Name", phone="", occupation="Architect"
        )
        outcome = merge_profile(draft, profile)

        assert draft.phone == "111"
        assert draft.occupation == "Architect"
        assert draft.name == "New Name"
        assert "phone" not in outcome.overridden_fields

    def test_role_never_lowered(self):
        draft = Identity(email="a@example.org", name="A", role=Role.DISTRICT_ADMIN)
        outcome = merge_profile(draft, LegacyMemberProfileRecord(id="m1", email="a@example.org", role="LODGE_ADMIN"))
        assert draft.role == Role.DISTRICT_ADMIN
        assert not outcome.role_upgraded

    def test_profile_primary_lodge_wins_and_lodges_union(self):
        draft = Identity(email="a@example.org", name="A", primary_lodge="L1", lodges=["L2"])
        profile = LegacyMemberProfileRecord.from_document({
            "id": "m1",
            "email": "a@example.org",
            "primaryLodge": "L3",
            "lodges": ["L2", "L4"],
            "lodgeMemberships": [{"lodge": "L5"}],
        })
        outcome = merge_profile(draft, profile)

        assert draft.primary_lodge == "L3"
        assert draft.lodges == ["L1", "L2", "L3", "L4", "L5"]
        assert outcome.lodges_added == ["L3", "L4", "L5"]

    def test_existing_hash_is_kept(self):
        draft = Identity(email="a@example.org", name="A", password_hash=PASSWORD_HASH)
        outcome = merge_profile(draft, LegacyMemberProfileRecord(id="m1", email="a@example.org", password="plain"))
        assert draft.password_hash == PASSWORD_HASH
        assert not outcome.credential_from_profile

    def test_credential_resolution(self):
        assert resolve_profile_credential(None) is None
        assert resolve_profile_credential(PASSWORD_HASH) == PASSWORD_HASH
        assert resolve_profile_credential(PASSWORD, previous_hash=PASSWORD_HASH) == PASSWORD_HASH

        fresh = resolve_profile_credential("brand-new-password", previous_hash=PASSWORD_HASH)
        assert fresh != PASSWORD_HASH
        assert verify_password("brand-new-password", fresh)


class TestReconciliationRun:
    """End-to-end runs against the file store."""

    @pytest.mark.asyncio
    async def test_account_and_profile_merge(self, seed, store, service):
        await seed.account("u1", "a@x.com", role="LODGE_MEMBER", primary_lodge="L1", password_hash="H1")
        await seed.profile("m1", "A@X.com", role="LODGE_ADMIN", primary_lodge="L2", lodges=["L3"], password="plain")

        report = await service.run()

        assert report.accounts_read == 1
        assert report.profiles_read == 1
        assert report.profiles_merged == 1
        assert report.verified

        document = await canonical_by_email(store, "a@x.com")
        assert document["id"] == "u1"
        assert document["email"] == "a@x.com"
        assert document["role"] == "LODGE_ADMIN"
        assert document["passwordHash"] == "H1"
        assert document["primaryLodge"] == "L2"
        assert document["lodges"] == ["L1", "L2", "L3"]

    @pytest.mark.asyncio
    async def test_duplicate_profiles_first_wins(self, seed, store, service):
        await seed.profile("m1", "dup@x.com", role="LODGE_MEMBER", occupation="First")
        await seed.profile("m2", "DUP@x.com", role="SYSTEM_ADMIN", occupation="Second")

        report = await service.run()

        assert report.distinct_emails == 1
        assert report.identities_created == 1
        assert report.skipped_duplicates == [{"collection": "members", "id": "m2", "email": "dup@x.com"}]

        document = await canonical_by_email(store, "dup@x.com")
        assert document["id"] == "m1"
        assert document["occupation"] == "First"
        assert document["role"] == "MEMBER"

    @pytest.mark.asyncio
    async def test_duplicate_accounts_first_wins(self, seed, store, service):
        await seed.account("u1", "dup@x.com", role="LODGE_ADMIN", name="First Account")
        await seed.account("u2", "dup@x.com", role="SYSTEM_ADMIN", name="Second Account")

        report = await service.run()

        assert len(report.skipped_duplicates) == 1
        document = await canonical_by_email(store, "dup@x.com")
        assert document["name"] == "First Account"
        assert document["role"] == "LODGE_ADMIN"

    @pytest.mark.asyncio
    async def test_profile_only_plaintext_is_hashed(self, seed, store, service):
        await seed.profile("m1", "solo@x.com", password="solo-password")

        report = await service.run()

        assert report.profile_only_identities == 1
        document = await canonical_by_email(store, "solo@x.com")
        assert is_password_hash(document["passwordHash"])
        assert verify_password("solo-password", document["passwordHash"])
        assert document["name"] == "Profile m1"

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, seed, store, service):
        await seed.account("u1", "a@x.com", role="LODGE_MEMBER", primary_lodge="L1")
        await seed.profile("m1", "a@x.com", role="LODGE_ADMIN", primary_lodge="L2")
        await seed.profile("m2", "solo@x.com", password="solo-password")

        await service.run()
        first = sorted(await store.find(CANONICAL_COLLECTION), key=lambda d: d["email"])
        await service.run()
        second = sorted(await store.find(CANONICAL_COLLECTION), key=lambda d: d["email"])

        assert first == second

    @pytest.mark.asyncio
    async def test_reused_legacy_id_gets_new_id(self, seed, store, service):
        await seed.account("shared", "one@x.com")
        await seed.profile("shared", "two@x.com")

        report = await service.run()

        ids = {d["email"]: d["id"] for d in await store.find(CANONICAL_COLLECTION)}
        assert ids["one@x.com"] == "shared"
        assert ids["two@x.com"] != "shared"
        assert any("reused" in w for w in report.warnings)

    @pytest.mark.asyncio
    async def test_rerun_without_legacy_timestamps_is_idempotent(self, store, service):
        # No created/memberSince/updatedAt anywhere, plus a reused legacy id
        await store.insert_one("users", {"id": "u1", "email": "bare@x.com", "passwordHash": PASSWORD_HASH, "name": "Bare"})
        await store.insert_one("members", {"id": "u1", "email": "other@x.com", "password": PASSWORD_HASH, "firstName": "Other"})
        await store.insert_one("members", {"id": "m2", "email": "bare@x.com", "firstName": "Bare", "lastName": "Bones"})

        first_report = await service.run()
        first = sorted(await store.find(CANONICAL_COLLECTION), key=lambda d: d["email"])
        await service.run()
        second = sorted(await store.find(CANONICAL_COLLECTION), key=lambda d: d["email"])

        assert any("reused" in w for w in first_report.warnings)
        assert first == second
        assert first[0]["memberSince"] == first[0]["created"] == first[0]["updatedAt"]

    @pytest.mark.asyncio
    async def test_malformed_records_are_counted(self, seed, store, service):
        await seed.account("u1", "good@x.com")
        await store.insert_one("users", {"id": "u2", "email": ""})

        report = await service.run()

        assert report.malformed_records == 1
        assert report.identities_created == 1

    @pytest.mark.asyncio
    async def test_indexes_created(self, seed, store, service):
        await seed.account("u1", "a@x.com")
        report = await service.run()
        assert "ix_identities__email" in report.indexes
        indexes = {i["name"]: i for i in await store.list_indexes(CANONICAL_COLLECTION)}
        assert indexes["ix_identities__email"]["unique"]
        assert indexes["ix_identities__lodges"]["multikey"]

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, seed, store, service):
        await seed.account("u1", "a@x.com")

        report = await service.run(dry_run=True, take_snapshot=True)

        assert report.dry_run
        assert report.identities_created == 1
        assert report.snapshot is None
        assert await store.count(CANONICAL_COLLECTION) == 0

    @pytest.mark.asyncio
    async def test_snapshot_taken_before_write(self, seed, store, service):
        await seed.account("u1", "a@x.com")
        await seed.profile("m1", "b@x.com")

        report = await service.run(take_snapshot=True)

        assert report.snapshot
        assert await store.count(f"users_backup_{report.snapshot}") == 1
        assert await store.count(f"members_backup_{report.snapshot}") == 1

    @pytest.mark.asyncio
    async def test_no_legacy_records_is_fatal(self, service):
        with pytest.raises(ReconciliationError):
            await service.run()

    @pytest.mark.asyncio
    async def test_only_malformed_records_is_fatal(self, store, service):
        await store.insert_one("users", {"id": "u1", "email": None})
        with pytest.raises(ReconciliationError):
            await service.run()
        assert await store.count(CANONICAL_COLLECTION) == 0

    @pytest.mark.asyncio
    async def test_locked_run_refused(self, seed, store, service):
        await seed.account("u1", "a@x.com")
        async with store.maintenance_lock(MAINTENANCE_LOCK):
            with pytest.raises(MaintenanceLockError):
                await service.run()

    @pytest.mark.asyncio
    async def test_run_is_audited(self, seed, service):
        await seed.account("u1", "a@x.com")
        report = await service.run(performed_by="admin-1")

        entries = audit.get_audit_logs(action="maintenance.reconciliation")
        assert len(entries) == 1
        assert entries[0].resource_id == report.run_id
        assert entries[0].user_id == "admin-1"


class TestVerifyCanonicalStore:

    @pytest.mark.asyncio
    async def test_healthy_store(self, seed, service):
        await seed.account("u1", "root@x.com", role="SUPER_ADMIN")
        await seed.account("u2", "m@x.com")
        await service.run()

        result = await service.verify_canonical_store()

        assert result["ok"]
        assert result["total"] == 2
        assert result["system_admin_count"] == 1
        assert result["role_distribution"]["MEMBER"] == 1
        assert result["warnings"] == []

    @pytest.mark.asyncio
    async def test_problems_reported(self, seed, service):
        await seed.canonical({"id": "c1", "email": "a@x.com", "name": "", "role": "MEMBER"})
        await seed.canonical({"id": "c2", "email": "A@x.com", "name": "B", "role": "ALIEN", "passwordHash": "h"})

        result = await service.verify_canonical_store()

        assert not result["ok"]
        assert result["duplicate_emails"] == ["a@x.com"]
        assert result["missing"] == {"email": 0, "passwordHash": 1, "name": 1, "role": 1}
        assert "No SYSTEM_ADMIN identity exists" in result["warnings"]

    @pytest.mark.asyncio
    async def test_empty_store(self, service):
        result = await service.verify_canonical_store()
        assert not result["ok"]
        assert "Canonical identity store is empty" in result["warnings"]
