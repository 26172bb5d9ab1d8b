"""
Identity Reconciliation Service

Merges the legacy account store and the legacy member-profile store into the
canonical identity store:

1. Drafts keyed by lowercased email
2. Accounts first: first-seen wins, later duplicates are skipped
3. Profiles merged into matching drafts (see ``reconciliation.merge_rules``),
   or start a new draft
4. Canonical store replaced in one step (full rebuild)
5. Indexes rebuilt
6. Distinct emails compared to identities written; a mismatch is reported,
   never fatal

Repeated runs over unchanged input write identical documents: timestamps no
legacy record supplies keep the previous run's values, and a replacement id
for a reused legacy id is derived from the email.

Runs under the maintenance lock, so it cannot overlap a rollback.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from identity.errors import ReconciliationError
from identity.models import Identity, LegacyAccountRecord, LegacyMemberProfileRecord
from identity.roles import ROLE_PRECEDENCE, Role, parse_role
from identity.store import (
    CANONICAL_COLLECTION,
    LEGACY_ACCOUNT_COLLECTION,
    LEGACY_PROFILE_COLLECTION,
)
from reconciliation.merge_rules import draft_from_profile, merge_profile
from reconciliation.services.snapshot_service import MAINTENANCE_LOCK, SnapshotService
from services.audit import AuditAction, ResourceType, log_action
from services.storage import DocumentStore

logger = logging.getLogger(__name__)

# (field, unique, multikey, case_insensitive)
CANONICAL_INDEXES = (
    ("email", True, False, True),
    ("role", False, False, False),
    ("primaryLodge", False, False, False),
    ("lodges", False, True, False),
    ("status", False, False, False),
)

TIMESTAMP_FIELDS = ("member_since", "created", "updated_at")


@dataclass
class ReconciliationReport:
    """Result of a reconciliation run."""
    run_id: str
    dry_run: bool
    started_at: str
    finished_at: Optional[str] = None
    accounts_read: int = 0
    profiles_read: int = 0
    malformed_records: int = 0
    skipped_duplicates: List[Dict[str, str]] = field(default_factory=list)
    profiles_merged: int = 0
    profile_only_identities: int = 0
    distinct_emails: int = 0
    identities_created: int = 0
    indexes: List[str] = field(default_factory=list)
    verified: bool = False
    snapshot: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReconciliationService:
    """
    Rebuilds the canonical identity store from the legacy stores.

    Usage:
        report = await ReconciliationService(store).run(take_snapshot=True)
    """

    def __init__(self, store: DocumentStore):
        self.store = store
        self.snapshots = SnapshotService(store)

    async def run(
        self,
        dry_run: bool = False,
        take_snapshot: bool = False,
        performed_by: Optional[str] = None,
    ) -> ReconciliationReport:
        """
        Run reconciliation.

        Args:
            dry_run: Build and verify drafts without writing anything
            take_snapshot: Snapshot both legacy stores before writing
            performed_by: Identity id for the audit trail

        Returns:
            ReconciliationReport

        Raises:
            ReconciliationError: no legacy records at all, or none usable
            MaintenanceLockError: another reconciliation or rollback is running
        """
        async with self.store.maintenance_lock(MAINTENANCE_LOCK):
            report = await self._run_locked(dry_run, take_snapshot)

        log_action(
            AuditAction.RECONCILIATION_RUN,
            ResourceType.SYSTEM,
            user_id=performed_by,
            resource_id=report.run_id,
            details={
                "dry_run": report.dry_run,
                "distinct_emails": report.distinct_emails,
                "identities_created": report.identities_created,
                "malformed_records": report.malformed_records,
                "skipped_duplicates": len(report.skipped_duplicates),
                "verified": report.verified,
            },
        )
        return report

    async def _run_locked(self, dry_run: bool, take_snapshot: bool) -> ReconciliationReport:
        report = ReconciliationReport(
            run_id=str(uuid.uuid4()),
            dry_run=dry_run,
            started_at=datetime.now(timezone.utc).isoformat(),
        )

        account_docs = await self.store.find(LEGACY_ACCOUNT_COLLECTION)
        profile_docs = await self.store.find(LEGACY_PROFILE_COLLECTION)
        report.accounts_read = len(account_docs)
        report.profiles_read = len(profile_docs)
        logger.info(f"Reconciliation {report.run_id}: {len(account_docs)} accounts, {len(profile_docs)} profiles")

        if not account_docs and not profile_docs:
            raise ReconciliationError("No legacy account or profile records to reconcile")

        previous = await self._load_previous()
        previous_hashes = {
            key: identity.password_hash for key, identity in previous.items() if identity.password_hash
        }

        # Timestamps no legacy record supplies; replaced by the previous run's values below
        fallback = datetime.now(timezone.utc)
        drafts = self._build_drafts(account_docs, profile_docs, previous_hashes, report, fallback)
        if not drafts:
            raise ReconciliationError(
                "No usable legacy records; canonical store left unchanged",
                details={"malformed_records": report.malformed_records},
            )
        for key, draft in drafts.items():
            if key in previous:
                self._keep_previous_timestamps(draft, previous[key], fallback)

        documents = [identity.to_document() for identity in drafts.values()]
        report.distinct_emails = len(drafts)

        if dry_run:
            report.identities_created = len(documents)
        else:
            if take_snapshot:
                snapshot = await self.snapshots.create_snapshot()
                report.snapshot = snapshot.timestamp

            await self.store.replace_collection(CANONICAL_COLLECTION, documents)
            for field_name, unique, multikey, case_insensitive in CANONICAL_INDEXES:
                spec = await self.store.create_index(
                    CANONICAL_COLLECTION,
                    field_name,
                    unique=unique,
                    multikey=multikey,
                    case_insensitive=case_insensitive,
                )
                report.indexes.append(spec.name)
            report.identities_created = await self.store.count(CANONICAL_COLLECTION)

        report.verified = report.identities_created == report.distinct_emails
        if not report.verified:
            message = (
                f"Verification mismatch: {report.distinct_emails} distinct emails, "
                f"{report.identities_created} identities written"
            )
            logger.warning(message)
            report.warnings.append(message)

        report.finished_at = datetime.now(timezone.utc).isoformat()
        logger.info(
            f"Reconciliation {report.run_id} {'(dry run) ' if dry_run else ''}finished: "
            f"{report.identities_created} identities, {report.profiles_merged} merged, "
            f"{len(report.skipped_duplicates)} duplicates skipped, "
            f"{report.malformed_records} malformed"
        )
        return report

    def _build_drafts(
        self,
        account_docs: List[Dict[str, Any]],
        profile_docs: List[Dict[str, Any]],
        previous_hashes: Dict[str, str],
        report: ReconciliationReport,
        fallback: Optional[datetime] = None,
    ) -> Dict[str, Identity]:
        drafts: Dict[str, Identity] = {}
        used_ids: Set[str] = set()
        merged_profiles: Set[str] = set()

        for doc in account_docs:
            try:
                record = LegacyAccountRecord.from_document(doc)
                key = record.email.strip().lower()
                if key in drafts:
                    self._skip_duplicate(report, LEGACY_ACCOUNT_COLLECTION, doc, key)
                    continue
                draft = record.to_identity(fallback=fallback)
            except PydanticValidationError as e:
                self._skip_malformed(report, LEGACY_ACCOUNT_COLLECTION, doc, e)
                continue
            drafts[key] = self._claim_id(draft, used_ids, report)

        for doc in profile_docs:
            try:
                record = LegacyMemberProfileRecord.from_document(doc)
                key = record.email.strip().lower()
                if key in merged_profiles:
                    self._skip_duplicate(report, LEGACY_PROFILE_COLLECTION, doc, key)
                    continue
                if key in drafts:
                    merge_profile(drafts[key], record, previous_hashes.get(key))
                    report.profiles_merged += 1
                else:
                    draft = draft_from_profile(record, previous_hashes.get(key), fallback=fallback)
                    drafts[key] = self._claim_id(draft, used_ids, report)
                    report.profile_only_identities += 1
            except PydanticValidationError as e:
                self._skip_malformed(report, LEGACY_PROFILE_COLLECTION, doc, e)
                continue
            merged_profiles.add(key)

        return drafts

    async def _load_previous(self) -> Dict[str, Identity]:
        """Current canonical identities keyed by lowercased email."""
        previous: Dict[str, Identity] = {}
        for doc in await self.store.find(CANONICAL_COLLECTION):
            try:
                identity = Identity.from_document(doc)
            except PydanticValidationError:
                logger.warning(f"Ignoring malformed canonical record {doc.get('id')}")
                continue
            previous[identity.email.lower()] = identity
        return previous

    @staticmethod
    def _keep_previous_timestamps(draft: Identity, previous: Identity, fallback: datetime):
        for name in TIMESTAMP_FIELDS:
            if getattr(draft, name) == fallback:
                setattr(draft, name, getattr(previous, name))

    @staticmethod
    def _claim_id(draft: Identity, used_ids: Set[str], report: ReconciliationReport) -> Identity:
        # Canonical id is the first legacy id seen, unless another email already took it
        if draft.id in used_ids:
            new_id = str(uuid.uuid5(uuid.NAMESPACE_URL, f"mailto:{draft.email.lower()}"))
            message = f"Legacy id {draft.id} reused by {draft.email}; assigned {new_id}"
            logger.warning(message)
            report.warnings.append(message)
            draft.id = new_id
        used_ids.add(draft.id)
        return draft

    @staticmethod
    def _skip_duplicate(report: ReconciliationReport, collection: str, doc: Dict[str, Any], email: str):
        logger.warning(f"Duplicate email {email} in {collection} (record {doc.get('id')}); skipped")
        report.skipped_duplicates.append(
            {"collection": collection, "id": str(doc.get("id")), "email": email}
        )

    @staticmethod
    def _skip_malformed(
        report: ReconciliationReport, collection: str, doc: Dict[str, Any], error: PydanticValidationError
    ):
        logger.warning(
            f"Malformed record {doc.get('id')} in {collection} skipped: "
            f"{error.error_count()} validation errors"
        )
        report.malformed_records += 1

    # ==================== VERIFICATION ====================

    async def verify_canonical_store(self) -> Dict[str, Any]:
        """
        Audit the canonical store.

        Returns:
            totals, records missing email/hash/name/role, role distribution,
            duplicate emails, SYSTEM_ADMIN count and warnings
        """
        documents = await self.store.find(CANONICAL_COLLECTION)
        role_distribution = {role.value: 0 for role in ROLE_PRECEDENCE}
        missing = {"email": [], "passwordHash": [], "name": [], "role": []}
        seen_emails: Dict[str, int] = {}

        for doc in documents:
            doc_id = str(doc.get("id"))
            email = str(doc.get("email") or "").strip().lower()
            if not email:
                missing["email"].append(doc_id)
            else:
                seen_emails[email] = seen_emails.get(email, 0) + 1
            if not doc.get("passwordHash"):
                missing["passwordHash"].append(doc_id)
            if not doc.get("name"):
                missing["name"].append(doc_id)
            try:
                role_distribution[parse_role(doc.get("role")).value] += 1
            except ValueError:
                missing["role"].append(doc_id)

        duplicates = sorted(email for email, n in seen_emails.items() if n > 1)
        system_admins = role_distribution[Role.SYSTEM_ADMIN.value]

        warnings = []
        if not documents:
            warnings.append("Canonical identity store is empty")
        if system_admins == 0:
            warnings.append("No SYSTEM_ADMIN identity exists")
        if duplicates:
            warnings.append(f"{len(duplicates)} duplicate email(s) in canonical store")
        for key, ids in missing.items():
            if ids:
                warnings.append(f"{len(ids)} identities missing {key}")
        for warning in warnings:
            logger.warning(f"Canonical store check: {warning}")

        return {
            "total": len(documents),
            "role_distribution": role_distribution,
            "system_admin_count": system_admins,
            "duplicate_emails": duplicates,
            "missing": {key: len(ids) for key, ids in missing.items()},
            "missing_ids": missing,
            "indexes": [i["name"] for i in await self.store.list_indexes(CANONICAL_COLLECTION)],
            "ok": not duplicates and not missing["email"] and not missing["role"] and bool(documents),
            "warnings": warnings,
        }
