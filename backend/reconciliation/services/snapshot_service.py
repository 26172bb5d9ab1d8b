"""
Snapshot & Rollback Service

Snapshots copy both legacy stores into timestamped collections:

    users_backup_<timestamp>
    members_backup_<timestamp>

Rollback restores the legacy stores from the newest complete snapshot set,
drops the canonical store, verifies the restored counts, and then deletes
every older snapshot set.

WARNING: the prune step is irreversible. After a rollback only the snapshot
that was restored remains; earlier restore points are gone.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from identity.errors import ReconciliationError, RollbackError, SnapshotNotFoundError
from identity.store import (
    CANONICAL_COLLECTION,
    LEGACY_ACCOUNT_COLLECTION,
    LEGACY_PROFILE_COLLECTION,
)
from services.audit import AuditAction, ResourceType, log_action
from services.storage import DocumentStore

logger = logging.getLogger(__name__)

# Reconciliation and rollback are mutually exclusive
MAINTENANCE_LOCK = "identity-maintenance"

SNAPSHOT_SEPARATOR = "_backup_"
SNAPSHOT_PATTERN = re.compile(
    rf"^({LEGACY_ACCOUNT_COLLECTION}|{LEGACY_PROFILE_COLLECTION}){SNAPSHOT_SEPARATOR}(.+)$"
)


def snapshot_timestamp(now: Optional[datetime] = None) -> str:
    """UTC timestamp usable in a collection name; sorts chronologically."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def snapshot_collection(source: str, timestamp: str) -> str:
    return f"{source}{SNAPSHOT_SEPARATOR}{timestamp}"


@dataclass
class SnapshotSet:
    timestamp: str
    account_collection: Optional[str] = None
    profile_collection: Optional[str] = None
    account_count: Optional[int] = None
    profile_count: Optional[int] = None

    @property
    def collections(self) -> List[str]:
        return [c for c in (self.account_collection, self.profile_collection) if c]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RestoredCounts:
    timestamp: str
    accounts: int
    profiles: int
    canonical_dropped: bool
    pruned_snapshots: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SnapshotService:
    """Creates, lists and restores legacy-store snapshots."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def create_snapshot(self, performed_by: Optional[str] = None) -> SnapshotSet:
        """
        Copy both legacy stores under a fresh timestamp.

        An empty legacy store is not copied (there is nothing to restore),
        which also makes the resulting set unusable for rollback.

        Raises:
            ReconciliationError: a copy's document count does not match its source
        """
        timestamp = snapshot_timestamp()
        snapshot = SnapshotSet(timestamp=timestamp)

        for source in (LEGACY_ACCOUNT_COLLECTION, LEGACY_PROFILE_COLLECTION):
            documents = await self.store.find(source)
            if not documents:
                logger.warning(f"Snapshot {timestamp}: {source} is empty, nothing copied")
                continue

            target = snapshot_collection(source, timestamp)
            await self.store.insert_many(target, documents)
            copied = await self.store.count(target)
            if copied != len(documents):
                raise ReconciliationError(
                    f"Snapshot of {source} copied {copied} of {len(documents)} documents",
                    details={"collection": target},
                )

            if source == LEGACY_ACCOUNT_COLLECTION:
                snapshot.account_collection, snapshot.account_count = target, copied
            else:
                snapshot.profile_collection, snapshot.profile_count = target, copied
            logger.info(f"Snapshot {target}: {copied} documents")

        log_action(
            AuditAction.SNAPSHOT_CREATED,
            ResourceType.SYSTEM,
            user_id=performed_by,
            resource_id=timestamp,
            details=snapshot.to_dict(),
        )
        return snapshot

    async def list_snapshots(self) -> List[SnapshotSet]:
        """Snapshot sets, oldest first."""
        sets: Dict[str, SnapshotSet] = {}
        for name in await self.store.list_collections():
            match = SNAPSHOT_PATTERN.match(name)
            if not match:
                continue
            source, timestamp = match.groups()
            snapshot = sets.setdefault(timestamp, SnapshotSet(timestamp=timestamp))
            if source == LEGACY_ACCOUNT_COLLECTION:
                snapshot.account_collection = name
            else:
                snapshot.profile_collection = name
        return [sets[ts] for ts in sorted(sets)]

    async def rollback(self, performed_by: Optional[str] = None) -> RestoredCounts:
        """
        Restore the legacy stores from the newest snapshot set.

        Raises:
            SnapshotNotFoundError: no snapshot exists
            RollbackError: the newest set is incomplete or empty (nothing is
                written), or the restored counts do not verify (nothing is pruned)
            MaintenanceLockError: a reconciliation or rollback is running
        """
        async with self.store.maintenance_lock(MAINTENANCE_LOCK):
            return await self._rollback_locked(performed_by)

    async def _rollback_locked(self, performed_by: Optional[str]) -> RestoredCounts:
        snapshots = await self.list_snapshots()
        if not snapshots:
            raise SnapshotNotFoundError("No snapshot found")

        latest = snapshots[-1]
        accounts = await self.store.find(latest.account_collection) if latest.account_collection else []
        profiles = await self.store.find(latest.profile_collection) if latest.profile_collection else []

        if not accounts or not profiles:
            raise RollbackError(
                f"Snapshot {latest.timestamp} is incomplete "
                f"({len(accounts)} accounts, {len(profiles)} profiles); rollback aborted",
                details={"timestamp": latest.timestamp},
            )

        logger.warning(
            f"Rolling back to snapshot {latest.timestamp}; "
            f"{len(snapshots) - 1} older snapshot set(s) will be permanently deleted"
        )

        await self.store.replace_collection(LEGACY_ACCOUNT_COLLECTION, accounts)
        await self.store.replace_collection(LEGACY_PROFILE_COLLECTION, profiles)
        canonical_dropped = await self.store.drop(CANONICAL_COLLECTION)

        restored_accounts = await self.store.count(LEGACY_ACCOUNT_COLLECTION)
        restored_profiles = await self.store.count(LEGACY_PROFILE_COLLECTION)
        if restored_accounts != len(accounts) or restored_profiles != len(profiles):
            raise RollbackError(
                f"Restored counts do not match snapshot {latest.timestamp}: "
                f"accounts {restored_accounts}/{len(accounts)}, profiles {restored_profiles}/{len(profiles)}",
                details={"timestamp": latest.timestamp},
            )

        pruned: List[str] = []
        for older in snapshots[:-1]:
            for name in older.collections:
                await self.store.drop(name)
                pruned.append(name)

        result = RestoredCounts(
            timestamp=latest.timestamp,
            accounts=restored_accounts,
            profiles=restored_profiles,
            canonical_dropped=canonical_dropped,
            pruned_snapshots=pruned,
        )
        log_action(
            AuditAction.ROLLBACK,
            ResourceType.SYSTEM,
            user_id=performed_by,
            resource_id=latest.timestamp,
            details=result.to_dict(),
        )
        logger.info(
            f"Rollback to {latest.timestamp} complete: {restored_accounts} accounts, "
            f"{restored_profiles} profiles, {len(pruned)} snapshot collections pruned"
        )
        return result
