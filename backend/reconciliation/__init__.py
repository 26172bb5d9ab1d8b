"""
Identity Reconciliation Module

Merges the legacy account and member-profile stores into the canonical
identity store:
- Email-keyed merge with documented precedence rules
- Snapshots of both legacy stores before a run
- Rollback to the newest snapshot set
- Canonical store verification
- Batch CLI (``python -m reconciliation.cli``)
"""

from reconciliation.merge_rules import MergeOutcome, merge_profile, draft_from_profile
from reconciliation.services.snapshot_service import (
    MAINTENANCE_LOCK,
    RestoredCounts,
    SnapshotService,
    SnapshotSet,
)
from reconciliation.services.reconciliation_service import ReconciliationReport, ReconciliationService

__all__ = [
    # Merge rules
    'MergeOutcome',
    'merge_profile',
    'draft_from_profile',
    # Snapshots
    'MAINTENANCE_LOCK',
    'RestoredCounts',
    'SnapshotService',
    'SnapshotSet',
    # Service
    'ReconciliationReport',
    'ReconciliationService',
]
