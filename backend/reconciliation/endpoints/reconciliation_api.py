"""
Reconciliation API Endpoints

REST API for identity reconciliation and rollback:
- POST /api/reconciliation/run - Rebuild the canonical identity store
- POST /api/reconciliation/snapshots - Snapshot both legacy stores
- GET /api/reconciliation/snapshots - List snapshot sets
- POST /api/reconciliation/rollback - Restore the newest snapshot set
- GET /api/reconciliation/verify - Audit the canonical store
- GET /api/reconciliation/status - Module status

Everything except status requires SYSTEM_ADMIN. Run and rollback share one maintenance
lock; a concurrent call gets 423.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from identity.errors import ValidationError
from middleware.auth import require_system_admin
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.snapshot_service import SnapshotService
from services.auth import AuthenticatedPrincipal
from services.storage import DocumentStore
from services.store_provider import get_document_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request Models ====================

class RunReconciliationRequest(BaseModel):
    """Request to run reconciliation."""
    dry_run: bool = Field(default=False, description="Build and verify without writing")
    take_snapshot: bool = Field(default=True, description="Snapshot the legacy stores first")


class RollbackRequest(BaseModel):
    """Rollback is destructive; the caller must confirm it."""
    confirm: bool = Field(..., description="Must be true; older snapshot sets are deleted")


# ==================== Endpoints ====================

@router.get("/status")
async def get_status(store: DocumentStore = Depends(get_document_store)):
    """Module status. No authentication required."""
    return {
        "status": "ok",
        "module": "identity_reconciliation",
        "backend": store.backend_name,
    }


@router.post("/run")
async def run_reconciliation(
    request: RunReconciliationRequest,
    principal: AuthenticatedPrincipal = Depends(require_system_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """
    Merge the legacy account and profile stores into the canonical store.

    The canonical store is replaced as a whole. Verification mismatches are
    reported in ``warnings`` and never fail the run.
    """
    report = await ReconciliationService(store).run(
        dry_run=request.dry_run,
        take_snapshot=request.take_snapshot,
        performed_by=principal.user_id,
    )
    return report.to_dict()


@router.post("/snapshots")
async def create_snapshot(
    principal: AuthenticatedPrincipal = Depends(require_system_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """Copy both legacy stores under a fresh timestamp."""
    snapshot = await SnapshotService(store).create_snapshot(performed_by=principal.user_id)
    return snapshot.to_dict()


@router.get("/snapshots")
async def list_snapshots(
    principal: AuthenticatedPrincipal = Depends(require_system_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """Snapshot sets, oldest first."""
    snapshots = await SnapshotService(store).list_snapshots()
    return {"snapshots": [s.to_dict() for s in snapshots], "count": len(snapshots)}


@router.post("/rollback")
async def rollback(
    request: RollbackRequest,
    principal: AuthenticatedPrincipal = Depends(require_system_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """
    Restore the legacy stores from the newest snapshot set.

    WARNING: drops the canonical store and permanently deletes every older
    snapshot set once the restore verifies.
    """
    if not request.confirm:
        raise ValidationError("Rollback must be confirmed with confirm=true")
    restored = await SnapshotService(store).rollback(performed_by=principal.user_id)
    return restored.to_dict()


@router.get("/verify")
async def verify_canonical_store(
    principal: AuthenticatedPrincipal = Depends(require_system_admin),
    store: DocumentStore = Depends(get_document_store),
):
    """Totals, role distribution, duplicates and missing fields in the canonical store."""
    return await ReconciliationService(store).verify_canonical_store()
