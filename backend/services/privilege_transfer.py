"""
Privilege Transfer Service

Moves a scoped admin role (LODGE_ADMIN or DISTRICT_ADMIN) from its current
holder to a candidate. Phases run in order:

    VALIDATE                 all preconditions; no writes
    RECONCILE_DUAL_PRESENCE  make sure both legacy records exist for each party
    VALIDATE_MEMBERSHIP      auto-repair a candidate missing from the scope
                             (or, for DISTRICT_ADMIN, not anchored at it)
    APPLY                    demote holder, promote candidate, every representation
    VERIFY_READ_BACK         re-read every representation and report

The outcome is ``completed``, ``partial`` or ``not_applied``. A partial
transfer is reported with the observed roles, never silently normalized;
writes are not compensated.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from identity.errors import (
    AuthorizationError,
    ConflictError,
    ConsistencyError,
    NotFoundError,
    ScopeNotFoundError,
    ValidationError,
)
from identity.models import Identity, Lodge, merge_lodge_refs
from identity.roles import Role, SCOPED_ADMIN_ROLES, coerce_role, outranks_or_equals, parse_role
from identity.store import (
    LEGACY_ACCOUNT_COLLECTION,
    LEGACY_PROFILE_COLLECTION,
    SOURCE_COLLECTIONS,
    LOOKUP_CHAIN,
    IdentityStore,
    document_to_identity,
)
from services.audit import AuditAction, ResourceType, log_action
from services.authorization import AuthorizationResolver
from services.storage import DocumentStore, DocumentWrite, DuplicateKeyError, WriteOutcome

logger = logging.getLogger(__name__)


class TransferPhase(str, Enum):
    VALIDATE = "validate"
    RECONCILE_DUAL_PRESENCE = "reconcile_dual_presence"
    VALIDATE_MEMBERSHIP = "validate_membership"
    APPLY = "apply"
    VERIFY_READ_BACK = "verify_read_back"
    DONE = "done"


class TransferStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    NOT_APPLIED = "not_applied"


STATUS_MESSAGES = {
    TransferStatus.COMPLETED: "Admin privileges transferred successfully",
    TransferStatus.PARTIAL: "Partial transfer, verify manually",
    TransferStatus.NOT_APPLIED: "Transfer was not applied; stored roles are unchanged",
}


# ==================== RESULT MODELS ====================

@dataclass
class RepresentationState:
    """One stored record of a participant, as read back after the writes."""
    collection: str
    document_id: str
    role_before: Optional[str]
    role_after: Optional[str]
    present: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "document_id": self.document_id,
            "role_before": self.role_before,
            "role_after": self.role_after,
            "present": self.present,
        }


@dataclass
class ParticipantReport:
    identity_id: str
    email: str
    name: str
    expected_role: Role
    representations: List[RepresentationState] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return all(
            r.present and coerce_role(r.role_after) == self.expected_role
            for r in self.representations
        )

    @property
    def changed(self) -> bool:
        return any(
            not r.present or coerce_role(r.role_after) != coerce_role(r.role_before)
            for r in self.representations
        )

    def observed_roles(self) -> Dict[str, Optional[str]]:
        return {r.collection: r.role_after for r in self.representations}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "email": self.email,
            "name": self.name,
            "expected_role": self.expected_role.value,
            "consistent": self.consistent,
            "observed_roles": self.observed_roles(),
            "representations": [r.to_dict() for r in self.representations],
        }


@dataclass
class TransferResult:
    status: TransferStatus
    tier: Role
    scope_id: str
    new_admin: ParticipantReport
    previous_admin: Optional[ParticipantReport] = None
    membership_repaired: bool = False
    synthesized_records: List[str] = field(default_factory=list)
    write_failures: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    phases: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return STATUS_MESSAGES[self.status]

    @property
    def succeeded(self) -> bool:
        return self.status == TransferStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "tier": self.tier.value,
            "scope_id": self.scope_id,
            "new_admin": self.new_admin.to_dict(),
            "previous_admin": self.previous_admin.to_dict() if self.previous_admin else None,
            "membership_repaired": self.membership_repaired,
            "synthesized_records": self.synthesized_records,
            "write_failures": self.write_failures,
            "warnings": self.warnings,
            "phases": self.phases,
        }

    def raise_for_status(self) -> "TransferResult":
        """Raise ``ConsistencyError`` unless every representation verified."""
        if self.status != TransferStatus.COMPLETED:
            raise ConsistencyError(self.message, result=self)
        return self


# ==================== TRANSFER STATE ====================

@dataclass
class Participant:
    identity: Identity
    expected_role: Role
    representations: Dict[str, Optional[Dict[str, Any]]] = field(default_factory=dict)

    def present(self) -> List[Tuple[str, Dict[str, Any]]]:
        return [(c, d) for c, d in self.representations.items() if d is not None]

    def lodge_refs(self) -> List[str]:
        refs: List[str] = []
        for _, doc in self.present():
            refs = merge_lodge_refs(
                refs,
                doc.get("primaryLodge"),
                doc.get("lodges") or [],
                [m.get("lodge") for m in doc.get("lodgeMemberships") or [] if isinstance(m, dict)],
            )
        return refs


@dataclass
class TransferContext:
    requester: Identity
    candidate_id: str
    scope_id: str
    tier: Optional[Role] = None
    phase: TransferPhase = TransferPhase.VALIDATE
    scope: Optional[Lodge] = None
    holder: Optional[Participant] = None
    candidate: Optional[Participant] = None
    membership_repaired: bool = False
    synthesized: List[str] = field(default_factory=list)
    outcomes: List[WriteOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    completed_phases: List[str] = field(default_factory=list)
    result: Optional[TransferResult] = None

    def participants(self) -> List[Participant]:
        return [p for p in (self.holder, self.candidate) if p is not None]


# ==================== RECORD SYNTHESIS ====================

def synthesize_account_document(identity: Identity, scope_id: str) -> Dict[str, Any]:
    """Account-shaped record built from the participant's other representation."""
    return {
        "id": identity.id,
        "email": identity.email,
        "passwordHash": identity.password_hash,
        "name": identity.name,
        "role": identity.role.value,
        "status": identity.status.value,
        "occupation": identity.occupation,
        "bio": identity.bio,
        "profileImage": identity.profile_image,
        "primaryLodge": identity.primary_lodge or scope_id,
        "lodges": identity.lodges or [scope_id],
        "administeredLodges": list(identity.administered_lodges),
        "memberSince": identity.member_since.isoformat(),
        "created": identity.created.isoformat(),
    }


def synthesize_profile_document(identity: Identity, scope_id: str) -> Dict[str, Any]:
    """Profile-shaped record built from the participant's other representation."""
    return {
        "id": identity.id,
        "email": identity.email,
        # Only ever a hash: synthesized records never carry plaintext
        "password": identity.password_hash,
        "firstName": identity.first_name,
        "lastName": identity.last_name,
        "role": identity.role.value,
        "status": identity.status.value,
        "phone": identity.phone,
        "occupation": identity.occupation,
        "bio": identity.bio,
        "profileImage": identity.profile_image,
        "primaryLodge": identity.primary_lodge or scope_id,
        "primaryLodgePosition": identity.primary_lodge_position or "MEMBER",
        "lodges": identity.lodges or [scope_id],
        "lodgeMemberships": [m.to_document() for m in identity.lodge_memberships],
        "administeredLodges": list(identity.administered_lodges),
        "memberSince": identity.member_since.isoformat(),
        "createdAt": identity.created.isoformat(),
    }


SYNTHESIZERS = {
    LEGACY_ACCOUNT_COLLECTION: synthesize_account_document,
    LEGACY_PROFILE_COLLECTION: synthesize_profile_document,
}


# ==================== SERVICE ====================

class PrivilegeTransferService:
    """
    Transfers a scoped admin role between two identities.

    Usage:
        result = await PrivilegeTransferService(store).transfer_role(
            requester_id=current.id, candidate_id=member_id, scope_id=lodge_id,
        )
        result.raise_for_status()
    """

    def __init__(self, store: DocumentStore, resolver: Optional[AuthorizationResolver] = None):
        self.store = store
        self.identities = IdentityStore(store)
        self.resolver = resolver or AuthorizationResolver(store)

    def _phases(self) -> List[Tuple[TransferPhase, Callable[[TransferContext], Awaitable[None]]]]:
        return [
            (TransferPhase.VALIDATE, self._validate),
            (TransferPhase.RECONCILE_DUAL_PRESENCE, self._reconcile_dual_presence),
            (TransferPhase.VALIDATE_MEMBERSHIP, self._validate_membership),
            (TransferPhase.APPLY, self._apply),
            (TransferPhase.VERIFY_READ_BACK, self._verify_read_back),
        ]

    async def transfer_role(
        self,
        requester_id: str,
        candidate_id: str,
        scope_id: str,
        tier: Optional[Union[Role, str]] = None,
    ) -> TransferResult:
        """
        Transfer the ``tier`` role in ``scope_id`` to ``candidate_id``.

        Args:
            requester_id: Identity making the request
            candidate_id: Identity receiving the role
            scope_id: Lodge the role is scoped to (district anchor for DISTRICT_ADMIN)
            tier: LODGE_ADMIN or DISTRICT_ADMIN; defaults to the requester's role

        Returns:
            TransferResult with per-representation read-back

        Raises:
            ValidationError, AuthorizationError, NotFoundError, ConflictError:
                a precondition failed; nothing was written
        """
        requester = (await self.identities.require_by_id(requester_id)).identity
        ctx = TransferContext(
            requester=requester,
            candidate_id=candidate_id,
            scope_id=scope_id,
            tier=self._parse_tier(tier) if tier is not None else None,
        )

        for phase, handler in self._phases():
            ctx.phase = phase
            logger.debug(f"Transfer {scope_id} -> {candidate_id}: {phase.value}")
            await handler(ctx)
            ctx.completed_phases.append(phase.value)
        ctx.phase = TransferPhase.DONE
        ctx.result.phases = list(ctx.completed_phases)

        self._audit(ctx)
        return ctx.result

    @staticmethod
    def _parse_tier(tier: Union[Role, str]) -> Role:
        try:
            return parse_role(tier)
        except ValueError as e:
            raise ValidationError(str(e))

    async def _find_scope_holder(self, tier: Role, scope_id: str) -> Optional[Identity]:
        """
        The identity currently holding ``tier`` for ``scope_id``, if any.

        A DISTRICT_ADMIN holds the district anchored at its primary lodge. A
        LODGE_ADMIN holds a lodge through its primary lodge, its
        administeredLodges or a current grant, the same sources the resolver
        reads.
        """
        granted = set()
        if tier == Role.LODGE_ADMIN:
            granted = {g.user_id for g in await self.identities.list_lodge_grants(scope_id) if g.is_current()}

        for source in LOOKUP_CHAIN:
            for document in await self.store.find(SOURCE_COLLECTIONS[source]):
                if coerce_role(document.get("role")) != tier:
                    continue
                if document.get("primaryLodge") == scope_id or (
                    tier == Role.LODGE_ADMIN
                    and (scope_id in (document.get("administeredLodges") or []) or document.get("id") in granted)
                ):
                    return document_to_identity(source, document)
        return None

    # ==================== PHASES ====================

    async def _validate(self, ctx: TransferContext):
        requester = ctx.requester

        if ctx.tier is None:
            if requester.role not in SCOPED_ADMIN_ROLES:
                raise ValidationError(
                    "A target role is required when the requester holds no scoped admin role"
                )
            ctx.tier = requester.role
        tier = ctx.tier

        if tier not in SCOPED_ADMIN_ROLES:
            raise ValidationError(
                f"{tier.value} cannot be transferred; only LODGE_ADMIN and DISTRICT_ADMIN are scoped roles"
            )
        if not outranks_or_equals(requester.role, tier):
            raise AuthorizationError(
                f"{requester.role.value} cannot transfer {tier.value}",
                details={"requester_role": requester.role.value},
            )

        ctx.scope = await self.identities.get_lodge(ctx.scope_id)
        if ctx.scope is None:
            raise ScopeNotFoundError(f"Lodge {ctx.scope_id} not found", details={"lodge_id": ctx.scope_id})

        candidate_lookup = await self.identities.find_by_id(ctx.candidate_id)
        if candidate_lookup is None:
            raise NotFoundError(
                f"Candidate {ctx.candidate_id} not found", details={"candidate_id": ctx.candidate_id}
            )
        candidate = candidate_lookup.identity

        if requester.role == tier:
            holder = requester
        else:
            holder = await self._find_scope_holder(tier, ctx.scope_id)

        if holder is not None and holder.id == candidate.id:
            raise ValidationError("Candidate already is the current holder")

        candidate_reps = await self.identities.representations(candidate)
        held = [
            c for c, d in candidate_reps.items()
            if d is not None and coerce_role(d.get("role")) == tier
        ]
        if held or candidate.role == tier:
            raise ConflictError(
                f"Candidate already holds {tier.value}",
                details={"candidate_id": candidate.id, "representations": held},
            )

        # Requester authority over the scope
        permission = await self.resolver.resolve(requester)
        if tier == Role.DISTRICT_ADMIN and requester.role == tier:
            if requester.primary_lodge != ctx.scope_id:
                raise ValidationError(
                    "A district admin can only transfer the district anchored at their primary lodge",
                    details={"primary_lodge": requester.primary_lodge, "scope_id": ctx.scope_id},
                )
        elif not permission.can_administer(ctx.scope_id):
            raise AuthorizationError(
                f"Requester does not administer lodge {ctx.scope_id}",
                details={"lodge_id": ctx.scope_id},
            )

        ctx.candidate = Participant(candidate, tier, candidate_reps)
        if holder is not None:
            ctx.holder = Participant(holder, Role.MEMBER, await self.identities.representations(holder))
        else:
            ctx.warnings.append(f"No current {tier.value} found for lodge {ctx.scope_id}")

    async def _reconcile_dual_presence(self, ctx: TransferContext):
        for participant in ctx.participants():
            for collection, synthesize in SYNTHESIZERS.items():
                if participant.representations.get(collection) is not None:
                    continue
                document = synthesize(participant.identity, ctx.scope_id)
                try:
                    await self.store.insert_one(collection, document)
                except DuplicateKeyError as e:
                    raise ConflictError(
                        f"Cannot synthesize {collection} record for {participant.identity.email}: {e}"
                    )
                record = f"{collection}/{document['id']}"
                ctx.synthesized.append(record)
                logger.warning(f"Synthesized missing {collection} record for {participant.identity.email}")
                log_action(
                    AuditAction.RECORD_SYNTHESIZED,
                    ResourceType.IDENTITY,
                    user_id=ctx.requester.id,
                    resource_id=participant.identity.id,
                    details={"collection": collection, "scope_id": ctx.scope_id},
                )
            participant.representations = await self.identities.representations(participant.identity)

    async def _validate_membership(self, ctx: TransferContext):
        candidate = ctx.candidate
        is_member = ctx.scope_id in candidate.lodge_refs()
        # A district admin's district is anchored at its primary lodge
        needs_anchor = ctx.tier == Role.DISTRICT_ADMIN and any(
            doc.get("primaryLodge") != ctx.scope_id for _, doc in candidate.present()
        )
        if is_member and not needs_anchor:
            return

        writes = []
        for collection, doc in candidate.present():
            if is_member:
                lodges = merge_lodge_refs(ctx.scope_id, doc.get("lodges") or [])
            else:
                lodges = [ctx.scope_id]
            writes.append(DocumentWrite(collection, doc["id"], {"primaryLodge": ctx.scope_id, "lodges": lodges}))
        outcomes = await self.store.bulk_update(writes)
        failed = [o for o in outcomes if not o.ok]
        if failed:
            raise ConsistencyError(
                "Membership repair failed; transfer not applied",
                details={"failures": [f"{o.write.collection}/{o.write.document_id}: {o.error}" for o in failed]},
            )

        ctx.membership_repaired = True
        if is_member:
            ctx.warnings.append(f"Candidate's primary lodge moved to {ctx.scope_id}; membership repaired")
        else:
            ctx.warnings.append(f"Candidate was not a member of {ctx.scope_id}; membership repaired")
        logger.warning(f"Auto-repaired membership of {candidate.identity.email} into lodge {ctx.scope_id}")
        log_action(
            AuditAction.MEMBERSHIP_REPAIRED,
            ResourceType.LODGE,
            user_id=ctx.requester.id,
            resource_id=ctx.scope_id,
            details={"candidate_id": candidate.identity.id, "was_member": is_member},
        )
        candidate.representations = await self.identities.representations(candidate.identity)

    def _role_updates(self, ctx: TransferContext, participant: Participant, document: Dict[str, Any]) -> Dict[str, Any]:
        updates: Dict[str, Any] = {"role": participant.expected_role.value}
        if ctx.tier == Role.LODGE_ADMIN:
            administered = list(document.get("administeredLodges") or [])
            if participant is ctx.holder:
                administered = [ref for ref in administered if ref != ctx.scope_id]
            else:
                administered = merge_lodge_refs(administered, ctx.scope_id)
            updates["administeredLodges"] = administered
        return updates

    async def _apply(self, ctx: TransferContext):
        writes = [
            DocumentWrite(collection, document["id"], self._role_updates(ctx, participant, document))
            for participant in ctx.participants()
            for collection, document in participant.present()
        ]
        ctx.outcomes = await self.store.bulk_update(writes)
        for outcome in ctx.outcomes:
            if not outcome.ok:
                logger.error(
                    f"Transfer write {outcome.write.collection}/{outcome.write.document_id} "
                    f"failed: {outcome.error}"
                )

    async def _read_back(self, participant: Participant) -> ParticipantReport:
        report = ParticipantReport(
            identity_id=participant.identity.id,
            email=participant.identity.email,
            name=participant.identity.name,
            expected_role=participant.expected_role,
        )
        for collection, before in participant.present():
            after = await self.store.get(collection, before["id"])
            report.representations.append(RepresentationState(
                collection=collection,
                document_id=before["id"],
                role_before=before.get("role"),
                role_after=after.get("role") if after else None,
                present=after is not None,
            ))
        return report

    async def _verify_read_back(self, ctx: TransferContext):
        new_admin = await self._read_back(ctx.candidate)
        previous_admin = await self._read_back(ctx.holder) if ctx.holder else None
        reports = [r for r in (new_admin, previous_admin) if r is not None]

        if all(r.consistent for r in reports):
            status = TransferStatus.COMPLETED
        elif not any(r.changed for r in reports):
            status = TransferStatus.NOT_APPLIED
        else:
            status = TransferStatus.PARTIAL

        if status != TransferStatus.COMPLETED:
            logger.error(
                f"Transfer of {ctx.tier.value} in {ctx.scope_id} {status.value}: "
                f"candidate {new_admin.observed_roles()}, "
                f"holder {previous_admin.observed_roles() if previous_admin else None}"
            )

        ctx.result = TransferResult(
            status=status,
            tier=ctx.tier,
            scope_id=ctx.scope_id,
            new_admin=new_admin,
            previous_admin=previous_admin,
            membership_repaired=ctx.membership_repaired,
            synthesized_records=list(ctx.synthesized),
            write_failures=[
                f"{o.write.collection}/{o.write.document_id}: {o.error}" for o in ctx.outcomes if not o.ok
            ],
            warnings=list(ctx.warnings),
        )

    def _audit(self, ctx: TransferContext):
        result = ctx.result
        log_action(
            AuditAction.ROLE_TRANSFER if result.succeeded else AuditAction.ROLE_TRANSFER_PARTIAL,
            ResourceType.LODGE,
            user_id=ctx.requester.id,
            user_email=ctx.requester.email,
            resource_id=ctx.scope_id,
            details={
                "tier": result.tier.value,
                "status": result.status.value,
                "candidate_id": result.new_admin.identity_id,
                "previous_admin_id": result.previous_admin.identity_id if result.previous_admin else None,
                "membership_repaired": result.membership_repaired,
            },
            success=result.succeeded,
            error_message=None if result.succeeded else result.message,
        )
