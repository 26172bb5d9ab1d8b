"""
Identity - Service Layer

Business logic for identity management including:
- Registration (unique email across every store)
- Profile updates (name and lodge fields kept consistent)
- Last-login tracking
- Direct role changes by system and district admins

Writes go to every store that holds a representation of the identity, so
legacy readers and the canonical store never disagree about a role.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel

from identity.errors import (
    AuthorizationError,
    ConflictError,
    ConsistencyError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from identity.models import Identity, IdentityStatus, join_name, merge_lodge_refs, split_name
from identity.roles import Role, parse_role
from identity.store import (
    CANONICAL_COLLECTION,
    LEGACY_ACCOUNT_COLLECTION,
    IdentityLookup,
    IdentityStore,
)
from services.audit import AuditAction, ResourceType, log_action, log_auth_action
from services.authorization import AuthorizationResolver
from services.passwords import get_password_hash
from services.storage import DocumentStore, DocumentWrite, DuplicateKeyError

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8

# Never writable through a profile update
PROTECTED_FIELDS = frozenset({
    "id",
    "email",
    "password",
    "passwordHash",
    "role",
    "status",
    "administeredLodges",
    "created",
    "createdAt",
    "lastLogin",
})

PROFILE_FIELDS = frozenset({
    "name",
    "firstName",
    "lastName",
    "phone",
    "address",
    "city",
    "state",
    "zipCode",
    "country",
    "occupation",
    "bio",
    "interests",
    "profileImage",
    "primaryLodge",
    "primaryLodgePosition",
    "lodges",
})


class RoleChangeResult(BaseModel):
    """Outcome of a direct role change."""
    identity_id: str
    previous_role: Role
    new_role: Role
    lodge_id: Optional[str] = None
    updated_collections: List[str] = []
    warnings: List[str] = []


class IdentityService:
    """
    Identity Service - registration, profile and role management.

    Usage:
        service = IdentityService(store)
        identity = await service.register("a@example.org", "s3cret-pass", name="A Member")
    """

    def __init__(self, store: DocumentStore, resolver: Optional[AuthorizationResolver] = None):
        self.store = store
        self.identities = IdentityStore(store)
        self.resolver = resolver or AuthorizationResolver(store)

    # ==================== LOOKUPS ====================

    async def get_by_id(self, identity_id: str) -> Identity:
        return (await self.identities.require_by_id(identity_id)).identity

    async def get_by_email(self, email: str) -> Identity:
        found = await self.identities.find_by_email(email)
        if found is None:
            raise NotFoundError(f"No identity with email {email}", details={"email": email})
        return found.identity

    # ==================== REGISTRATION ====================

    async def register(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        primary_lodge: Optional[str] = None,
        lodges: Optional[List[str]] = None,
        phone: Optional[str] = None,
    ) -> Identity:
        """
        Register a new member.

        The account record is written to the legacy account store, and to the
        canonical store as well once it is populated, so a later reconciliation
        run keeps the identity. New registrations are always MEMBER.

        Args:
            email: Email address (unique across every store, case-insensitive)
            password: Plaintext password, at least 8 characters
            name: Display name; derived from first/last when omitted
            first_name: First name
            last_name: Last name
            primary_lodge: Primary lodge id; must exist when given
            lodges: Additional lodge ids
            phone: Phone number

        Returns:
            The created Identity

        Raises:
            ValidationError: bad email, short password, missing name or unknown lodge
            ConflictError: the email is already registered
        """
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        if not (name or first_name or last_name):
            raise ValidationError("A name is required")

        if await self.identities.find_by_email(email):
            raise ConflictError("Email already in use", details={"email": email.strip().lower()})

        for lodge_id in merge_lodge_refs(primary_lodge, lodges or []):
            if await self.identities.get_lodge(lodge_id) is None:
                raise ValidationError(f"Lodge {lodge_id} does not exist", details={"lodge_id": lodge_id})

        if name and not (first_name or last_name):
            first_name, last_name = split_name(name)
        try:
            identity = Identity(
                email=email,
                password_hash=get_password_hash(password),
                name=(name or join_name(first_name, last_name)).strip(),
                first_name=first_name,
                last_name=last_name,
                role=Role.MEMBER,
                status=IdentityStatus.ACTIVE,
                phone=phone,
                primary_lodge=primary_lodge,
                lodges=lodges or [],
            )
        except ValueError as e:
            raise ValidationError(f"Invalid registration: {e}")

        document = identity.to_document()
        try:
            await self.store.insert_one(LEGACY_ACCOUNT_COLLECTION, document)
            if await self.identities.canonical_exists():
                await self.store.insert_one(CANONICAL_COLLECTION, document)
        except DuplicateKeyError as e:
            raise ConflictError(f"Identity could not be stored: {e}", details={"email": identity.email})

        log_auth_action(AuditAction.IDENTITY_REGISTER, user_id=identity.id, user_email=identity.email)
        logger.info(f"Registered identity {identity.email} ({identity.id})")
        return identity

    # ==================== PROFILE ====================

    async def update_profile(self, identity_id: str, updates: Dict[str, Any]) -> Identity:
        """
        Update personal and lodge fields of an identity.

        ``name`` and ``firstName``/``lastName`` are kept in step, and the
        primary lodge always stays inside ``lodges``.

        Raises:
            ValidationError: protected or unknown fields, or an unknown lodge
            NotFoundError: no such identity
        """
        protected = sorted(set(updates) & PROTECTED_FIELDS)
        if protected:
            raise ValidationError(
                f"Fields cannot be changed through a profile update: {', '.join(protected)}",
                details={"fields": protected},
            )
        unknown = sorted(set(updates) - PROFILE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(unknown)}", details={"fields": unknown})

        lookup = await self.identities.require_by_id(identity_id)
        identity = lookup.identity
        changes = dict(updates)

        if "firstName" in changes or "lastName" in changes:
            first_name = changes.get("firstName", identity.first_name)
            last_name = changes.get("lastName", identity.last_name)
            changes["name"] = join_name(first_name, last_name)
        elif "name" in changes:
            changes["firstName"], changes["lastName"] = split_name(changes["name"])

        if "primaryLodge" in changes or "lodges" in changes:
            primary = changes.get("primaryLodge", identity.primary_lodge)
            lodges = merge_lodge_refs(primary, changes.get("lodges", identity.lodges))
            for lodge_id in lodges:
                if await self.identities.get_lodge(lodge_id) is None:
                    raise ValidationError(f"Lodge {lodge_id} does not exist", details={"lodge_id": lodge_id})
            changes["lodges"] = lodges

        await self._write_everywhere(identity, changes)
        log_action(
            AuditAction.PROFILE_UPDATE,
            ResourceType.IDENTITY,
            user_id=identity.id,
            user_email=identity.email,
            resource_id=identity.id,
            details={"fields": sorted(changes)},
        )
        return (await self.identities.require_by_id(identity.id)).identity

    async def touch_last_login(self, lookup: IdentityLookup) -> datetime:
        now = datetime.now(timezone.utc)
        await self.store.update_one(lookup.collection, lookup.identity.id, {"lastLogin": now.isoformat()})
        return now

    # ==================== ROLES ====================

    async def change_role(
        self,
        actor: Identity,
        target_id: str,
        new_role: Union[Role, str],
        lodge_id: Optional[str] = None,
    ) -> RoleChangeResult:
        """
        Set an identity's role directly.

        Args:
            actor: Identity making the change (freshly loaded)
            target_id: Identity whose role changes
            new_role: The role to assign
            lodge_id: Lodge administered when ``new_role`` is LODGE_ADMIN

        Returns:
            RoleChangeResult; ``warnings`` carries the advisory when the last
            SYSTEM_ADMIN is demoted (the change is still applied)

        Raises:
            AuthorizationError: actor is not SYSTEM_ADMIN or DISTRICT_ADMIN
            ForbiddenError: district admin touching SYSTEM_ADMIN, or a lodge
                outside the actor's district
            ValidationError: unknown role, or LODGE_ADMIN without a lodge
            ConsistencyError: a representation could not be written
        """
        if actor.role not in (Role.SYSTEM_ADMIN, Role.DISTRICT_ADMIN):
            raise AuthorizationError("Only system and district admins can change roles")

        try:
            role = parse_role(new_role)
        except ValueError as e:
            raise ValidationError(str(e))

        target = (await self.identities.require_by_id(target_id)).identity
        permission = await self.resolver.resolve(actor)

        if actor.role == Role.DISTRICT_ADMIN:
            if role == Role.SYSTEM_ADMIN:
                raise ForbiddenError("District admins cannot grant SYSTEM_ADMIN")
            if target.role == Role.SYSTEM_ADMIN:
                raise ForbiddenError("District admins cannot modify a SYSTEM_ADMIN")
            if not permission.is_system_wide and not set(target.lodge_refs()) & permission.administered_lodge_ids:
                raise ForbiddenError(
                    "Target is not a member of a lodge in your district",
                    details={"target_id": target.id},
                )

        updates: Dict[str, Any] = {"role": role.value}
        if role == Role.LODGE_ADMIN:
            lodge_id = lodge_id or target.primary_lodge
            if not lodge_id:
                raise ValidationError("A lodge is required to assign LODGE_ADMIN")
            if await self.identities.get_lodge(lodge_id) is None:
                raise ValidationError(f"Lodge {lodge_id} does not exist", details={"lodge_id": lodge_id})
            if not permission.can_administer(lodge_id):
                raise ForbiddenError(f"You do not administer lodge {lodge_id}", details={"lodge_id": lodge_id})
            updates["administeredLodges"] = [lodge_id]
        elif role == Role.MEMBER:
            updates["administeredLodges"] = []

        warnings = []
        if target.role == Role.SYSTEM_ADMIN and role != Role.SYSTEM_ADMIN:
            if await self.identities.count_role(Role.SYSTEM_ADMIN) <= 1:
                message = f"{target.email} is the last SYSTEM_ADMIN; no system admin will remain"
                logger.warning(message)
                warnings.append(message)

        updated = await self._write_everywhere(target, updates)

        log_action(
            AuditAction.ROLE_CHANGE,
            ResourceType.IDENTITY,
            user_id=actor.id,
            user_email=actor.email,
            resource_id=target.id,
            details={
                "previous_role": target.role.value,
                "new_role": role.value,
                "lodge_id": lodge_id,
                "collections": updated,
                "warnings": warnings,
            },
        )
        logger.info(f"Role of {target.email} changed {target.role.value} -> {role.value} by {actor.email}")

        return RoleChangeResult(
            identity_id=target.id,
            previous_role=target.role,
            new_role=role,
            lodge_id=lodge_id if role == Role.LODGE_ADMIN else None,
            updated_collections=updated,
            warnings=warnings,
        )

    async def _write_everywhere(self, identity: Identity, updates: Dict[str, Any]) -> List[str]:
        """Apply ``updates`` to every stored representation of ``identity``."""
        representations = await self.identities.representations(identity)
        writes = [
            DocumentWrite(collection, document["id"], updates)
            for collection, document in representations.items()
            if document is not None
        ]
        outcomes = await self.store.bulk_update(writes)
        failed = [o for o in outcomes if not o.ok]
        if failed:
            raise ConsistencyError(
                f"Update of {identity.email} did not reach every store",
                details={
                    "written": [o.write.collection for o in outcomes if o.ok],
                    "failed": {o.write.collection: o.error for o in failed},
                },
            )
        return [o.write.collection for o in outcomes]
