"""
Identity Store Adapter

Read-only view over the canonical identity store and the two legacy stores.
Lookups walk the chain canonical -> legacy account -> legacy profile and the
first hit wins. Legacy hits are converted to the canonical ``Identity`` shape.

No match is ``None``; only storage faults raise.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from identity.errors import NotFoundError
from identity.models import (
    Identity,
    LegacyAccountRecord,
    LegacyMemberProfileRecord,
    Lodge,
    LodgeAdminGrant,
)
from identity.roles import Role, coerce_role
from services.passwords import is_password_hash
from services.storage import DocumentStore

logger = logging.getLogger(__name__)

CANONICAL_COLLECTION = "identities"
LEGACY_ACCOUNT_COLLECTION = "users"
LEGACY_PROFILE_COLLECTION = "members"
LODGE_COLLECTION = "lodges"
LODGE_GRANT_COLLECTION = "lodge_roles"


class IdentitySource(str, Enum):
    CANONICAL = "canonical"
    LEGACY_ACCOUNT = "legacy_account"
    LEGACY_PROFILE = "legacy_profile"


SOURCE_COLLECTIONS = {
    IdentitySource.CANONICAL: CANONICAL_COLLECTION,
    IdentitySource.LEGACY_ACCOUNT: LEGACY_ACCOUNT_COLLECTION,
    IdentitySource.LEGACY_PROFILE: LEGACY_PROFILE_COLLECTION,
}

LOOKUP_CHAIN = (
    IdentitySource.CANONICAL,
    IdentitySource.LEGACY_ACCOUNT,
    IdentitySource.LEGACY_PROFILE,
)

# Every place an identity can be stored, legacy first
REPRESENTATIONS = (LEGACY_ACCOUNT_COLLECTION, LEGACY_PROFILE_COLLECTION, CANONICAL_COLLECTION)


@dataclass
class IdentityLookup:
    """An identity plus the store that answered and the raw document."""
    identity: Identity
    source: IdentitySource
    document: Dict[str, Any]

    @property
    def collection(self) -> str:
        return SOURCE_COLLECTIONS[self.source]


def document_to_identity(source: IdentitySource, document: Dict[str, Any]) -> Identity:
    """
    Convert a stored document from any of the three stores to ``Identity``.

    A profile ``password`` only becomes the credential when it is already a
    hash; plaintext legacy passwords are never exposed through the adapter.
    """
    if source == IdentitySource.CANONICAL:
        return Identity.from_document(document)
    if source == IdentitySource.LEGACY_ACCOUNT:
        return LegacyAccountRecord.from_document(document).to_identity()
    profile = LegacyMemberProfileRecord.from_document(document)
    password_hash = profile.password if profile.password and is_password_hash(profile.password) else None
    return profile.to_identity(password_hash=password_hash)


class IdentityStore:
    """Chained identity lookups plus the lodge hierarchy reads the engine needs."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def _lookup(self, source: IdentitySource, document: Optional[Dict[str, Any]]) -> Optional[IdentityLookup]:
        if document is None:
            return None
        try:
            identity = document_to_identity(source, document)
        except PydanticValidationError as e:
            logger.warning(
                f"Skipping malformed {source.value} record {document.get('id')}: "
                f"{e.error_count()} validation errors"
            )
            return None
        return IdentityLookup(identity=identity, source=source, document=document)

    async def find_by_email(self, email: str) -> Optional[IdentityLookup]:
        if not email or not email.strip():
            return None
        for source in LOOKUP_CHAIN:
            document = await self.store.find_by_email(SOURCE_COLLECTIONS[source], email)
            found = self._lookup(source, document)
            if found:
                return found
        return None

    async def find_by_id(self, identity_id: str) -> Optional[IdentityLookup]:
        if not identity_id:
            return None
        for source in LOOKUP_CHAIN:
            document = await self.store.get(SOURCE_COLLECTIONS[source], identity_id)
            found = self._lookup(source, document)
            if found:
                return found
        return None

    async def require_by_id(self, identity_id: str) -> IdentityLookup:
        found = await self.find_by_id(identity_id)
        if found is None:
            raise NotFoundError(f"Identity {identity_id} not found", details={"identity_id": identity_id})
        return found

    async def representations(self, identity: Identity) -> Dict[str, Optional[Dict[str, Any]]]:
        """Each store's record for ``identity``, matched by id and then by email."""
        found: Dict[str, Optional[Dict[str, Any]]] = {}
        for collection in REPRESENTATIONS:
            document = await self.store.get(collection, identity.id)
            if document is None:
                document = await self.store.find_by_email(collection, identity.email)
            found[collection] = document
        return found

    async def canonical_exists(self) -> bool:
        return await self.store.count(CANONICAL_COLLECTION) > 0

    async def count_role(self, role: Role) -> int:
        """
        Number of identities holding ``role``.

        Uses the canonical store once it is populated; before migration the
        legacy stores are counted, deduplicated by email.
        """
        if await self.canonical_exists():
            return len(await self.store.find(CANONICAL_COLLECTION, role=role.value))

        holders = set()
        for collection in (LEGACY_ACCOUNT_COLLECTION, LEGACY_PROFILE_COLLECTION):
            for document in await self.store.find(collection):
                if coerce_role(document.get("role")) == role and document.get("email"):
                    holders.add(str(document["email"]).strip().lower())
        return len(holders)

    # ==================== LODGE HIERARCHY ====================

    async def get_lodge(self, lodge_id: str) -> Optional[Lodge]:
        if not lodge_id:
            return None
        document = await self.store.get(LODGE_COLLECTION, lodge_id)
        return Lodge.from_document(document) if document else None

    async def list_lodges(self) -> List[Lodge]:
        lodges = []
        for document in await self.store.find(LODGE_COLLECTION):
            try:
                lodges.append(Lodge.from_document(document))
            except PydanticValidationError:
                logger.warning(f"Skipping malformed lodge record {document.get('id')}")
        return lodges

    async def list_admin_grants(self, user_id: str) -> List[LodgeAdminGrant]:
        return await self._grants(userId=user_id)

    async def list_lodge_grants(self, lodge_id: str) -> List[LodgeAdminGrant]:
        return await self._grants(lodgeId=lodge_id)

    async def _grants(self, **criteria: str) -> List[LodgeAdminGrant]:
        grants = []
        for document in await self.store.find(LODGE_GRANT_COLLECTION, **criteria):
            try:
                grants.append(LodgeAdminGrant.from_document(document))
            except PydanticValidationError:
                logger.warning(f"Skipping malformed lodge grant {document.get('id')}")
        return grants
