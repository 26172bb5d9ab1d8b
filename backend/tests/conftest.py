"""
Shared fixtures for the identity engine tests.

Every test runs against the JSON-file backend in its own temp directory.
"""

import os

# Settings are read at import time; configure before any project import
os.environ.setdefault("ENVIRONMENT", "test")
os.environ["STORAGE_BACKEND"] = "file"
os.environ["JWT_SECRET_KEY"] = "test-signing-secret-with-at-least-32-chars"
os.environ["BCRYPT_ROUNDS"] = "4"

from typing import Any, Dict, List, Optional

import pytest

from config import get_settings
from identity.store import (
    CANONICAL_COLLECTION,
    LEGACY_ACCOUNT_COLLECTION,
    LEGACY_PROFILE_COLLECTION,
    LODGE_COLLECTION,
    LODGE_GRANT_COLLECTION,
)
from services import audit
from services.auth import TokenService
from services.passwords import get_password_hash
from services.storage import FileDocumentStore

PASSWORD = "correct-horse-battery"
PASSWORD_HASH = get_password_hash(PASSWORD)


class Seeder:
    """Writes lodges and legacy/canonical identity records into a store."""

    def __init__(self, store: FileDocumentStore):
        self.store = store

    async def lodge(
        self,
        lodge_id: str,
        district: Optional[str] = None,
        parent: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        document = {"id": lodge_id, "name": name or f"Lodge {lodge_id}", "isActive": True}
        if district is not None:
            document["district"] = district
        if parent is not None:
            document["parentLodge"] = parent
        return await self.store.insert_one(LODGE_COLLECTION, document)

    async def hierarchy(self):
        """
        L1 anchors district D1; L2 shares the district key; L3 points at L1
        through parentLodge; L4 is in another district.
        """
        await self.lodge("L1", district="D1", name="Anchor Lodge")
        await self.lodge("L2", district="D1", name="Sister Lodge")
        await self.lodge("L3", parent="L1", name="Daughter Lodge")
        await self.lodge("L4", district="D2", name="Far Lodge")

    async def account(
        self,
        account_id: str,
        email: str,
        role: str = "LODGE_MEMBER",
        primary_lodge: Optional[str] = None,
        lodges: Optional[List[str]] = None,
        password_hash: Optional[str] = PASSWORD_HASH,
        **extra: Any,
    ) -> Dict[str, Any]:
        document = {
            "id": account_id,
            "email": email,
            "passwordHash": password_hash,
            "name": extra.pop("name", f"Account {account_id}"),
            "role": role,
            "primaryLodge": primary_lodge,
            "lodges": lodges if lodges is not None else ([primary_lodge] if primary_lodge else []),
            "created": "2023-01-01T00:00:00+00:00",
            **extra,
        }
        return await self.store.insert_one(LEGACY_ACCOUNT_COLLECTION, document)

    async def profile(
        self,
        profile_id: str,
        email: str,
        role: str = "LODGE_MEMBER",
        primary_lodge: Optional[str] = None,
        lodges: Optional[List[str]] = None,
        password: Optional[str] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        document = {
            "id": profile_id,
            "email": email,
            "password": password,
            "firstName": extra.pop("firstName", "Profile"),
            "lastName": extra.pop("lastName", profile_id),
            "role": role,
            "primaryLodge": primary_lodge,
            "lodges": lodges if lodges is not None else ([primary_lodge] if primary_lodge else []),
            "createdAt": "2022-06-01T00:00:00+00:00",
            **extra,
        }
        return await self.store.insert_one(LEGACY_PROFILE_COLLECTION, document)

    async def both(self, identity_id: str, email: str, role: str, primary_lodge: str, **extra: Any):
        """Account and profile with the same id, as most legacy members have."""
        await self.account(identity_id, email, role=role, primary_lodge=primary_lodge, **extra)
        await self.profile(identity_id, email, role=role, primary_lodge=primary_lodge, password=PASSWORD_HASH)

    async def canonical(self, document: Dict[str, Any]) -> Dict[str, Any]:
        return await self.store.insert_one(CANONICAL_COLLECTION, document)

    async def grant(self, user_id: str, lodge_id: str, **extra: Any) -> Dict[str, Any]:
        document = {"userId": user_id, "lodgeId": lodge_id, "role": "LODGE_ADMIN", "isActive": True, **extra}
        return await self.store.insert_one(LODGE_GRANT_COLLECTION, document)


@pytest.fixture(scope="session", autouse=True)
def data_dir(tmp_path_factory):
    """File backend directory for code that builds its store from settings."""
    path = tmp_path_factory.mktemp("data")
    get_settings().DATA_DIR = str(path)
    return path


@pytest.fixture(autouse=True)
def audit_log(tmp_path):
    """Each test gets its own audit trail file."""
    return audit.configure_audit_log(tmp_path / "audit_log.jsonl")


@pytest.fixture
def store(tmp_path):
    return FileDocumentStore(tmp_path / "store")


@pytest.fixture
def seed(store):
    return Seeder(store)


@pytest.fixture
def token_service():
    return TokenService(secret_key=os.environ["JWT_SECRET_KEY"], expire_minutes=60)


@pytest.fixture
def password():
    return PASSWORD
