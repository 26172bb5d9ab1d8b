"""
Membership Document Storage

Async document-collection interface used by the identity engine, plus the
file-based backend (one JSON file per collection). The PostgreSQL backend
lives in ``services/db_storage.py`` and implements the same interface.

Collections used by the engine:
    users         legacy account records
    members       legacy member-profile records
    identities    canonical identity records
    lodges        lodge hierarchy
    lodge_roles   explicit lodge admin grants
    <users|members>_backup_<timestamp>   rollback snapshots
"""

import json
import logging
import os
import re
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from identity.errors import MaintenanceLockError

logger = logging.getLogger(__name__)

# Default storage directory
DATA_DIR = Path(__file__).parent.parent / "data" / "membership"

# Thread lock for file writes
_write_lock = threading.Lock()

COLLECTION_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")
FIELD_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

INDEX_REGISTRY_FILE = "_indexes.json"


class StorageError(Exception):
    """Backend read/write failure."""


class DuplicateKeyError(StorageError):
    """A unique index would be violated."""


def validate_collection_name(name: str) -> str:
    if not COLLECTION_NAME_PATTERN.match(name or ""):
        raise ValueError(f"Invalid collection name: {name!r}")
    return name


def validate_field_name(name: str) -> str:
    if not FIELD_NAME_PATTERN.match(name or ""):
        raise ValueError(f"Invalid field name: {name!r}")
    return name


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class IndexSpec:
    collection: str
    field: str
    unique: bool = False
    multikey: bool = False
    case_insensitive: bool = False

    @property
    def name(self) -> str:
        return f"ix_{self.collection}__{self.field}".lower().replace("-", "_")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "collection": self.collection,
            "field": self.field,
            "unique": self.unique,
            "multikey": self.multikey,
            "case_insensitive": self.case_insensitive,
        }


@dataclass
class DocumentWrite:
    """A partial update to one document, part of a batch."""
    collection: str
    document_id: str
    updates: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WriteOutcome:
    write: DocumentWrite
    ok: bool
    error: Optional[str] = None


class DocumentStore(ABC):
    """
    Async collection-of-documents store.

    Documents are JSON-compatible dicts with a string ``id``. Queries are
    top-level equality matches; email lookups are case-insensitive.
    """

    backend_name = "abstract"

    @abstractmethod
    async def list_collections(self) -> List[str]:
        ...

    @abstractmethod
    async def find(self, collection: str, **criteria: Any) -> List[Dict[str, Any]]:
        ...

    async def find_one(self, collection: str, **criteria: Any) -> Optional[Dict[str, Any]]:
        matches = await self.find(collection, **criteria)
        return matches[0] if matches else None

    @abstractmethod
    async def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def find_by_email(self, collection: str, email: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def insert_one(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def insert_many(self, collection: str, documents: Sequence[Dict[str, Any]]) -> int:
        ...

    @abstractmethod
    async def update_one(
        self, collection: str, document_id: str, updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Shallow-merge ``updates`` into the document. Returns None if missing."""

    @abstractmethod
    async def replace_collection(self, collection: str, documents: Sequence[Dict[str, Any]]) -> int:
        """Atomically replace the full contents of a collection."""

    @abstractmethod
    async def count(self, collection: str) -> int:
        ...

    @abstractmethod
    async def drop(self, collection: str) -> bool:
        """Remove a collection and its indexes. Returns False if it did not exist."""

    @abstractmethod
    async def create_index(
        self,
        collection: str,
        field: str,
        unique: bool = False,
        multikey: bool = False,
        case_insensitive: bool = False,
    ) -> IndexSpec:
        ...

    @abstractmethod
    async def list_indexes(self, collection: str) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def maintenance_lock(self, name: str):
        """Exclusive lock for out-of-band maintenance (reconciliation, rollback)."""

    async def collection_exists(self, collection: str) -> bool:
        return collection in await self.list_collections()

    async def bulk_update(self, writes: Sequence[DocumentWrite]) -> List[WriteOutcome]:
        """
        Apply a batch of partial updates.

        This default applies writes one by one; a failed write is logged and
        reported, and the remaining writes still run. Backends with
        transactions override it to apply the batch atomically.
        """
        outcomes: List[WriteOutcome] = []
        for write in writes:
            try:
                updated = await self.update_one(write.collection, write.document_id, write.updates)
            except StorageError as e:
                logger.error(f"Write to {write.collection}/{write.document_id} failed: {e}")
                outcomes.append(WriteOutcome(write=write, ok=False, error=str(e)))
                continue
            if updated is None:
                logger.error(f"Write to {write.collection}/{write.document_id} failed: document not found")
                outcomes.append(WriteOutcome(write=write, ok=False, error="document not found"))
            else:
                outcomes.append(WriteOutcome(write=write, ok=True))
        return outcomes


# ==================== FILE BACKEND ====================

class FileDocumentStore(DocumentStore):
    """
    File-based storage: ``<data_dir>/<collection>.json`` holds a JSON list.

    Suitable for development, tests and single-process batch runs. Writes go
    through a temp file and ``os.replace`` so a collection is never half
    written.
    """

    backend_name = "file"

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir) if data_dir else DATA_DIR
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, collection: str) -> Path:
        return self.data_dir / f"{validate_collection_name(collection)}.json"

    def _load_all(self, collection: str) -> List[Dict[str, Any]]:
        path = self._path(collection)
        if not path.exists():
            return []
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading {path}: {e}")
            raise StorageError(f"Cannot read collection {collection}: {e}") from e

    def _save_all(self, collection: str, items: List[Dict[str, Any]]):
        path = self._path(collection)
        self._check_unique(collection, items)
        tmp_path = path.with_suffix(f".{uuid.uuid4().hex}.tmp")
        with _write_lock:
            try:
                with open(tmp_path, "w") as f:
                    json.dump(items, f, indent=2, default=str)
                os.replace(tmp_path, path)
            except OSError as e:
                logger.error(f"Error writing {path}: {e}")
                tmp_path.unlink(missing_ok=True)
                raise StorageError(f"Cannot write collection {collection}: {e}") from e

    # ==================== INDEXES ====================

    def _load_index_registry(self) -> Dict[str, List[Dict[str, Any]]]:
        path = self.data_dir / INDEX_REGISTRY_FILE
        if not path.exists():
            return {}
        with open(path, "r") as f:
            return json.load(f)

    def _save_index_registry(self, registry: Dict[str, List[Dict[str, Any]]]):
        with _write_lock:
            with open(self.data_dir / INDEX_REGISTRY_FILE, "w") as f:
                json.dump(registry, f, indent=2)

    def _check_unique(
        self,
        collection: str,
        items: List[Dict[str, Any]],
        indexes: Optional[List[Dict[str, Any]]] = None,
    ):
        if indexes is None:
            indexes = self._load_index_registry().get(collection, [])
        for index in indexes:
            if not index.get("unique"):
                continue
            seen = set()
            for item in items:
                value = item.get(index["field"])
                if value is None:
                    continue
                key = value.lower() if index.get("case_insensitive") and isinstance(value, str) else value
                if key in seen:
                    raise DuplicateKeyError(
                        f"Duplicate value {value!r} for unique index {index['name']}"
                    )
                seen.add(key)

    async def create_index(
        self,
        collection: str,
        field: str,
        unique: bool = False,
        multikey: bool = False,
        case_insensitive: bool = False,
    ) -> IndexSpec:
        spec = IndexSpec(
            collection=validate_collection_name(collection),
            field=validate_field_name(field),
            unique=unique,
            multikey=multikey,
            case_insensitive=case_insensitive,
        )
        registry = self._load_index_registry()
        indexes = [i for i in registry.get(collection, []) if i["name"] != spec.name]
        indexes.append(spec.to_dict())
        if unique:
            # Existing contents must already satisfy the new constraint
            self._check_unique(collection, self._load_all(collection), [spec.to_dict()])
        registry[collection] = indexes
        self._save_index_registry(registry)
        return spec

    async def list_indexes(self, collection: str) -> List[Dict[str, Any]]:
        return list(self._load_index_registry().get(collection, []))

    # ==================== QUERIES ====================

    async def list_collections(self) -> List[str]:
        return sorted(
            p.stem for p in self.data_dir.glob("*.json")
            if not p.name.startswith("_")
        )

    async def find(self, collection: str, **criteria: Any) -> List[Dict[str, Any]]:
        items = self._load_all(collection)
        for key, value in criteria.items():
            items = [item for item in items if item.get(key) == value]
        return items

    async def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        for item in self._load_all(collection):
            if item.get("id") == document_id:
                return item
        return None

    async def find_by_email(self, collection: str, email: str) -> Optional[Dict[str, Any]]:
        target = (email or "").strip().lower()
        for item in self._load_all(collection):
            if str(item.get("email") or "").strip().lower() == target:
                return item
        return None

    async def count(self, collection: str) -> int:
        return len(self._load_all(collection))

    # ==================== WRITES ====================

    async def insert_one(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        document = dict(document)
        document.setdefault("id", str(uuid.uuid4()))
        items = self._load_all(collection)
        if any(item.get("id") == document["id"] for item in items):
            raise DuplicateKeyError(f"Document {document['id']} already exists in {collection}")
        items.append(document)
        self._save_all(collection, items)
        return document

    async def insert_many(self, collection: str, documents: Sequence[Dict[str, Any]]) -> int:
        items = self._load_all(collection)
        ids = {item.get("id") for item in items}
        for document in documents:
            document = dict(document)
            document.setdefault("id", str(uuid.uuid4()))
            if document["id"] in ids:
                raise DuplicateKeyError(f"Document {document['id']} already exists in {collection}")
            ids.add(document["id"])
            items.append(document)
        self._save_all(collection, items)
        return len(documents)

    async def update_one(
        self, collection: str, document_id: str, updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        items = self._load_all(collection)
        for i, item in enumerate(items):
            if item.get("id") == document_id:
                updated = {**item, **updates, "updatedAt": now_iso()}
                items[i] = updated
                self._save_all(collection, items)
                return updated
        return None

    async def replace_collection(self, collection: str, documents: Sequence[Dict[str, Any]]) -> int:
        items = []
        for document in documents:
            document = dict(document)
            document.setdefault("id", str(uuid.uuid4()))
            items.append(document)
        self._save_all(collection, items)
        return len(items)

    async def drop(self, collection: str) -> bool:
        path = self._path(collection)
        existed = path.exists()
        path.unlink(missing_ok=True)
        registry = self._load_index_registry()
        if registry.pop(collection, None) is not None:
            self._save_index_registry(registry)
            existed = True
        return existed

    # ==================== LOCKING ====================

    @asynccontextmanager
    async def maintenance_lock(self, name: str) -> AsyncIterator[None]:
        lock_path = self.data_dir / f"_{validate_collection_name(name)}.lock"
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise MaintenanceLockError(
                f"Maintenance lock '{name}' is held by another process",
                details={"lock": name},
            )
        try:
            os.write(fd, f"{os.getpid()} {now_iso()}".encode())
            os.close(fd)
            yield
        finally:
            lock_path.unlink(missing_ok=True)
