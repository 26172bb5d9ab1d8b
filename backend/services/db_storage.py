"""
Membership Document Storage - PostgreSQL Backend

PostgreSQL-backed implementation of ``DocumentStore``. Every collection
lives in the ``membership_documents`` JSONB table; per-collection indexes
are partial expression indexes, and batch updates run in one transaction.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from sqlalchemy import select, delete, func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from database.document_models import MembershipDocumentDB
from identity.errors import MaintenanceLockError
from services.storage import (
    DocumentStore, DocumentWrite, WriteOutcome, IndexSpec,
    StorageError, DuplicateKeyError,
    validate_collection_name, validate_field_name, now_iso,
)

logger = logging.getLogger(__name__)

TABLE_NAME = MembershipDocumentDB.__tablename__


class PostgresDocumentStore(DocumentStore):
    """Document store over a single JSONB table."""

    backend_name = "postgres"

    def __init__(self, session: AsyncSession, engine: Optional[AsyncEngine] = None):
        self.session = session
        self.engine = engine or session.bind

    # ==================== HELPERS ====================

    async def _commit(self):
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise DuplicateKeyError(str(e.orig)) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Database write failed: {e}")
            raise StorageError(str(e)) from e

    async def _get_row(self, collection: str, document_id: str) -> Optional[MembershipDocumentDB]:
        result = await self.session.execute(
            select(MembershipDocumentDB)
            .where(
                MembershipDocumentDB.collection == collection,
                MembershipDocumentDB.id == str(document_id),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _to_row(collection: str, document: Dict[str, Any]) -> MembershipDocumentDB:
        document = dict(document)
        document.setdefault("id", str(uuid.uuid4()))
        document["id"] = str(document["id"])
        return MembershipDocumentDB(collection=collection, id=document["id"], body=document)

    # ==================== QUERIES ====================

    async def list_collections(self) -> List[str]:
        result = await self.session.execute(select(MembershipDocumentDB.collection).distinct())
        return sorted(row[0] for row in result.all())

    async def find(self, collection: str, **criteria: Any) -> List[Dict[str, Any]]:
        query = select(MembershipDocumentDB).where(MembershipDocumentDB.collection == collection)
        if criteria:
            query = query.where(MembershipDocumentDB.body.contains(criteria))
        query = query.order_by(MembershipDocumentDB.created_at, MembershipDocumentDB.id)
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return [row.to_dict() for row in result.scalars().all()]

    async def get(self, collection: str, document_id: str) -> Optional[Dict[str, Any]]:
        row = await self._get_row(collection, document_id)
        return row.to_dict() if row else None

    async def find_by_email(self, collection: str, email: str) -> Optional[Dict[str, Any]]:
        result = await self.session.execute(
            select(MembershipDocumentDB)
            .where(
                MembershipDocumentDB.collection == collection,
                func.lower(MembershipDocumentDB.body["email"].astext) == (email or "").strip().lower(),
            )
            .order_by(MembershipDocumentDB.created_at)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return row.to_dict() if row else None

    async def count(self, collection: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(MembershipDocumentDB)
            .where(MembershipDocumentDB.collection == collection)
        )
        return result.scalar() or 0

    # ==================== WRITES ====================

    async def insert_one(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        row = self._to_row(validate_collection_name(collection), document)
        self.session.add(row)
        await self._commit()
        return row.to_dict()

    async def insert_many(self, collection: str, documents: Sequence[Dict[str, Any]]) -> int:
        validate_collection_name(collection)
        self.session.add_all([self._to_row(collection, d) for d in documents])
        await self._commit()
        return len(documents)

    async def update_one(
        self, collection: str, document_id: str, updates: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        row = await self._get_row(collection, document_id)
        if row is None:
            return None
        row.body = {**row.body, **updates, "updatedAt": now_iso()}
        await self._commit()
        return row.to_dict()

    async def replace_collection(self, collection: str, documents: Sequence[Dict[str, Any]]) -> int:
        validate_collection_name(collection)
        try:
            await self.session.execute(
                delete(MembershipDocumentDB)
                .where(MembershipDocumentDB.collection == collection)
                .execution_options(synchronize_session=False)
            )
            self.session.expunge_all()
            self.session.add_all([self._to_row(collection, d) for d in documents])
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise StorageError(str(e)) from e
        await self._commit()
        return len(documents)

    async def bulk_update(self, writes: Sequence[DocumentWrite]) -> List[WriteOutcome]:
        """Apply every write in one transaction; on failure nothing is applied."""
        try:
            for write in writes:
                row = await self._get_row(write.collection, write.document_id)
                if row is None:
                    raise StorageError(f"Document {write.document_id} not found in {write.collection}")
                row.body = {**row.body, **write.updates, "updatedAt": now_iso()}
            await self.session.commit()
        except (StorageError, SQLAlchemyError) as e:
            await self.session.rollback()
            logger.error(f"Batch update of {len(writes)} documents rolled back: {e}")
            return [WriteOutcome(write=w, ok=False, error=str(e)) for w in writes]
        return [WriteOutcome(write=w, ok=True) for w in writes]

    async def drop(self, collection: str) -> bool:
        validate_collection_name(collection)
        result = await self.session.execute(
            delete(MembershipDocumentDB)
            .where(MembershipDocumentDB.collection == collection)
            .execution_options(synchronize_session=False)
        )
        existed = (result.rowcount or 0) > 0
        for index in await self.list_indexes(collection):
            await self.session.execute(text(f'DROP INDEX IF EXISTS "{index["name"]}"'))
            existed = True
        self.session.expunge_all()
        await self._commit()
        return existed

    # ==================== INDEXES ====================

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
        if unique and multikey:
            raise ValueError("A multikey index cannot be unique")

        # Names are validated above, so inlining them into DDL is safe
        if multikey:
            using, expression = "USING GIN ", f"((body->'{field}'))"
        elif case_insensitive:
            using, expression = "", f"(lower(body->>'{field}'))"
        else:
            using, expression = "", f"((body->>'{field}'))"
        unique_sql = "UNIQUE " if unique else ""

        await self.session.execute(text(
            f'CREATE {unique_sql}INDEX IF NOT EXISTS "{spec.name}" '
            f"ON {TABLE_NAME} {using}{expression} "
            f"WHERE collection = '{collection}'"
        ))
        await self._commit()
        logger.info(f"Index {spec.name} ready on {collection}.{field}")
        return spec

    async def list_indexes(self, collection: str) -> List[Dict[str, Any]]:
        prefix = IndexSpec(collection=collection, field="x").name[:-1]
        result = await self.session.execute(
            text("SELECT indexname, indexdef FROM pg_indexes WHERE tablename = :table"),
            {"table": TABLE_NAME},
        )
        return [
            {"name": name, "definition": definition}
            for name, definition in result.all()
            if name.startswith(prefix)
        ]

    # ==================== LOCKING ====================

    @asynccontextmanager
    async def maintenance_lock(self, name: str) -> AsyncIterator[None]:
        # Advisory locks are per connection, so hold one connection throughout
        async with self.engine.connect() as conn:
            acquired = (await conn.execute(
                text("SELECT pg_try_advisory_lock(hashtext(:name))"), {"name": name}
            )).scalar()
            if not acquired:
                raise MaintenanceLockError(
                    f"Maintenance lock '{name}' is held by another session",
                    details={"lock": name},
                )
            try:
                yield
            finally:
                await conn.execute(text("SELECT pg_advisory_unlock(hashtext(:name))"), {"name": name})
