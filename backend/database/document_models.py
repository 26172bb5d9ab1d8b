"""
Membership Documents - Database Models

All membership collections (legacy accounts, legacy profiles, canonical
identities, lodges, grants and snapshots) share one JSONB table keyed by
(collection, id). Collection-specific indexes are created as partial
expression indexes by ``services.db_storage``.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import Column, String, DateTime, Index
from sqlalchemy.dialects.postgresql import JSONB

from database.connection import Base


class MembershipDocumentDB(Base):
    __tablename__ = "membership_documents"

    collection = Column(String(255), primary_key=True)
    id = Column(String(64), primary_key=True)
    body = Column(JSONB, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_membership_documents_collection", "collection"),
    )

    def to_dict(self) -> Dict[str, Any]:
        document = dict(self.body or {})
        document["id"] = self.id
        return document
