"""
Document store selection.

``STORAGE_BACKEND=postgres`` (default) uses the JSONB table through an async
session; ``STORAGE_BACKEND=file`` uses JSON files under ``DATA_DIR``.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from config import get_settings
from database import get_engine, get_session_factory
from services.db_storage import PostgresDocumentStore
from services.storage import DocumentStore, FileDocumentStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_document_store() -> AsyncIterator[DocumentStore]:
    """Open the configured store for the duration of a request or batch run."""
    settings = get_settings()
    if settings.STORAGE_BACKEND == "file":
        yield FileDocumentStore(settings.data_path)
        return

    async with get_session_factory()() as session:
        yield PostgresDocumentStore(session, engine=get_engine())


async def get_document_store() -> AsyncIterator[DocumentStore]:
    """FastAPI dependency yielding the configured document store."""
    async with open_document_store() as store:
        yield store
