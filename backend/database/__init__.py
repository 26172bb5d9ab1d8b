from .connection import get_db, get_engine, get_session_factory, init_db, dispose_engine, Base

# Import document model to ensure it is registered with Base
from .document_models import MembershipDocumentDB

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'init_db', 'dispose_engine', 'Base',
    'MembershipDocumentDB',
]
