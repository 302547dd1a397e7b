from .connection import get_engine, get_session_factory, init_db, dispose_engine, Base

# Import ledger models to ensure they are registered with Base
from .ledger_models import ReconcilableItemDB, OpenDocumentDB, AllocationDB

__all__ = [
    'get_engine', 'get_session_factory', 'init_db', 'dispose_engine', 'Base',
    # Ledger models
    'ReconcilableItemDB', 'OpenDocumentDB', 'AllocationDB',
]
