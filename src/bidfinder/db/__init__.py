"""
Database Package

Database models, connection management, and data persistence layer.
"""
from src.bidfinder.db.base import Base
from src.bidfinder.db.session import (
    get_engine,
    get_session_factory,
    get_db_session,
    close_connections,
    create_all_tables,
    with_retry,
)
from src.bidfinder.db.models import ProcurementOpportunity, QueryFreshness
from src.bidfinder.db.repository import (
    BaseRepository,
    ProcurementRecordRepository,
    QueryFreshnessRepository,
)

__all__ = [
    # Base
    "Base",
    # Session management
    "get_engine",
    "get_session_factory",
    "get_db_session",
    "close_connections",
    "create_all_tables",
    "with_retry",
    # Models
    "ProcurementOpportunity",
    "QueryFreshness",
    # Repositories
    "BaseRepository",
    "ProcurementRecordRepository",
    "QueryFreshnessRepository",
]
