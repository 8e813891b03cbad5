"""
ChartRecall Database Module

Database components:
- PostgreSQL with pgvector integration
- SQLAlchemy models for the patient record and summary tiers
- Connection management and the structured store
"""

from chartrecall.db.models import (
    EMBEDDING_DIMENSION,
    Base,
    Document,
    DocumentChunk,
    Encounter,
    Patient,
    SummaryRecordRow,
)
from chartrecall.db.postgres import (
    MAX_OVERFLOW,
    POOL_RECYCLE,
    POOL_SIZE,
    check_database_health,
    close_db,
    get_db_session,
    get_engine,
    get_session_maker,
    init_db,
)

__all__ = [
    # Base
    "Base",
    # Models
    "Patient",
    "Encounter",
    "Document",
    "DocumentChunk",
    "SummaryRecordRow",
    # Constants
    "EMBEDDING_DIMENSION",
    "POOL_SIZE",
    "MAX_OVERFLOW",
    "POOL_RECYCLE",
    # Functions
    "get_db_session",
    "get_engine",
    "get_session_maker",
    "init_db",
    "close_db",
    "check_database_health",
]
