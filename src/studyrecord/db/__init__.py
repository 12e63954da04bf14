"""Database module for SQLite persistence.

Provides:
- Database connection management (one transaction per get_db block)
- Schema initialization
- Repository functions for courses, degrees, areas and mappings
"""

from studyrecord.db.database import get_db, init_db

__all__ = ["get_db", "init_db"]
