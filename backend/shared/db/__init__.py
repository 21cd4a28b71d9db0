"""SQLite database layer: connection management and repository implementations."""

from shared.db.connection import Database
from shared.db.entity_repository import SqliteEntityRepository
from shared.db.match_repository import SqliteMatchRepository

__all__ = [
    "Database",
    "SqliteEntityRepository",
    "SqliteMatchRepository",
]
