"""Data access layer: repository interfaces and shared persistence models."""

from shared.dal.entity_repository import EntityRepository
from shared.dal.exceptions import DuplicateRecordError, PersistenceError, RepositoryError, VersionConflictError
from shared.dal.match_repository import MatchRepository
from shared.dal.models import Bot, Game, MatchAggregate, MatchRecord, User

__all__ = [
    "Bot",
    "DuplicateRecordError",
    "EntityRepository",
    "Game",
    "MatchAggregate",
    "MatchRecord",
    "MatchRepository",
    "PersistenceError",
    "RepositoryError",
    "User",
    "VersionConflictError",
]
