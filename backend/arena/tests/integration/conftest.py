from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from arena.logic.outcome import SettlementPolicy
from arena.session.match_service import MatchService
from arena.session.registry import EntityRegistry
from arena.session.settlement import SettlementService
from arena.tests.helpers import FakeClock, SeededArena, seed_arena
from shared.db import Database, SqliteEntityRepository, SqliteMatchRepository

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def db(tmp_path: Path):
    database = Database(tmp_path / "arena.db")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def entities(db: Database) -> SqliteEntityRepository:
    return SqliteEntityRepository(db)


@pytest.fixture
def matches(db: Database) -> SqliteMatchRepository:
    return SqliteMatchRepository(db)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> SettlementPolicy:
    return SettlementPolicy()


@pytest.fixture
def settlement(entities: SqliteEntityRepository, matches: SqliteMatchRepository, clock: FakeClock) -> SettlementService:
    return SettlementService(entities, matches, max_attempts=5, clock=clock)


@pytest.fixture
def match_service(
    entities: SqliteEntityRepository,
    matches: SqliteMatchRepository,
    settlement: SettlementService,
    policy: SettlementPolicy,
    clock: FakeClock,
) -> MatchService:
    return MatchService(entities, matches, settlement, policy=policy, clock=clock)


@pytest.fixture
def registry(entities: SqliteEntityRepository, clock: FakeClock) -> EntityRegistry:
    return EntityRegistry(entities, clock=clock)


@pytest.fixture
async def arena(registry: EntityRegistry) -> SeededArena:
    return await seed_arena(registry)
