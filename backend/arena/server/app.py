from __future__ import annotations

import contextlib
from http import HTTPStatus
from typing import TYPE_CHECKING

import structlog
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Route

from arena.logic.exceptions import EntityNotFound, NotFoundError
from arena.server.settings import ArenaSettings
from arena.session.match_service import MatchService
from arena.session.registry import EntityRegistry
from arena.session.settlement import SettlementService
from arena.session.workers import SettlementWorkerPool
from arena.views.history import bot_history, public_match, recent_matches, user_history
from arena.views.leaderboard import bot_leaderboard, user_leaderboard
from arena.views.statistics import match_statistics, statistics_by_game
from shared.dal.models import Difficulty, EntityKind
from shared.db import Database, SqliteEntityRepository, SqliteMatchRepository
from shared.logging import setup_logging
from shared.validators import parse_page

logger = structlog.get_logger()

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from pydantic import BaseModel
    from starlette.requests import Request

    from shared.dal import EntityRepository, MatchRepository


def _json_list(key: str, items: list[BaseModel], **extra: object) -> JSONResponse:
    return JSONResponse({key: [item.model_dump(mode="json") for item in items], **extra})


def _bad_request(error: ValueError) -> JSONResponse:
    return JSONResponse({"error": str(error)}, status_code=HTTPStatus.BAD_REQUEST)


def _page(request: Request) -> tuple[int, int]:
    settings: ArenaSettings = request.app.state.settings
    return parse_page(
        request.query_params.get("limit"),
        request.query_params.get("offset"),
        default_limit=settings.default_page_size,
        max_limit=settings.max_page_size,
    )


async def health(request: Request) -> JSONResponse:
    matches: MatchRepository = request.app.state.matches
    worker_pool: SettlementWorkerPool = request.app.state.worker_pool
    pending = await matches.list_pending_settlement(limit=1)
    return JSONResponse(
        {
            "status": "ok",
            "settlement_backlog": bool(pending),
            "workers_running": worker_pool.running,
        },
    )


async def get_bot_leaderboard(request: Request) -> JSONResponse:
    entities: EntityRepository = request.app.state.entities
    try:
        limit, offset = _page(request)
    except ValueError as e:
        return _bad_request(e)
    game_id = request.query_params.get("game_id") or None
    entries = await bot_leaderboard(entities, game_id=game_id, limit=limit, offset=offset)
    return _json_list("entries", entries, limit=limit, offset=offset)


async def get_user_leaderboard(request: Request) -> JSONResponse:
    entities: EntityRepository = request.app.state.entities
    try:
        limit, offset = _page(request)
    except ValueError as e:
        return _bad_request(e)
    entries = await user_leaderboard(entities, limit=limit, offset=offset)
    return _json_list("entries", entries, limit=limit, offset=offset)


async def get_recent_matches(request: Request) -> JSONResponse:
    matches: MatchRepository = request.app.state.matches
    try:
        limit, _ = _page(request)
    except ValueError as e:
        return _bad_request(e)
    game_id = request.query_params.get("game_id") or None
    return _json_list("matches", await recent_matches(matches, game_id=game_id, limit=limit))


async def get_match(request: Request) -> JSONResponse:
    matches: MatchRepository = request.app.state.matches
    match = await public_match(matches, request.path_params["match_id"])
    return JSONResponse(match.model_dump(mode="json"))


async def get_user_matches(request: Request) -> JSONResponse:
    matches: MatchRepository = request.app.state.matches
    try:
        limit, offset = _page(request)
    except ValueError as e:
        return _bad_request(e)
    history = await user_history(matches, request.path_params["user_id"], limit=limit, offset=offset)
    return _json_list("matches", history, limit=limit, offset=offset)


async def get_bot_matches(request: Request) -> JSONResponse:
    matches: MatchRepository = request.app.state.matches
    try:
        limit, offset = _page(request)
    except ValueError as e:
        return _bad_request(e)
    history = await bot_history(matches, request.path_params["bot_id"], limit=limit, offset=offset)
    return _json_list("matches", history, limit=limit, offset=offset)


async def get_games(request: Request) -> JSONResponse:
    """Active games; `difficulty` filters, `sort=popular` ranks by bots then matches."""
    entities: EntityRepository = request.app.state.entities
    sort = request.query_params.get("sort") or None
    if sort not in (None, "popular"):
        return _bad_request(ValueError(f"unknown sort {sort!r}"))
    try:
        limit, _ = _page(request)
        difficulty = Difficulty(request.query_params["difficulty"]) if request.query_params.get("difficulty") else None
    except ValueError as e:
        return _bad_request(e)
    if sort == "popular":
        games = await entities.list_popular_games(limit, difficulty=difficulty)
    else:
        games = await entities.list_games(difficulty=difficulty)
    return _json_list("games", games)


async def get_game_bots(request: Request) -> JSONResponse:
    entities: EntityRepository = request.app.state.entities
    game_id = request.path_params["game_id"]
    if await entities.get_game(game_id) is None:
        raise EntityNotFound(EntityKind.GAME.value, game_id)
    return _json_list("bots", await entities.list_eligible_bots(game_id))


async def get_user_bots(request: Request) -> JSONResponse:
    entities: EntityRepository = request.app.state.entities
    return _json_list("bots", await entities.list_bots_by_owner(request.path_params["user_id"]))


async def get_statistics(request: Request) -> JSONResponse:
    matches: MatchRepository = request.app.state.matches
    stats = await match_statistics(matches, request.query_params.get("game_id") or None)
    return JSONResponse(stats.model_dump(mode="json"))


async def get_game_statistics(request: Request) -> JSONResponse:
    matches: MatchRepository = request.app.state.matches
    return _json_list("games", await statistics_by_game(matches))


async def _not_found(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=HTTPStatus.NOT_FOUND)


def create_app(
    settings: ArenaSettings | None = None,
    db: Database | None = None,
) -> Starlette:
    """Build the arena application.

    Exposes the read API and runs the settlement worker pool for the
    lifetime of the app. When no database is passed in, the app opens one
    from settings and owns its lifecycle.
    """
    if settings is None:  # pragma: no cover
        settings = ArenaSettings()

    owned_db: Database | None = None
    if db is None:
        db = Database(settings.database_path)
        db.connect()
        owned_db = db

    entities = SqliteEntityRepository(db)
    matches = SqliteMatchRepository(db)
    settlement = SettlementService(entities, matches, max_attempts=settings.max_update_retries)
    match_service = MatchService(entities, matches, settlement, policy=settings.settlement_policy)
    registry = EntityRegistry(entities, max_attempts=settings.max_update_retries)
    worker_pool = SettlementWorkerPool(
        match_service,
        workers=settings.settlement_workers,
        repair_interval=settings.repair_interval_seconds,
        repair_batch_size=settings.repair_batch_size,
    )

    routes = [
        Route("/health", health, methods=["GET"], name="health"),
        Route("/leaderboard/bots", get_bot_leaderboard, methods=["GET"], name="bot_leaderboard"),
        Route("/leaderboard/users", get_user_leaderboard, methods=["GET"], name="user_leaderboard"),
        Route("/matches/recent", get_recent_matches, methods=["GET"], name="recent_matches"),
        Route("/matches/{match_id}", get_match, methods=["GET"], name="match"),
        Route("/users/{user_id}/matches", get_user_matches, methods=["GET"], name="user_matches"),
        Route("/bots/{bot_id}/matches", get_bot_matches, methods=["GET"], name="bot_matches"),
        Route("/games", get_games, methods=["GET"], name="games"),
        Route("/games/{game_id}/bots", get_game_bots, methods=["GET"], name="game_bots"),
        Route("/users/{user_id}/bots", get_user_bots, methods=["GET"], name="user_bots"),
        Route("/statistics", get_statistics, methods=["GET"], name="statistics"),
        Route("/statistics/games", get_game_statistics, methods=["GET"], name="game_statistics"),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncGenerator[None]:
        worker_pool.start()
        yield
        await worker_pool.stop()
        if owned_db is not None:
            owned_db.close()

    app = Starlette(
        routes=routes,
        lifespan=lifespan,
        exception_handlers={NotFoundError: _not_found},
    )
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.cors_origins,
        allow_methods=["GET"],
        allow_headers=["Content-Type"],
    )
    app.state.settings = settings
    app.state.db = db
    app.state.entities = entities
    app.state.matches = matches
    app.state.match_service = match_service
    app.state.registry = registry
    app.state.worker_pool = worker_pool

    logger.info("arena server ready")
    return app


def get_app() -> Starlette:  # pragma: no cover
    """Factory function for uvicorn --factory arena.server.app:get_app."""
    s = ArenaSettings()
    setup_logging(log_dir=s.log_dir)
    return create_app(settings=s)
