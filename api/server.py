"""
api/server.py - FastAPI server for playchain.

Endpoints:
    POST   /tournaments                         Create a tournament
    GET    /tournaments                         List (offset, limit, active, completed)
    GET    /tournaments/{id}                    Tournament details
    POST   /tournaments/{id}/join               Register a player
    POST   /tournaments/{id}/status             Move the lifecycle forward
    POST   /tournaments/{id}/winners            Record final placings
    POST   /tournaments/{id}/distribute         Rank by score and pay out
    POST   /tournaments/{id}/record             Snapshot into history
    GET    /tournaments/{id}/history            Recorded snapshot
    GET    /tournaments/{id}/prizes             Payout table at the current field size
    GET    /tournaments/{id}/stats              Participation and completion analytics
    GET    /tournaments/schedule                Tournaments starting in a window (start, end)
    GET    /tournaments/recommendations/{addr}  Open tournaments near the player's average bet
    GET    /tournaments/player/{addr}/history   A player's tournament history

    GET    /stats/player/{addr}                 Player stats
    GET    /stats/player/{addr}/progress        Level / XP progress
    GET    /stats/leaderboard                   Player leaderboard
    GET    /stats/tournaments                   Tournament statistics
    GET    /stats/trends                        Per-day trends (start, end)
    GET    /stats/summary                       Player/prize totals
    GET    /stats/global                        Player/game totals and top player

    GET    /rules/categories                    Category catalog
    GET    /rules/categories/{id}               One category
    POST   /rules/validate                      Check parameters against a category
    GET    /rules/recommend/{addr}              Category recommendation

    GET    /achievements                        Achievement catalog
    GET    /achievements/player/{addr}          Player progress per achievement
    POST   /achievements/check/{addr}           Report newly unlocked achievements
    GET    /achievements/leaderboard            Players by achievement points

    GET    /notifications/{addr}                Inbox (limit, offset, unread_only, types)
    POST   /notifications/{addr}/read           Mark notifications read
    GET    /notifications/{addr}/preferences    Notification preferences
    PUT    /notifications/{addr}/preferences    Update preferences

    POST   /game/result                         Record a settled game
    GET    /game/history/{addr}                 A player's game log
    GET    /token/balance/{addr}                Token balance (chain pass-through)

    GET    /health                              Server health check
    POST   /admin/sweep                         Run the lifecycle sweep now

Live notifications:
    WS     /ws/notifications/{addr}             Unread on connect, then live pushes

Amounts are serialized as decimal strings. Errors come back as
{"status": "fail"|"error", "error": message, "fields": [...]}.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from playchain.config import PlaychainConfig, get_operator_key, load_config
from playchain.contract import load_operator_account
from playchain.errors import (
    CapacityError,
    DuplicateError,
    GatewayError,
    NotFoundError,
    PlaychainError,
    ValidationError,
)
from playchain.models import (
    GameOutcome,
    GameRecord,
    Tournament,
    TournamentHistory,
    TournamentParams,
    TournamentRules,
    TournamentStatus,
    Winner,
    normalize_address,
    to_iso,
    utcnow,
)
from playchain.notifications import BROADCAST, Notification, NotificationDispatcher, NotificationPreference
from playchain.registry import DEFAULT_CATEGORY
from playchain.rules import TournamentCategory, default_rules
from playchain.services import Services, build_services, gateway_from_config

from .db import SqliteStore

logger = logging.getLogger(__name__)

# Global service graph, set during lifespan
_services: Services | None = None
_config: PlaychainConfig | None = None


def get_services() -> Services:
    assert _services is not None, "Services not initialized"
    return _services


def get_config() -> PlaychainConfig:
    return _config or PlaychainConfig()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _services, _config
    _config = load_config()
    db_path = getattr(app.state, "db_path", None) or _config.server.db
    store = SqliteStore(db_path)
    logger.info(f"Playchain DB initialized: {db_path} ({sum(store.counts().values())} records)")

    _services = build_services(store, gateway_from_config(_config.chain))
    detach = _manager.attach(_services.notifications)

    _log_startup_config(_config)

    yield
    detach()
    store.close()
    _services = None


def _log_startup_config(config: PlaychainConfig):
    """Log chain configuration on startup so operators can verify env vars."""
    chain = config.chain
    logger.info("=" * 50)
    logger.info("Playchain startup config:")
    logger.info(f"  Chain: {chain.chain_id} | RPC: {chain.rpc_url}")

    if chain.tournament_contract:
        logger.info(f"  Tournament contract: {chain.tournament_contract}")
    else:
        logger.info("  Tournament contract: NOT configured (tournaments are local only)")

    if chain.game_contract:
        logger.info(f"  Game contract: {chain.game_contract}")
    else:
        logger.info("  Game contract: NOT configured (game logs come from /game/result only)")

    if get_operator_key():
        account = load_operator_account(get_operator_key())
        if account:
            logger.info(f"  Operator wallet: {account.address}")
        else:
            logger.warning("  Operator wallet: key set but failed to load!")
    elif chain.enabled:
        logger.warning("  Operator wallet: NOT configured (OPERATOR_PRIVATE_KEY missing)")
        logger.warning("  → Onchain create/join/payout DISABLED, reads still work")

    logger.info(f"  Sweep on request: {config.server.sweep_on_request}")
    logger.info("=" * 50)


app = FastAPI(title="Playchain", lifespan=lifespan)

# Allow the website (and other frontends) to call the API
from starlette.middleware.cors import CORSMiddleware

app.add_middleware(
    CORSMiddleware,
    allow_origins=load_config().server.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ======================================================================
# Error Mapping
# ======================================================================


ERROR_STATUS: list[tuple[type[PlaychainError], int, str]] = [
    (ValidationError, 400, "fail"),
    (NotFoundError, 404, "fail"),
    (CapacityError, 409, "fail"),
    (DuplicateError, 409, "fail"),
    (GatewayError, 502, "error"),
]


@app.exception_handler(PlaychainError)
async def playchain_error_handler(request: Request, exc: PlaychainError) -> JSONResponse:
    status_code, status = 500, "error"
    for exc_type, code, label in ERROR_STATUS:
        if isinstance(exc, exc_type):
            status_code, status = code, label
            break
    fields = [e.to_dict() for e in getattr(exc, "errors", [])]
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"status": status, "error": str(exc), "fields": fields},
    )


# ======================================================================
# Request/Response Models
# ======================================================================


class RulesModel(BaseModel):
    min_bet: int = 10
    max_bet: int = 100
    time_limit: int = 3600
    max_rounds: int = 100
    allow_rebuys: bool = False


class RulesResponse(BaseModel):
    min_bet: str
    max_bet: str
    time_limit: int
    max_rounds: int
    allow_rebuys: bool


class WinnerModel(BaseModel):
    address: str
    prize: int
    rank: int


class WinnerResponse(BaseModel):
    address: str
    prize: str
    rank: int


class CreateTournamentRequest(BaseModel):
    name: str
    description: str = ""
    start_time: datetime
    entry_fee: int
    prize_pool: int
    min_players: int
    max_players: int
    duration: int | None = None
    category_id: str | None = None
    rules: RulesModel | None = None


class TournamentResponse(BaseModel):
    id: str
    name: str
    description: str
    start_time: str
    end_time: str | None = None
    entry_fee: str
    prize_pool: str
    min_players: int
    max_players: int
    status: str
    players: list[str]
    winners: list[WinnerResponse]
    rules: RulesResponse
    duration: int
    category_id: str | None = None
    chain_id: int | None = None


class TournamentListResponse(BaseModel):
    tournaments: list[TournamentResponse]
    total: int
    offset: int
    limit: int


class TournamentAnalyticsResponse(BaseModel):
    tournament_id: str
    status: str
    total_players: int
    max_players: int
    entry_fee: str
    prize_pool: str
    start_time: str
    end_time: str | None
    participation_rate: float
    completion_rate: float
    collected_fees: str


class ScheduleResponse(BaseModel):
    start: str
    end: str
    tournaments: list[TournamentResponse]


class TournamentRecommendationsResponse(BaseModel):
    address: str
    average_bet: str
    tournaments: list[TournamentResponse]


class JoinRequest(BaseModel):
    address: str
    entry_fee: int


class StatusRequest(BaseModel):
    status: TournamentStatus


class WinnersRequest(BaseModel):
    winners: list[WinnerModel]


class DistributeRequest(BaseModel):
    scores: dict[str, float]


class DistributeResponse(BaseModel):
    tournament_id: str
    winners: list[WinnerResponse]


class PrizeShareResponse(BaseModel):
    rank: int
    amount: str


class PrizePreviewResponse(BaseModel):
    tournament_id: str
    category_id: str
    prize_pool: str
    player_count: int
    shares: list[PrizeShareResponse]


class HistoryResponse(BaseModel):
    tournament_id: str
    name: str
    start_time: str
    end_time: str | None = None
    entry_fee: str
    prize_pool: str
    status: str
    players: list[str]
    winners: list[WinnerResponse]
    player_games: dict[str, int]
    recorded_at: str


class PlayerHistoryResponse(BaseModel):
    address: str
    history: list[HistoryResponse]


class PlayerStatsResponse(BaseModel):
    address: str
    total_games: int
    wins: int
    losses: int
    draws: int
    total_bet_amount: str
    total_win_amount: str
    average_bet: str
    win_rate: float
    highest_win: str
    current_streak: int
    best_streak: int
    best_win_streak: int
    tournaments_played: int
    tournaments_won: int
    last_game_played: str | None = None
    level: int
    experience: int
    rank: str


class ProgressResponse(BaseModel):
    level: int
    experience: int
    next_level_experience: int
    achievements_unlocked: int
    total_achievements: int


class LeaderboardEntryResponse(BaseModel):
    rank: int
    address: str
    score: float
    win_rate: float
    total_games: int
    total_win_amount: str
    tournaments_won: int


class LeaderboardResponse(BaseModel):
    leaderboard: list[LeaderboardEntryResponse]


class PlayerSuccessResponse(BaseModel):
    address: str
    total_prize: str
    tournaments_won: int
    placements: int


class StatisticsResponse(BaseModel):
    total_tournaments: int
    total_players: int
    total_prize_pool: str
    average_players_per_tournament: float
    most_successful_players: list[PlayerSuccessResponse]


class TrendPointResponse(BaseModel):
    date: str
    tournaments: int
    players: int
    prize_pool: str


class TrendsResponse(BaseModel):
    start: str
    end: str
    trends: list[TrendPointResponse]


class SummaryResponse(BaseModel):
    total_players: int
    active_players: int
    total_prize_pool: str
    average_entry_fee: str
    completed_tournaments: int
    active_tournaments: int


class TopPlayerResponse(BaseModel):
    address: str
    wins: int
    total_win_amount: str


class GlobalStatsResponse(BaseModel):
    total_players: int
    total_games_played: int
    total_tournaments: int
    total_prize_pool: str
    most_successful_player: TopPlayerResponse | None


class PrizeTierResponse(BaseModel):
    rank: int
    percentage: float
    min_players: int


class CategoryResponse(BaseModel):
    id: str
    name: str
    tier: str
    description: str
    min_entry_fee: str
    max_entry_fee: str
    min_players: int
    max_players: int
    duration: int
    prize_distribution: list[PrizeTierResponse]
    rules: RulesResponse


class CategoryListResponse(BaseModel):
    categories: list[CategoryResponse]


class ValidateRequest(BaseModel):
    category_id: str
    entry_fee: int
    max_players: int
    duration: int


class FieldErrorResponse(BaseModel):
    field: str
    message: str


class ValidateResponse(BaseModel):
    is_valid: bool
    errors: list[FieldErrorResponse]


class RecommendResponse(BaseModel):
    address: str
    category: CategoryResponse


class AchievementResponse(BaseModel):
    id: str
    name: str
    description: str
    metric: str
    threshold: str
    points: int
    badge: str | None = None
    title: str | None = None


class AchievementListResponse(BaseModel):
    achievements: list[AchievementResponse]


class PlayerAchievementResponse(BaseModel):
    achievement: AchievementResponse
    unlocked: bool
    unlocked_at: str | None = None
    progress: str
    max_progress: str


class PlayerAchievementsResponse(BaseModel):
    address: str
    achievements: list[PlayerAchievementResponse]


class CheckAchievementsResponse(BaseModel):
    address: str
    unlocked: list[AchievementResponse]


class AchievementStandingResponse(BaseModel):
    rank: int
    address: str
    points: int
    unlocked: int


class AchievementLeaderboardResponse(BaseModel):
    leaderboard: list[AchievementStandingResponse]


class NotificationResponse(BaseModel):
    id: str
    type: str
    recipient: str
    title: str
    message: str
    data: dict[str, Any]
    read: bool
    created_at: str


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    total: int


class MarkReadRequest(BaseModel):
    ids: list[str]


class MarkReadResponse(BaseModel):
    marked: int


class PreferenceModel(BaseModel):
    type: str
    enabled: bool = True
    in_app: bool = True
    email: bool = False
    push: bool = False


class PreferencesRequest(BaseModel):
    preferences: list[PreferenceModel]


class PreferencesResponse(BaseModel):
    address: str
    preferences: list[PreferenceModel]


class GameResultRequest(BaseModel):
    player: str
    bet_amount: int
    outcome: GameOutcome
    win_amount: int = 0
    id: str | None = None
    timestamp: datetime | None = None
    tx_hash: str = ""


class GameResponse(BaseModel):
    id: str
    player: str
    bet_amount: str
    win_amount: str
    outcome: str
    timestamp: str
    tx_hash: str


class GameResultResponse(BaseModel):
    game: GameResponse
    stats: PlayerStatsResponse
    unlocked: list[AchievementResponse]


class GameHistoryResponse(BaseModel):
    address: str
    games: list[GameResponse]
    total: int


class BalanceResponse(BaseModel):
    address: str
    balance: str


class StatusChangeResponse(BaseModel):
    tournament_id: str
    previous: str
    current: str


class SweepResponse(BaseModel):
    changes: list[StatusChangeResponse]


class HealthResponse(BaseModel):
    status: str
    chain_enabled: bool
    tournaments: int
    active_tournaments: int
    ws_connections: int


# ======================================================================
# Serialization
# ======================================================================


def _as_utc(value: datetime) -> datetime:
    """Naive datetimes from clients are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _rules_out(rules: TournamentRules) -> dict[str, Any]:
    return {
        "min_bet": str(rules.min_bet),
        "max_bet": str(rules.max_bet),
        "time_limit": rules.time_limit,
        "max_rounds": rules.max_rounds,
        "allow_rebuys": rules.allow_rebuys,
    }


def _winner_out(w: Winner) -> dict[str, Any]:
    return {"address": w.address, "prize": str(w.prize), "rank": w.rank}


def _tournament_out(t: Tournament) -> dict[str, Any]:
    return {
        "id": t.id,
        "name": t.name,
        "description": t.description,
        "start_time": to_iso(t.start_time),
        "end_time": to_iso(t.end_time),
        "entry_fee": str(t.entry_fee),
        "prize_pool": str(t.prize_pool),
        "min_players": t.min_players,
        "max_players": t.max_players,
        "status": t.status.value,
        "players": list(t.players),
        "winners": [_winner_out(w) for w in t.winners],
        "rules": _rules_out(t.rules),
        "duration": t.duration,
        "category_id": t.category_id,
        "chain_id": t.chain_id,
    }


def _history_out(h: TournamentHistory) -> dict[str, Any]:
    return {
        "tournament_id": h.tournament_id,
        "name": h.name,
        "start_time": to_iso(h.start_time),
        "end_time": to_iso(h.end_time),
        "entry_fee": str(h.entry_fee),
        "prize_pool": str(h.prize_pool),
        "status": h.status.value,
        "players": list(h.players),
        "winners": [_winner_out(w) for w in h.winners],
        "player_games": dict(h.player_games),
        "recorded_at": to_iso(h.recorded_at),
    }


def _stats_out(s) -> dict[str, Any]:
    return {
        "address": s.address,
        "total_games": s.total_games,
        "wins": s.wins,
        "losses": s.losses,
        "draws": s.draws,
        "total_bet_amount": str(s.total_bet_amount),
        "total_win_amount": str(s.total_win_amount),
        "average_bet": str(s.average_bet),
        "win_rate": s.win_rate,
        "highest_win": str(s.highest_win),
        "current_streak": s.current_streak,
        "best_streak": s.best_streak,
        "best_win_streak": s.best_win_streak,
        "tournaments_played": s.tournaments_played,
        "tournaments_won": s.tournaments_won,
        "last_game_played": to_iso(s.last_game_played),
        "level": s.level,
        "experience": s.experience,
        "rank": s.rank,
    }


def _category_out(c: TournamentCategory) -> dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "tier": c.tier,
        "description": c.description,
        "min_entry_fee": str(c.min_entry_fee),
        "max_entry_fee": str(c.max_entry_fee),
        "min_players": c.min_players,
        "max_players": c.max_players,
        "duration": c.duration,
        "prize_distribution": [
            {"rank": t.rank, "percentage": t.percentage, "min_players": t.min_players}
            for t in c.prize_distribution
        ],
        "rules": _rules_out(c.rules),
    }


def _achievement_out(a) -> dict[str, Any]:
    return {
        "id": a.id,
        "name": a.name,
        "description": a.description,
        "metric": a.criteria.metric,
        "threshold": str(a.criteria.threshold),
        "points": a.reward.points,
        "badge": a.reward.badge,
        "title": a.reward.title,
    }


def _notification_out(n: Notification) -> dict[str, Any]:
    data = n.to_dict()
    # Payload amounts go out as strings like every other amount
    data["data"] = {
        k: str(v) if k in ("prize", "entry_fee") else v for k, v in data["data"].items()
    }
    return data


def _game_out(g: GameRecord) -> dict[str, Any]:
    return {
        "id": g.id,
        "player": g.player,
        "bet_amount": str(g.bet_amount),
        "win_amount": str(g.win_amount),
        "outcome": g.outcome.value,
        "timestamp": to_iso(g.timestamp),
        "tx_hash": g.tx_hash,
    }


def _sweep(services: Services) -> None:
    """Lifecycle sweep, run before tournament reads and joins."""
    if get_config().server.sweep_on_request:
        services.registry.reconcile()


# ======================================================================
# Tournament Endpoints
# ======================================================================


@app.post("/tournaments", response_model=TournamentResponse)
def create_tournament(req: CreateTournamentRequest) -> dict[str, Any]:
    services = get_services()
    if req.rules is not None:
        rules = TournamentRules(**req.rules.model_dump())
    elif req.category_id in services.rules.categories:
        base = services.rules.get_category(req.category_id).rules
        rules = TournamentRules(**base.to_dict())
    else:
        rules = default_rules()

    params = TournamentParams(
        name=req.name,
        description=req.description,
        start_time=_as_utc(req.start_time),
        entry_fee=req.entry_fee,
        prize_pool=req.prize_pool,
        min_players=req.min_players,
        max_players=req.max_players,
        rules=rules,
        category_id=req.category_id,
    )
    if req.duration is not None:
        params.duration = req.duration
    tournament = services.registry.create_tournament(params)
    return _tournament_out(tournament)


@app.get("/tournaments", response_model=TournamentListResponse)
def list_tournaments(
    offset: int = Query(0, ge=0),
    limit: int = Query(10, ge=0, le=100),
    active: bool = False,
    completed: bool = False,
) -> dict[str, Any]:
    services = get_services()
    _sweep(services)
    registry = services.registry
    items = registry.get_all_tournaments(active=active, completed=completed, offset=offset, limit=limit)
    return {
        "tournaments": [_tournament_out(t) for t in items],
        "total": registry.count_tournaments(active=active, completed=completed),
        "offset": offset,
        "limit": limit,
    }


@app.get("/tournaments/schedule", response_model=ScheduleResponse)
def tournament_schedule(start: datetime, end: datetime) -> dict[str, Any]:
    services = get_services()
    _sweep(services)
    start, end = _as_utc(start), _as_utc(end)
    items = services.registry.get_tournament_schedule(start, end)
    return {
        "start": to_iso(start),
        "end": to_iso(end),
        "tournaments": [_tournament_out(t) for t in items],
    }


@app.get("/tournaments/recommendations/{address}", response_model=TournamentRecommendationsResponse)
def tournament_recommendations(address: str, limit: int = Query(5, ge=0, le=50)) -> dict[str, Any]:
    services = get_services()
    _sweep(services)
    stats = services.stats.get_player_stats(address)
    items = services.registry.get_tournament_recommendations(stats.address, stats.average_bet, limit)
    return {
        "address": stats.address,
        "average_bet": str(stats.average_bet),
        "tournaments": [_tournament_out(t) for t in items],
    }


@app.get("/tournaments/player/{address}/history", response_model=PlayerHistoryResponse)
def player_tournament_history(address: str) -> dict[str, Any]:
    services = get_services()
    history = services.history.get_player_history(address)
    return {"address": normalize_address(address), "history": [_history_out(h) for h in history]}


@app.get("/tournaments/{tournament_id}", response_model=TournamentResponse)
def get_tournament(tournament_id: str) -> dict[str, Any]:
    services = get_services()
    _sweep(services)
    tournament = services.registry.get_tournament(tournament_id)
    if tournament is None:
        raise NotFoundError(f"Tournament not found: {tournament_id}")
    return _tournament_out(tournament)


@app.post("/tournaments/{tournament_id}/join", response_model=TournamentResponse)
def join_tournament(tournament_id: str, req: JoinRequest) -> dict[str, Any]:
    services = get_services()
    _sweep(services)
    tournament = services.registry.join_tournament(tournament_id, req.address, req.entry_fee)
    return _tournament_out(tournament)


@app.post("/tournaments/{tournament_id}/status", response_model=TournamentResponse)
def update_status(tournament_id: str, req: StatusRequest) -> dict[str, Any]:
    services = get_services()
    tournament = services.registry.update_status(tournament_id, req.status)
    return _tournament_out(tournament)


@app.post("/tournaments/{tournament_id}/winners", response_model=TournamentResponse)
def set_winners(tournament_id: str, req: WinnersRequest) -> dict[str, Any]:
    services = get_services()
    winners = [Winner(address=w.address, prize=w.prize, rank=w.rank) for w in req.winners]
    tournament = services.registry.set_winners(tournament_id, winners)
    return _tournament_out(tournament)


@app.post("/tournaments/{tournament_id}/distribute", response_model=DistributeResponse)
def distribute_prizes(tournament_id: str, req: DistributeRequest) -> dict[str, Any]:
    services = get_services()
    winners = services.registry.distribute_prizes(tournament_id, req.scores)
    return {"tournament_id": tournament_id, "winners": [_winner_out(w) for w in winners]}


@app.post("/tournaments/{tournament_id}/record", response_model=HistoryResponse)
def record_tournament(tournament_id: str) -> dict[str, Any]:
    services = get_services()
    return _history_out(services.history.record_tournament(tournament_id))


@app.get("/tournaments/{tournament_id}/history", response_model=HistoryResponse)
def tournament_history(tournament_id: str) -> dict[str, Any]:
    services = get_services()
    snapshot = services.history.get_tournament_history(tournament_id)
    if snapshot is None:
        raise NotFoundError(f"No history recorded for tournament {tournament_id}")
    return _history_out(snapshot)


@app.get("/tournaments/{tournament_id}/prizes", response_model=PrizePreviewResponse)
def prize_preview(tournament_id: str) -> dict[str, Any]:
    services = get_services()
    tournament = services.registry.get_tournament(tournament_id)
    if tournament is None:
        raise NotFoundError(f"Tournament not found: {tournament_id}")
    category = tournament.category_id or DEFAULT_CATEGORY
    shares = services.rules.calculate_prize_distribution(
        category, tournament.prize_pool, len(tournament.players)
    )
    return {
        "tournament_id": tournament.id,
        "category_id": category,
        "prize_pool": str(tournament.prize_pool),
        "player_count": len(tournament.players),
        "shares": [{"rank": s.rank, "amount": str(s.amount)} for s in shares],
    }


@app.get("/tournaments/{tournament_id}/stats", response_model=TournamentAnalyticsResponse)
def tournament_analytics(tournament_id: str) -> dict[str, Any]:
    services = get_services()
    _sweep(services)
    a = services.registry.get_tournament_analytics(tournament_id)
    return {
        "tournament_id": a.tournament_id,
        "status": a.status.value,
        "total_players": a.total_players,
        "max_players": a.max_players,
        "entry_fee": str(a.entry_fee),
        "prize_pool": str(a.prize_pool),
        "start_time": to_iso(a.start_time),
        "end_time": to_iso(a.end_time),
        "participation_rate": a.participation_rate,
        "completion_rate": a.completion_rate,
        "collected_fees": str(a.collected_fees),
    }


# ======================================================================
# Stats Endpoints
# ======================================================================


@app.get("/stats/player/{address}", response_model=PlayerStatsResponse)
def player_stats(address: str) -> dict[str, Any]:
    return _stats_out(get_services().stats.get_player_stats(address))


@app.get("/stats/player/{address}/progress", response_model=ProgressResponse)
def player_progress(address: str) -> dict[str, Any]:
    progress = get_services().stats.get_player_progress(address)
    return {
        "level": progress.level,
        "experience": progress.experience,
        "next_level_experience": progress.next_level_experience,
        "achievements_unlocked": progress.achievements_unlocked,
        "total_achievements": progress.total_achievements,
    }


@app.get("/stats/leaderboard", response_model=LeaderboardResponse)
def leaderboard(limit: int = Query(100, ge=0, le=1000)) -> dict[str, Any]:
    entries = get_services().stats.get_leaderboard(limit)
    return {
        "leaderboard": [
            {
                "rank": e.rank,
                "address": e.address,
                "score": e.score,
                "win_rate": e.win_rate,
                "total_games": e.total_games,
                "total_win_amount": str(e.total_win_amount),
                "tournaments_won": e.tournaments_won,
            }
            for e in entries
        ]
    }


@app.get("/stats/tournaments", response_model=StatisticsResponse)
def tournament_statistics() -> dict[str, Any]:
    stats = get_services().history.get_tournament_statistics()
    return {
        "total_tournaments": stats.total_tournaments,
        "total_players": stats.total_players,
        "total_prize_pool": str(stats.total_prize_pool),
        "average_players_per_tournament": stats.average_players_per_tournament,
        "most_successful_players": [
            {
                "address": p.address,
                "total_prize": str(p.total_prize),
                "tournaments_won": p.tournaments_won,
                "placements": p.placements,
            }
            for p in stats.most_successful_players
        ],
    }


@app.get("/stats/trends", response_model=TrendsResponse)
def tournament_trends(start: date, end: date) -> dict[str, Any]:
    points = get_services().history.get_tournament_trends(start, end)
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "trends": [
            {
                "date": p.date.isoformat(),
                "tournaments": p.tournaments,
                "players": p.players,
                "prize_pool": str(p.prize_pool),
            }
            for p in points
        ],
    }


@app.get("/stats/summary", response_model=SummaryResponse)
def tournament_summary() -> dict[str, Any]:
    s = get_services().history.get_tournament_stats()
    return {
        "total_players": s.total_players,
        "active_players": s.active_players,
        "total_prize_pool": str(s.total_prize_pool),
        "average_entry_fee": str(s.average_entry_fee),
        "completed_tournaments": s.completed_tournaments,
        "active_tournaments": s.active_tournaments,
    }


@app.get("/stats/global", response_model=GlobalStatsResponse)
def global_stats() -> dict[str, Any]:
    g = get_services().stats.get_global_stats()
    top = g.most_successful_player
    return {
        "total_players": g.total_players,
        "total_games_played": g.total_games_played,
        "total_tournaments": g.total_tournaments,
        "total_prize_pool": str(g.total_prize_pool),
        "most_successful_player": None if top is None else {
            "address": top.address,
            "wins": top.wins,
            "total_win_amount": str(top.total_win_amount),
        },
    }


# ======================================================================
# Rules Endpoints
# ======================================================================


@app.get("/rules/categories", response_model=CategoryListResponse)
def list_categories() -> dict[str, Any]:
    return {"categories": [_category_out(c) for c in get_services().rules.list_categories()]}


@app.get("/rules/categories/{category_id}", response_model=CategoryResponse)
def get_category(category_id: str) -> dict[str, Any]:
    return _category_out(get_services().rules.get_category(category_id))


@app.post("/rules/validate", response_model=ValidateResponse)
def validate_parameters(req: ValidateRequest) -> dict[str, Any]:
    result = get_services().rules.validate(
        req.category_id, req.entry_fee, req.max_players, req.duration
    )
    return {"is_valid": result.is_valid, "errors": [e.to_dict() for e in result.errors]}


@app.get("/rules/recommend/{address}", response_model=RecommendResponse)
def recommend_category(address: str) -> dict[str, Any]:
    services = get_services()
    stats = services.stats.get_player_stats(address)
    category = services.rules.recommend_category(stats)
    return {"address": stats.address, "category": _category_out(category)}


# ======================================================================
# Achievement Endpoints
# ======================================================================


@app.get("/achievements", response_model=AchievementListResponse)
def list_achievements() -> dict[str, Any]:
    from playchain.achievements import CATALOG

    return {"achievements": [_achievement_out(a) for a in CATALOG]}


@app.get("/achievements/leaderboard", response_model=AchievementLeaderboardResponse)
def achievement_leaderboard(limit: int = Query(10, ge=0, le=100)) -> dict[str, Any]:
    standings = get_services().achievements.get_achievement_leaderboard(limit)
    return {
        "leaderboard": [
            {"rank": s.rank, "address": s.address, "points": s.points, "unlocked": s.unlocked}
            for s in standings
        ]
    }


@app.get("/achievements/player/{address}", response_model=PlayerAchievementsResponse)
def player_achievements(address: str) -> dict[str, Any]:
    items = get_services().achievements.get_player_achievements(address)
    return {
        "address": normalize_address(address),
        "achievements": [
            {
                "achievement": _achievement_out(p.achievement),
                "unlocked": p.unlocked,
                "unlocked_at": to_iso(p.unlocked_at),
                "progress": str(p.progress),
                "max_progress": str(p.max_progress),
            }
            for p in items
        ],
    }


@app.post("/achievements/check/{address}", response_model=CheckAchievementsResponse)
def check_achievements(address: str) -> dict[str, Any]:
    unlocked = get_services().achievements.check_achievements(address)
    return {"address": normalize_address(address), "unlocked": [_achievement_out(a) for a in unlocked]}


# ======================================================================
# Notification Endpoints
# ======================================================================


@app.get("/notifications/{address}", response_model=NotificationListResponse)
def list_notifications(
    address: str,
    limit: int = Query(10, ge=0, le=100),
    offset: int = Query(0, ge=0),
    unread_only: bool = False,
    types: list[str] | None = Query(None),
) -> dict[str, Any]:
    items, total = get_services().notifications.get_notifications(
        normalize_address(address), limit=limit, offset=offset, unread_only=unread_only, types=types
    )
    return {"notifications": [_notification_out(n) for n in items], "total": total}


@app.post("/notifications/{address}/read", response_model=MarkReadResponse)
def mark_notifications_read(address: str, req: MarkReadRequest) -> dict[str, Any]:
    marked = get_services().notifications.mark_as_read(normalize_address(address), req.ids)
    return {"marked": marked}


@app.get("/notifications/{address}/preferences", response_model=PreferencesResponse)
def get_preferences(address: str) -> dict[str, Any]:
    address = normalize_address(address)
    prefs = get_services().notifications.get_preferences(address)
    return {"address": address, "preferences": [p.to_dict() for p in prefs]}


@app.put("/notifications/{address}/preferences", response_model=PreferencesResponse)
def update_preferences(address: str, req: PreferencesRequest) -> dict[str, Any]:
    address = normalize_address(address)
    prefs = [NotificationPreference.from_dict(p.model_dump()) for p in req.preferences]
    updated = get_services().notifications.update_preferences(address, prefs)
    return {"address": address, "preferences": [p.to_dict() for p in updated]}


# ======================================================================
# Game & Token Endpoints
# ======================================================================


@app.post("/game/result", response_model=GameResultResponse)
def record_game_result(req: GameResultRequest) -> dict[str, Any]:
    """Record a settled game, then check the player's achievements."""
    services = get_services()
    game = GameRecord(
        id=req.id or req.tx_hash or str(uuid.uuid4()),
        player=normalize_address(req.player),
        bet_amount=req.bet_amount,
        win_amount=req.win_amount,
        outcome=req.outcome,
        timestamp=_as_utc(req.timestamp) if req.timestamp else utcnow(),
        tx_hash=req.tx_hash,
    )
    stats = services.stats.record_game(game)
    unlocked = services.achievements.check_achievements(game.player)
    return {
        "game": _game_out(game),
        "stats": _stats_out(stats),
        "unlocked": [_achievement_out(a) for a in unlocked],
    }


@app.get("/game/history/{address}", response_model=GameHistoryResponse)
def game_history(
    address: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=0, le=500),
) -> dict[str, Any]:
    """Newest game first."""
    address = normalize_address(address)
    games = get_services().stats.load_games(address)
    games.sort(key=lambda g: g.timestamp, reverse=True)
    return {
        "address": address,
        "games": [_game_out(g) for g in games[offset:offset + limit]],
        "total": len(games),
    }


@app.get("/token/balance/{address}", response_model=BalanceResponse)
def token_balance(address: str) -> dict[str, Any]:
    services = get_services()
    if services.gateway is None:
        raise GatewayError("balanceOf", "chain gateway not configured")
    return {"address": address, "balance": str(services.gateway.get_balance(address))}


# ======================================================================
# Admin & Health
# ======================================================================


@app.post("/admin/sweep", response_model=SweepResponse)
def admin_sweep() -> dict[str, Any]:
    """Run the lifecycle sweep now, regardless of sweep_on_request."""
    changes = get_services().registry.reconcile()
    return {
        "changes": [
            {"tournament_id": c.tournament_id, "previous": c.previous.value, "current": c.current.value}
            for c in changes
        ]
    }


@app.get("/health", response_model=HealthResponse)
def health() -> dict[str, Any]:
    services = get_services()
    registry = services.registry
    return {
        "status": "ok",
        "chain_enabled": services.gateway is not None,
        "tournaments": registry.count_tournaments(),
        "active_tournaments": registry.count_tournaments(active=True),
        "ws_connections": _manager.connection_count(),
    }


# ======================================================================
# Live Notifications
# ======================================================================


class ConnectionManager:
    """One WebSocket per player address, fed by the notification dispatcher."""

    def __init__(self):
        # address -> connected WebSocket
        self.connections: dict[str, WebSocket] = {}
        self._dispatcher: NotificationDispatcher | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def attach(self, dispatcher: NotificationDispatcher):
        """Subscribe to new notifications. Returns a detach function."""
        self._dispatcher = dispatcher
        unsubscribe = dispatcher.subscribe(self._on_notification)

        def _detach():
            unsubscribe()
            self._dispatcher = None

        return _detach

    async def connect(self, address: str, websocket: WebSocket):
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        previous = self.connections.get(address)
        self.connections[address] = websocket
        if previous is not None:
            # Newest connection wins
            try:
                await previous.close(code=4000, reason="Replaced by a newer connection")
            except Exception:
                pass
        logger.info(f"Notification socket connected: {address} ({len(self.connections)} total)")

    def disconnect(self, address: str, websocket: WebSocket):
        if self.connections.get(address) is websocket:
            del self.connections[address]
            logger.info(f"Notification socket disconnected: {address}")

    def connection_count(self) -> int:
        return len(self.connections)

    def _on_notification(self, notification: Notification) -> None:
        """Dispatcher callback. Runs on a worker thread; hands off to the event loop."""
        if self._loop is None or self._loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.deliver(notification), self._loop)

    async def deliver(self, notification: Notification):
        """Send to the recipient, or to every connection for broadcasts."""
        if notification.recipient == BROADCAST:
            targets = [
                (addr, ws) for addr, ws in self.connections.items()
                if self._dispatcher is None or self._dispatcher.wants(addr, notification.type)
            ]
        else:
            ws = self.connections.get(notification.recipient)
            targets = [(notification.recipient, ws)] if ws is not None else []

        message = {"type": "notification", "notification": _notification_out(notification)}
        dead = []
        for addr, ws in targets:
            try:
                await ws.send_json(message)
            except Exception:
                dead.append((addr, ws))

        # Remove dead connections
        for addr, ws in dead:
            self.disconnect(addr, ws)


# Global connection manager
_manager = ConnectionManager()


@app.websocket("/ws/notifications/{address}")
async def websocket_notifications(websocket: WebSocket, address: str):
    """Live notification feed for one player.

    Unread notifications are sent right after connecting, then new ones as
    they are dispatched.
    """
    address = address.strip().lower()
    if not address:
        await websocket.close(code=4000, reason="Address required")
        return

    await _manager.connect(address, websocket)
    services = get_services()

    try:
        # Store reads block; keep them off the event loop
        pending = await asyncio.to_thread(services.notifications.unread, address)
        for notification in pending:
            await websocket.send_json(
                {"type": "notification", "notification": _notification_out(notification)}
            )

        # Keep connection alive, wait for disconnect
        while True:
            # We don't expect messages from players, but need to handle disconnect
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
            except asyncio.TimeoutError:
                # Send ping to keep connection alive
                try:
                    await websocket.send_json({"type": "ping"})
                except Exception:
                    break
    except WebSocketDisconnect:
        pass
    finally:
        _manager.disconnect(address, websocket)
