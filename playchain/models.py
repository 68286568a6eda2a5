"""
playchain/models.py - Record types for tournaments, games, and players.

Plain dataclasses. Amounts are ints in the token's smallest unit (wei for
native tokens) so nothing is lost to float rounding. Timestamps are
timezone-aware UTC datetimes.

Records that get persisted (tournaments, history snapshots, games) carry
to_dict()/from_dict() so any Repository backend can store them as JSON.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from .errors import ValidationError

# Tournaments run for 24h unless created with an explicit duration
DEFAULT_DURATION_SECONDS = 24 * 60 * 60


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ============================================================================
# Tournaments
# ============================================================================


class TournamentStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"

    @classmethod
    def from_chain(cls, code: int) -> "TournamentStatus":
        """Map the contract's uint8 status. Unknown codes read as upcoming."""
        return {0: cls.UPCOMING, 1: cls.ACTIVE, 2: cls.COMPLETED}.get(int(code), cls.UPCOMING)


# Allowed forward moves. Same-status updates are handled as no-ops.
STATUS_TRANSITIONS: dict[TournamentStatus, set[TournamentStatus]] = {
    TournamentStatus.UPCOMING: {TournamentStatus.ACTIVE, TournamentStatus.COMPLETED},
    TournamentStatus.ACTIVE: {TournamentStatus.COMPLETED},
    TournamentStatus.COMPLETED: set(),
}


@dataclass
class TournamentRules:
    """In-game betting rules for a tournament."""

    min_bet: int = 10
    max_bet: int = 100
    time_limit: int = 3600  # seconds per game
    max_rounds: int = 100
    allow_rebuys: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_bet": self.min_bet,
            "max_bet": self.max_bet,
            "time_limit": self.time_limit,
            "max_rounds": self.max_rounds,
            "allow_rebuys": self.allow_rebuys,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TournamentRules":
        return cls(
            min_bet=int(data.get("min_bet", 10)),
            max_bet=int(data.get("max_bet", 100)),
            time_limit=int(data.get("time_limit", 3600)),
            max_rounds=int(data.get("max_rounds", 100)),
            allow_rebuys=bool(data.get("allow_rebuys", False)),
        )


@dataclass(frozen=True)
class Winner:
    address: str
    prize: int
    rank: int

    def to_dict(self) -> dict[str, Any]:
        return {"address": self.address, "prize": self.prize, "rank": self.rank}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Winner":
        return cls(address=data["address"], prize=int(data["prize"]), rank=int(data["rank"]))


@dataclass
class TournamentParams:
    """Input to TournamentRegistry.create_tournament()."""

    name: str
    start_time: datetime
    entry_fee: int
    prize_pool: int
    min_players: int
    max_players: int
    description: str = ""
    rules: TournamentRules = field(default_factory=TournamentRules)
    duration: int = DEFAULT_DURATION_SECONDS
    category_id: str | None = None
    chain_id: int | None = None


@dataclass
class Tournament:
    id: str
    name: str
    start_time: datetime
    entry_fee: int
    prize_pool: int
    min_players: int
    max_players: int
    description: str = ""
    end_time: datetime | None = None
    status: TournamentStatus = TournamentStatus.UPCOMING
    players: list[str] = field(default_factory=list)
    winners: list[Winner] = field(default_factory=list)
    rules: TournamentRules = field(default_factory=TournamentRules)
    duration: int = DEFAULT_DURATION_SECONDS
    category_id: str | None = None
    chain_id: int | None = None  # onchain tournament id, if published
    created_at: datetime = field(default_factory=utcnow)

    @property
    def scheduled_end(self) -> datetime:
        return self.start_time + timedelta(seconds=self.duration)

    @property
    def is_full(self) -> bool:
        return len(self.players) >= self.max_players

    def copy(self) -> "Tournament":
        """Detached copy so callers can't mutate registry state by accident."""
        return replace(self, players=list(self.players), winners=list(self.winners), rules=replace(self.rules))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "entry_fee": self.entry_fee,
            "prize_pool": self.prize_pool,
            "min_players": self.min_players,
            "max_players": self.max_players,
            "status": self.status.value,
            "players": list(self.players),
            "winners": [w.to_dict() for w in self.winners],
            "rules": self.rules.to_dict(),
            "duration": self.duration,
            "category_id": self.category_id,
            "chain_id": self.chain_id,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Tournament":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            start_time=from_iso(data["start_time"]),
            end_time=from_iso(data.get("end_time")),
            entry_fee=int(data["entry_fee"]),
            prize_pool=int(data["prize_pool"]),
            min_players=int(data["min_players"]),
            max_players=int(data["max_players"]),
            status=TournamentStatus(data.get("status", "upcoming")),
            players=list(data.get("players", [])),
            winners=[Winner.from_dict(w) for w in data.get("winners", [])],
            rules=TournamentRules.from_dict(data.get("rules", {})),
            duration=int(data.get("duration", DEFAULT_DURATION_SECONDS)),
            category_id=data.get("category_id"),
            chain_id=data.get("chain_id"),
            created_at=from_iso(data.get("created_at")) or utcnow(),
        )


@dataclass(frozen=True)
class StatusChange:
    """One lifecycle transition applied by TournamentRegistry.reconcile()."""

    tournament_id: str
    previous: TournamentStatus
    current: TournamentStatus


@dataclass(frozen=True)
class TournamentHistory:
    """Frozen snapshot of a tournament taken by TournamentHistoryService."""

    tournament_id: str
    name: str
    start_time: datetime
    end_time: datetime | None
    entry_fee: int
    prize_pool: int
    status: TournamentStatus
    players: tuple[str, ...]
    winners: tuple[Winner, ...]
    player_games: dict[str, int]
    recorded_at: datetime

    def involves(self, address: str) -> bool:
        return address in self.players or any(w.address == address for w in self.winners)

    def winner_entry(self, address: str) -> Winner | None:
        for winner in self.winners:
            if winner.address == address:
                return winner
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "name": self.name,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "entry_fee": self.entry_fee,
            "prize_pool": self.prize_pool,
            "status": self.status.value,
            "players": list(self.players),
            "winners": [w.to_dict() for w in self.winners],
            "player_games": dict(self.player_games),
            "recorded_at": to_iso(self.recorded_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TournamentHistory":
        return cls(
            tournament_id=data["tournament_id"],
            name=data["name"],
            start_time=from_iso(data["start_time"]),
            end_time=from_iso(data.get("end_time")),
            entry_fee=int(data["entry_fee"]),
            prize_pool=int(data["prize_pool"]),
            status=TournamentStatus(data.get("status", "completed")),
            players=tuple(data.get("players", [])),
            winners=tuple(Winner.from_dict(w) for w in data.get("winners", [])),
            player_games={k: int(v) for k, v in data.get("player_games", {}).items()},
            recorded_at=from_iso(data["recorded_at"]),
        )


# ============================================================================
# Games & players
# ============================================================================


class GameOutcome(str, Enum):
    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"

    @classmethod
    def from_chain(cls, code: int) -> "GameOutcome":
        """Map the contract's uint8 outcome. Unknown codes read as a draw."""
        return {0: cls.WIN, 1: cls.LOSS, 2: cls.DRAW}.get(int(code), cls.DRAW)


@dataclass(frozen=True)
class GameRecord:
    """One settled game from a player's onchain history."""

    id: str
    player: str
    bet_amount: int
    outcome: GameOutcome
    timestamp: datetime
    win_amount: int = 0
    tx_hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "player": self.player,
            "bet_amount": self.bet_amount,
            "win_amount": self.win_amount,
            "outcome": self.outcome.value,
            "timestamp": to_iso(self.timestamp),
            "tx_hash": self.tx_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GameRecord":
        return cls(
            id=data["id"],
            player=data["player"],
            bet_amount=int(data["bet_amount"]),
            win_amount=int(data.get("win_amount", 0)),
            outcome=GameOutcome(data["outcome"]),
            timestamp=from_iso(data["timestamp"]),
            tx_hash=data.get("tx_hash", ""),
        )


@dataclass
class ChainPlayerStats:
    """Aggregate counters as the game contract reports them."""

    address: str
    total_games: int = 0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    total_bet_amount: int = 0
    total_win_amount: int = 0
    highest_win: int = 0


@dataclass
class PlayerStats:
    address: str
    total_games: int = 0
    wins: int = 0
    losses: int = 0
    draws: int = 0
    total_bet_amount: int = 0
    total_win_amount: int = 0
    win_rate: float = 0.0
    highest_win: int = 0
    current_streak: int = 0  # >0 win run, <0 loss run
    best_streak: int = 0  # longest run of either sign
    best_win_streak: int = 0
    tournaments_played: int = 0
    tournaments_won: int = 0
    last_game_played: datetime | None = None
    level: int = 0
    experience: int = 0
    rank: str = "Novice"

    @property
    def average_bet(self) -> int:
        if self.total_games == 0:
            return 0
        return self.total_bet_amount // self.total_games


@dataclass(frozen=True)
class PlayerProgress:
    level: int
    experience: int
    next_level_experience: int
    achievements_unlocked: int
    total_achievements: int


@dataclass(frozen=True)
class LeaderboardEntry:
    rank: int
    address: str
    score: float
    win_rate: float
    total_games: int
    total_win_amount: int
    tournaments_won: int


def normalize_address(address: str) -> str:
    """Canonical form for player addresses: stripped, lowercase."""
    if not isinstance(address, str) or not address.strip():
        raise ValidationError.for_field("address", "address must be a non-empty string")
    return address.strip().lower()
