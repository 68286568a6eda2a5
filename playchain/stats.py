"""
playchain/stats.py - Player Stats Aggregator.

PlayerStats are never stored. They are recomputed from two sources each time:
the player's game log and the tournament history snapshots. Replaying the
same inputs always yields the same stats.

The game log is cache-or-fetch: load_games() returns the stored log, or pulls
it from the Chain Gateway on first access and stores it. record_game() then
appends new games as they settle.

Streaks are signed: positive for a run of wins, negative for a run of losses,
reset to zero by a draw.
"""

import logging
import math
import threading
from dataclasses import dataclass, replace

from .achievements import CATALOG, unlocked_achievements
from .contract import ChainGateway
from .errors import ValidationError
from .history import TournamentHistoryService
from .models import (
    GameOutcome,
    GameRecord,
    LeaderboardEntry,
    PlayerProgress,
    PlayerStats,
    TournamentHistory,
    normalize_address,
)
from .notifications import LevelUp, NotificationDispatcher
from .store import Codec, Store, list_codec

logger = logging.getLogger(__name__)

GAME_CODEC: Codec[GameRecord] = Codec(GameRecord.to_dict, GameRecord.from_dict)

# Experience weights
XP_PER_GAME = 10
XP_PER_WIN = 20
XP_PER_TOURNAMENT = 50
XP_PER_TOURNAMENT_WIN = 100
XP_PER_STREAK_POINT = 5
XP_PER_ACHIEVEMENT = 25

# (minimum level, rank name), highest first
RANKS = (
    (35, "Diamond"),
    (20, "Platinum"),
    (10, "Gold"),
    (5, "Silver"),
    (2, "Bronze"),
    (0, "Novice"),
)


# ============================================================================
# Pure computation
# ============================================================================


def level_for(experience: int) -> int:
    """floor(sqrt(experience / 100)), in exact integer math."""
    return math.isqrt(max(experience, 0) // 100)


def next_level_experience(level: int) -> int:
    return (level + 1) ** 2 * 100


def rank_for(level: int) -> str:
    for minimum, name in RANKS:
        if level >= minimum:
            return name
    return "Novice"


def experience_for(stats: PlayerStats, achievements_unlocked: int) -> int:
    return (
        stats.total_games * XP_PER_GAME
        + stats.wins * XP_PER_WIN
        + stats.tournaments_played * XP_PER_TOURNAMENT
        + stats.tournaments_won * XP_PER_TOURNAMENT_WIN
        + stats.best_streak * XP_PER_STREAK_POINT
        + achievements_unlocked * XP_PER_ACHIEVEMENT
    )


def leaderboard_score(stats: PlayerStats) -> float:
    """Win rate as a whole percentage plus a volume bonus capped at 10."""
    return math.floor(stats.win_rate * 100) + min(stats.total_games / 10, 10)


def compute_stats(
    address: str, games: list[GameRecord], histories: list[TournamentHistory]
) -> PlayerStats:
    """Replay a game log plus tournament snapshots into PlayerStats."""
    stats = PlayerStats(address=address)
    streak = 0

    # sorted() is stable, so same-timestamp games keep log order
    for game in sorted(games, key=lambda g: g.timestamp):
        stats.total_games += 1
        stats.total_bet_amount += game.bet_amount
        stats.total_win_amount += game.win_amount

        if game.outcome == GameOutcome.WIN:
            stats.wins += 1
            streak = max(0, streak) + 1
            stats.best_win_streak = max(stats.best_win_streak, streak)
            stats.highest_win = max(stats.highest_win, game.win_amount)
        elif game.outcome == GameOutcome.LOSS:
            stats.losses += 1
            streak = min(0, streak) - 1
        else:
            stats.draws += 1
            streak = 0
        stats.best_streak = max(stats.best_streak, abs(streak))

        if stats.last_game_played is None or game.timestamp > stats.last_game_played:
            stats.last_game_played = game.timestamp

    stats.current_streak = streak
    stats.win_rate = stats.wins / stats.total_games if stats.total_games else 0.0

    for h in histories:
        if address in h.players:
            stats.tournaments_played += 1
        winner = h.winner_entry(address)
        if winner is not None and winner.rank == 1:
            stats.tournaments_won += 1

    stats.experience = experience_for(stats, len(unlocked_achievements(stats)))
    stats.level = level_for(stats.experience)
    stats.rank = rank_for(stats.level)
    return stats


@dataclass(frozen=True)
class TopPlayer:
    address: str
    wins: int
    total_win_amount: int


@dataclass(frozen=True)
class GlobalStats:
    total_players: int
    total_games_played: int
    total_tournaments: int
    total_prize_pool: int
    most_successful_player: TopPlayer | None  # most game wins, then winnings


# ============================================================================
# Service
# ============================================================================


class PlayerStatsService:
    def __init__(
        self,
        store: Store,
        history: TournamentHistoryService | None = None,
        gateway: ChainGateway | None = None,
        notifier: NotificationDispatcher | None = None,
    ):
        self._games = store.repository("games", list_codec(GAME_CODEC))
        self.history = history
        self.gateway = gateway
        self.notifier = notifier
        self._lock = threading.RLock()

    def _histories(self) -> list[TournamentHistory]:
        return self.history.histories() if self.history is not None else []

    def load_games(self, address: str) -> list[GameRecord]:
        """Stored game log, fetched from the Gateway (and stored) on first access."""
        address = normalize_address(address)
        with self._lock:
            games = self._games.get(address)
            if games is not None:
                return list(games)
            if self.gateway is None:
                return []
            games = self.gateway.get_game_history(address)
            # Chain records are keyed by the queried address
            games = [g if g.player == address else _with_player(g, address) for g in games]
            self._games.put(address, games)
            logger.info(f"Loaded {len(games)} game(s) for {address} from chain")
            return list(games)

    def record_game(self, game: GameRecord) -> PlayerStats:
        """Append a settled game to the player's log. Re-recording the same id is a no-op."""
        if game.bet_amount < 0 or game.win_amount < 0:
            raise ValidationError.for_field("bet_amount", "amounts must be non-negative")
        address = normalize_address(game.player)
        if game.player != address:
            game = _with_player(game, address)

        with self._lock:
            games = self.load_games(address)
            if any(g.id == game.id for g in games):
                logger.debug(f"Game {game.id} already recorded for {address}")
                return self.get_player_stats(address)
            before = compute_stats(address, games, self._histories())
            games.append(game)
            self._games.put(address, games)
            after = compute_stats(address, games, self._histories())

        logger.info(f"Recorded game {game.id} for {address}: {game.outcome.value}")
        if after.level > before.level and self.notifier is not None:
            self.notifier.dispatch(address, LevelUp(level=after.level, previous_level=before.level))
        return after

    def get_player_stats(self, address: str) -> PlayerStats:
        address = normalize_address(address)
        return compute_stats(address, self.load_games(address), self._histories())

    def get_player_progress(self, address: str) -> PlayerProgress:
        stats = self.get_player_stats(address)
        return PlayerProgress(
            level=stats.level,
            experience=stats.experience,
            next_level_experience=next_level_experience(stats.level),
            achievements_unlocked=len(unlocked_achievements(stats)),
            total_achievements=len(CATALOG),
        )

    def known_players(self) -> list[str]:
        """Everyone with a stored game log or a tournament snapshot, sorted."""
        players = set(self._games.keys())
        for h in self._histories():
            players.update(h.players)
            players.update(w.address for w in h.winners)
        return sorted(players)

    def get_leaderboard(self, limit: int = 100) -> list[LeaderboardEntry]:
        """Ranked by score, then total winnings, then address."""
        if limit < 0:
            raise ValidationError.for_field("limit", "limit must be non-negative")
        all_stats = [self.get_player_stats(addr) for addr in self.known_players()]
        scored = [(leaderboard_score(s), s) for s in all_stats]
        scored.sort(key=lambda pair: (-pair[0], -pair[1].total_win_amount, pair[1].address))
        return [
            LeaderboardEntry(
                rank=i + 1,
                address=s.address,
                score=score,
                win_rate=s.win_rate,
                total_games=s.total_games,
                total_win_amount=s.total_win_amount,
                tournaments_won=s.tournaments_won,
            )
            for i, (score, s) in enumerate(scored[:limit])
        ]

    def get_global_stats(self) -> GlobalStats:
        """Totals across every known player and every recorded tournament."""
        all_stats = [self.get_player_stats(addr) for addr in self.known_players()]
        histories = self._histories()
        winners = [s for s in all_stats if s.wins > 0]
        best = None
        if winners:
            top = min(winners, key=lambda s: (-s.wins, -s.total_win_amount, s.address))
            best = TopPlayer(address=top.address, wins=top.wins, total_win_amount=top.total_win_amount)
        return GlobalStats(
            total_players=len(all_stats),
            total_games_played=sum(s.total_games for s in all_stats),
            total_tournaments=len(histories),
            total_prize_pool=sum(h.prize_pool for h in histories),
            most_successful_player=best,
        )


def _with_player(game: GameRecord, address: str) -> GameRecord:
    return replace(game, player=address)
