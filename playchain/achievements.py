"""
playchain/achievements.py - Achievement catalog and evaluator.

Whether a player has an achievement is a pure function of their PlayerStats:
each catalog entry names a stats metric and a threshold. The evaluator only
remembers which unlocks it has already reported, so check_achievements()
announces each (player, achievement) pair exactly once no matter how often
or in what order it runs.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from .models import PlayerStats, from_iso, normalize_address, to_iso, utcnow
from .notifications import AchievementUnlocked, NotificationDispatcher, RewardAvailable
from .store import IDENTITY, Store

if TYPE_CHECKING:
    from .stats import PlayerStatsService

logger = logging.getLogger(__name__)

ONE_ETHER = 10**18


@dataclass(frozen=True)
class Criteria:
    metric: str  # PlayerStats attribute
    threshold: int


@dataclass(frozen=True)
class Reward:
    points: int
    badge: str | None = None
    title: str | None = None


@dataclass(frozen=True)
class Achievement:
    id: str
    name: str
    description: str
    criteria: Criteria
    reward: Reward

    def current(self, stats: PlayerStats) -> int:
        return int(getattr(stats, self.criteria.metric))

    def is_unlocked(self, stats: PlayerStats) -> bool:
        return self.current(stats) >= self.criteria.threshold


@dataclass(frozen=True)
class PlayerAchievement:
    achievement: Achievement
    unlocked: bool
    unlocked_at: datetime | None
    progress: int
    max_progress: int


@dataclass(frozen=True)
class AchievementStanding:
    rank: int
    address: str
    points: int
    unlocked: int


CATALOG: tuple[Achievement, ...] = (
    Achievement(
        id="first_win",
        name="First Victory",
        description="Win your first game",
        criteria=Criteria("wins", 1),
        reward=Reward(points=100, badge="first_win"),
    ),
    Achievement(
        id="tournament_victory",
        name="Tournament Champion",
        description="Win a tournament",
        criteria=Criteria("tournaments_won", 1),
        reward=Reward(points=500, badge="champion", title="Champion"),
    ),
    Achievement(
        id="streak_master",
        name="Streak Master",
        description="Win 5 games in a row",
        criteria=Criteria("best_win_streak", 5),
        reward=Reward(points=300, badge="streak_master"),
    ),
    Achievement(
        id="high_roller",
        name="High Roller",
        description="Bet a total of 1 ETH or more",
        criteria=Criteria("total_bet_amount", ONE_ETHER),
        reward=Reward(points=200, badge="high_roller", title="High Roller"),
    ),
    Achievement(
        id="loyal_player",
        name="Loyal Player",
        description="Play 100 games",
        criteria=Criteria("total_games", 100),
        reward=Reward(points=400, badge="loyal"),
    ),
    Achievement(
        id="tournament_regular",
        name="Tournament Regular",
        description="Enter 10 tournaments",
        criteria=Criteria("tournaments_played", 10),
        reward=Reward(points=250, badge="regular"),
    ),
)

ACHIEVEMENTS: dict[str, Achievement] = {a.id: a for a in CATALOG}

_METRICS = set(PlayerStats.__dataclass_fields__)
for _a in CATALOG:
    if _a.criteria.metric not in _METRICS:
        raise ValueError(f"Achievement {_a.id} uses unknown metric {_a.criteria.metric}")


def unlocked_achievements(stats: PlayerStats) -> list[Achievement]:
    """Catalog entries whose criteria the stats meet, in catalog order."""
    return [a for a in CATALOG if a.is_unlocked(stats)]


def achievement_points(stats: PlayerStats) -> int:
    return sum(a.reward.points for a in unlocked_achievements(stats))


class AchievementEvaluator:
    def __init__(
        self,
        store: Store,
        stats: "PlayerStatsService",
        notifier: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        # address -> {achievement_id: ISO time first reported}
        self._reported = store.repository("achievement_unlocks", IDENTITY)
        self.stats = stats
        self.notifier = notifier
        self.clock = clock
        self._lock = threading.Lock()

    def check_achievements(self, address: str) -> list[Achievement]:
        """Newly unlocked achievements since the last check. Each is reported once."""
        address = normalize_address(address)
        stats = self.stats.get_player_stats(address)

        with self._lock:
            reported = dict(self._reported.get(address) or {})
            fresh = [a for a in unlocked_achievements(stats) if a.id not in reported]
            if not fresh:
                return []
            now = to_iso(self.clock())
            for a in fresh:
                reported[a.id] = now
            self._reported.put(address, reported)

        for a in fresh:
            logger.info(f"{address} unlocked {a.id} (+{a.reward.points} points)")
            if self.notifier is not None:
                self.notifier.dispatch(
                    address, AchievementUnlocked(achievement_id=a.id, name=a.name, points=a.reward.points)
                )
                self.notifier.dispatch(
                    address,
                    RewardAvailable(
                        achievement_id=a.id,
                        points=a.reward.points,
                        badge=a.reward.badge,
                        reward_title=a.reward.title,
                    ),
                )
        return fresh

    def get_player_achievements(self, address: str) -> list[PlayerAchievement]:
        address = normalize_address(address)
        stats = self.stats.get_player_stats(address)
        reported = self._reported.get(address) or {}
        return [
            PlayerAchievement(
                achievement=a,
                unlocked=a.is_unlocked(stats),
                unlocked_at=from_iso(reported.get(a.id)) if a.is_unlocked(stats) else None,
                progress=min(a.current(stats), a.criteria.threshold),
                max_progress=a.criteria.threshold,
            )
            for a in CATALOG
        ]

    def get_achievement_leaderboard(self, limit: int = 10) -> list[AchievementStanding]:
        """Players by total achievement points, then unlock count, then address."""
        rows = []
        for address in self.stats.known_players():
            stats = self.stats.get_player_stats(address)
            unlocked = unlocked_achievements(stats)
            if unlocked:
                rows.append((address, achievement_points(stats), len(unlocked)))
        rows.sort(key=lambda r: (-r[1], -r[2], r[0]))
        return [
            AchievementStanding(rank=i + 1, address=addr, points=points, unlocked=count)
            for i, (addr, points, count) in enumerate(rows[:limit])
        ]
