"""
playchain - Backend for onchain gaming tournaments

Tournament lifecycle, prize splits, history analytics, player stats,
achievements and notifications, over a tournament/game contract pair.
"""

__version__ = "0.1.0"

from .errors import (
    PlaychainError,
    ValidationError,
    NotFoundError,
    CapacityError,
    DuplicateError,
    GatewayError,
    FieldError,
)

from .models import (
    Tournament,
    TournamentParams,
    TournamentRules,
    TournamentStatus,
    TournamentHistory,
    Winner,
    GameRecord,
    GameOutcome,
    PlayerStats,
)

from .store import MemoryStore, Repository, Store
from .registry import TournamentRegistry
from .rules import RulesEngine, default_rules
from .history import TournamentHistoryService
from .stats import PlayerStatsService
from .achievements import AchievementEvaluator
from .notifications import NotificationDispatcher
from .services import Services, build_services

__all__ = [
    # Version
    "__version__",
    # Errors
    "PlaychainError",
    "ValidationError",
    "NotFoundError",
    "CapacityError",
    "DuplicateError",
    "GatewayError",
    "FieldError",
    # Records
    "Tournament",
    "TournamentParams",
    "TournamentRules",
    "TournamentStatus",
    "TournamentHistory",
    "Winner",
    "GameRecord",
    "GameOutcome",
    "PlayerStats",
    # Storage
    "MemoryStore",
    "Repository",
    "Store",
    # Services
    "TournamentRegistry",
    "RulesEngine",
    "default_rules",
    "TournamentHistoryService",
    "PlayerStatsService",
    "AchievementEvaluator",
    "NotificationDispatcher",
    "Services",
    "build_services",
]
