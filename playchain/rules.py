"""
playchain/rules.py - Tournament Rules Engine.

Categories are rule templates: each bounds the entry fee, player count and
duration a tournament may use, and carries a ranked prize table. Categories
come in three tiers (beginner, intermediate, expert); each tier has a base
category plus sub-categories for higher stakes.

Prize percentages are stored in basis points (6000 = 60.00%) and payouts are
computed with integer math, so a payout table never sums to more than the pool.
"""

import logging
from dataclasses import dataclass, field

from .errors import FieldError, NotFoundError, ValidationError
from .models import PlayerStats, TournamentRules

logger = logging.getLogger(__name__)

HOUR = 60 * 60
DAY = 24 * HOUR

BASIS_POINTS = 10_000


# ============================================================================
# Data Types
# ============================================================================


@dataclass(frozen=True)
class PrizeTier:
    rank: int
    basis_points: int  # share of the pool, 10000 = 100%
    min_players: int  # tier only pays out with at least this many players

    @property
    def percentage(self) -> float:
        return self.basis_points / 100


@dataclass(frozen=True)
class TournamentCategory:
    id: str
    name: str
    tier: str
    description: str
    min_entry_fee: int
    max_entry_fee: int
    min_players: int
    max_players: int
    duration: int  # longest allowed tournament, seconds
    prize_distribution: tuple[PrizeTier, ...]
    rules: TournamentRules = field(default_factory=TournamentRules)

    def brackets_fee(self, amount: int) -> bool:
        return self.min_entry_fee <= amount <= self.max_entry_fee


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: list[FieldError]


@dataclass(frozen=True)
class PrizeShare:
    rank: int
    amount: int


# ============================================================================
# Catalog
# ============================================================================


def _tiers(*rows: tuple[int, int, int]) -> tuple[PrizeTier, ...]:
    return tuple(PrizeTier(rank, bps, min_players) for rank, bps, min_players in rows)


CATEGORIES: dict[str, TournamentCategory] = {
    c.id: c
    for c in (
        TournamentCategory(
            id="beginner",
            name="Beginner",
            tier="beginner",
            description="Low-stakes tournaments for new players",
            min_entry_fee=1,
            max_entry_fee=50,
            min_players=2,
            max_players=16,
            duration=DAY,
            prize_distribution=_tiers((1, 6000, 2), (2, 3000, 4), (3, 1000, 6)),
            rules=TournamentRules(min_bet=1, max_bet=50, time_limit=HOUR, max_rounds=50),
        ),
        TournamentCategory(
            id="beginner_staked",
            name="Beginner Staked",
            tier="beginner",
            description="Beginner format with higher entry fees",
            min_entry_fee=50,
            max_entry_fee=500,
            min_players=2,
            max_players=16,
            duration=2 * DAY,
            prize_distribution=_tiers((1, 6000, 2), (2, 3000, 4), (3, 1000, 6)),
            rules=TournamentRules(min_bet=10, max_bet=500, time_limit=HOUR, max_rounds=50),
        ),
        TournamentCategory(
            id="intermediate",
            name="Intermediate",
            tier="intermediate",
            description="Mid-size fields for regular players",
            min_entry_fee=10,
            max_entry_fee=500,
            min_players=4,
            max_players=64,
            duration=3 * DAY,
            prize_distribution=_tiers((1, 5000, 4), (2, 3000, 4), (3, 1500, 8), (4, 500, 16)),
        ),
        TournamentCategory(
            id="intermediate_staked",
            name="Intermediate Staked",
            tier="intermediate",
            description="Intermediate format with higher entry fees",
            min_entry_fee=500,
            max_entry_fee=5_000,
            min_players=4,
            max_players=64,
            duration=3 * DAY,
            prize_distribution=_tiers((1, 5000, 4), (2, 3000, 4), (3, 1500, 8), (4, 500, 16)),
            rules=TournamentRules(min_bet=50, max_bet=1_000, time_limit=HOUR, max_rounds=100),
        ),
        TournamentCategory(
            id="expert",
            name="Expert",
            tier="expert",
            description="Large fields with deep payouts",
            min_entry_fee=100,
            max_entry_fee=1_000,
            min_players=8,
            max_players=256,
            duration=7 * DAY,
            prize_distribution=_tiers(
                (1, 4000, 8), (2, 2500, 8), (3, 1500, 8), (4, 1000, 16), (5, 500, 32), (6, 500, 32)
            ),
            rules=TournamentRules(min_bet=100, max_bet=1_000, time_limit=2 * HOUR, max_rounds=200),
        ),
        TournamentCategory(
            id="expert_high_roller",
            name="High Roller",
            tier="expert",
            description="Expert tournaments for big bankrolls (5% house share)",
            min_entry_fee=1_000,
            max_entry_fee=100_000,
            min_players=8,
            max_players=128,
            duration=7 * DAY,
            prize_distribution=_tiers((1, 4500, 8), (2, 2500, 8), (3, 1500, 16), (4, 1000, 32)),
            rules=TournamentRules(
                min_bet=1_000, max_bet=100_000, time_limit=2 * HOUR, max_rounds=200
            ),
        ),
    )
}

# Tier order matters: the first category listed for a tier is its base
TIERS = ("beginner", "intermediate", "expert")


def check_catalog(categories: dict[str, TournamentCategory]) -> None:
    """Raise ValueError if any category is internally inconsistent."""
    for cat in categories.values():
        total = sum(t.basis_points for t in cat.prize_distribution)
        if total > BASIS_POINTS:
            raise ValueError(f"Category {cat.id}: prize table sums to {total / 100}% (> 100%)")
        ranks = [t.rank for t in cat.prize_distribution]
        if ranks != list(range(1, len(ranks) + 1)):
            raise ValueError(f"Category {cat.id}: prize ranks must be 1..n in order, got {ranks}")
        if cat.min_entry_fee > cat.max_entry_fee or cat.min_players > cat.max_players:
            raise ValueError(f"Category {cat.id}: inverted fee or player range")
        if cat.tier not in TIERS:
            raise ValueError(f"Category {cat.id}: unknown tier {cat.tier}")


check_catalog(CATEGORIES)


# ============================================================================
# Engine
# ============================================================================


def default_rules() -> TournamentRules:
    """Rules for a tournament created with neither explicit rules nor a known category."""
    return TournamentRules(min_bet=10, max_bet=100, time_limit=HOUR, max_rounds=100, allow_rebuys=False)


def validate_rules(rules: TournamentRules) -> ValidationResult:
    """Check in-game betting rules. Reports every violation."""
    errors = []
    if rules.min_bet < 0:
        errors.append(FieldError("rules.min_bet", "min_bet must be non-negative"))
    if rules.max_bet < rules.min_bet:
        errors.append(FieldError("rules.max_bet", "max_bet must be at least min_bet"))
    if rules.time_limit <= 0:
        errors.append(FieldError("rules.time_limit", "time_limit must be positive"))
    if rules.max_rounds < 1:
        errors.append(FieldError("rules.max_rounds", "max_rounds must be at least 1"))
    return ValidationResult(is_valid=not errors, errors=errors)


class RulesEngine:
    """Validation, prize splits and category recommendation over a category catalog."""

    def __init__(self, categories: dict[str, TournamentCategory] | None = None):
        self.categories = categories if categories is not None else CATEGORIES
        if categories is not None:
            check_catalog(categories)

    def list_categories(self) -> list[TournamentCategory]:
        return list(self.categories.values())

    def get_category(self, category_id: str) -> TournamentCategory:
        try:
            return self.categories[category_id]
        except KeyError:
            raise NotFoundError(f"Unknown tournament category: {category_id}") from None

    def validate(
        self, category_id: str, entry_fee: int, max_players: int, duration: int
    ) -> ValidationResult:
        """Check tournament parameters against a category. Reports every violation."""
        cat = self.get_category(category_id)
        errors = []
        if not cat.brackets_fee(entry_fee):
            errors.append(FieldError(
                "entry_fee",
                f"entry_fee must be between {cat.min_entry_fee} and {cat.max_entry_fee}",
            ))
        if not cat.min_players <= max_players <= cat.max_players:
            errors.append(FieldError(
                "max_players",
                f"max_players must be between {cat.min_players} and {cat.max_players}",
            ))
        if duration <= 0:
            errors.append(FieldError("duration", "duration must be positive"))
        elif duration > cat.duration:
            errors.append(FieldError(
                "duration", f"duration must be at most {cat.duration} seconds",
            ))
        return ValidationResult(is_valid=not errors, errors=errors)

    def calculate_prize_distribution(
        self, category_id: str, total_prize_pool: int, player_count: int
    ) -> list[PrizeShare]:
        """Payout per rank. Ranks whose player threshold isn't met are left out."""
        if total_prize_pool < 0:
            raise ValidationError.for_field("prize_pool", "prize pool must be non-negative")
        cat = self.get_category(category_id)
        return [
            PrizeShare(rank=t.rank, amount=total_prize_pool * t.basis_points // BASIS_POINTS)
            for t in cat.prize_distribution
            if t.min_players <= player_count
        ]

    def recommend_category(self, stats: PlayerStats) -> TournamentCategory:
        """Pick a tier from experience, then the sub-category matching the usual bet size."""
        if stats.total_games < 10 or stats.win_rate < 0.3:
            tier = "beginner"
        elif stats.total_games < 50 or stats.win_rate < 0.5:
            tier = "intermediate"
        else:
            tier = "expert"

        in_tier = [c for c in self.categories.values() if c.tier == tier]
        if not in_tier:
            raise NotFoundError(f"No categories configured for tier {tier}")
        average_bet = stats.average_bet
        chosen = next((c for c in in_tier if c.brackets_fee(average_bet)), in_tier[0])
        logger.debug(f"Recommended {chosen.id} for {stats.address} (tier={tier}, avg bet={average_bet})")
        return chosen

