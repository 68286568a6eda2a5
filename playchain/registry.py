"""
playchain/registry.py - Tournament Registry.

Owns tournament records and their lifecycle:

    UPCOMING ──> ACTIVE ──> COMPLETED
        └────────────────────┘  (skip-active is allowed)

Transitions are one-way. There are no timers: reconcile(now) is a sweep that
starts tournaments whose start time has passed and completes those whose
duration has run out. The API runs it on incoming requests, the CLI exposes
it as `playchain sweep`.

When a Chain Gateway is configured the chain is the system of record:
creates, joins, status changes and payouts go to the contract first, and a
failed Gateway call leaves the local record untouched. Lookups of unknown
numeric ids fall through to the Gateway and populate the local store.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

from .contract import ChainGateway
from .errors import CapacityError, DuplicateError, FieldError, NotFoundError, ValidationError
from .models import (
    STATUS_TRANSITIONS,
    StatusChange,
    Tournament,
    TournamentParams,
    TournamentStatus,
    Winner,
    normalize_address,
    utcnow,
)
from .notifications import (
    NotificationDispatcher,
    NotificationPayload,
    PlayerJoined,
    PrizeDistribution,
    RegistrationOpen,
    TournamentEnd,
    TournamentStart,
    BROADCAST,
)
from .rules import RulesEngine, validate_rules
from .store import Codec, Store

logger = logging.getLogger(__name__)

TOURNAMENT_CODEC: Codec[Tournament] = Codec(Tournament.to_dict, Tournament.from_dict)

# Prize table used for tournaments created without a category
DEFAULT_CATEGORY = "beginner"

RECOMMENDATION_LIMIT = 5


@dataclass(frozen=True)
class TournamentAnalytics:
    tournament_id: str
    status: TournamentStatus
    total_players: int
    max_players: int
    entry_fee: int
    prize_pool: int
    start_time: datetime
    end_time: datetime | None
    participation_rate: float  # percent of seats filled
    completion_rate: float  # percent of players placed as winners
    collected_fees: int


class TournamentRegistry:
    def __init__(
        self,
        store: Store,
        rules: RulesEngine | None = None,
        notifier: NotificationDispatcher | None = None,
        gateway: ChainGateway | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._tournaments = store.repository("tournaments", TOURNAMENT_CODEC)
        self.rules = rules or RulesEngine()
        self.notifier = notifier
        self.gateway = gateway
        self.clock = clock
        # Serializes read-modify-write on tournament records
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _emit(self, events: list[tuple[str, NotificationPayload]]) -> None:
        if self.notifier is None:
            return
        for recipient, payload in events:
            self.notifier.dispatch(recipient, payload)

    def _load(self, tournament_id: str) -> Tournament | None:
        """Cache-or-fetch: local record, else the Gateway (numeric ids only)."""
        tournament = self._tournaments.get(tournament_id)
        if tournament is not None:
            return tournament
        if self.gateway is None or not tournament_id.isdigit():
            return None
        tournament = self.gateway.get_tournament(int(tournament_id))
        if tournament is None:
            return None
        # Chain reads may come back checksummed; the registry compares lowercase
        tournament.players = [normalize_address(p) for p in tournament.players]
        tournament.winners = [replace(w, address=normalize_address(w.address)) for w in tournament.winners]
        logger.info(f"Loaded tournament {tournament_id} from chain")
        self._tournaments.put(tournament.id, tournament)
        return tournament

    def _require(self, tournament_id: str) -> Tournament:
        tournament = self._load(tournament_id)
        if tournament is None:
            raise NotFoundError(f"Tournament not found: {tournament_id}")
        # Work on a copy; only put() makes changes visible
        return tournament.copy()

    def _validate_params(self, params: TournamentParams) -> None:
        errors: list[FieldError] = []
        if not params.name or not params.name.strip():
            errors.append(FieldError("name", "name is required"))
        if params.entry_fee < 0:
            errors.append(FieldError("entry_fee", "entry_fee must be non-negative"))
        if params.prize_pool < 0:
            errors.append(FieldError("prize_pool", "prize_pool must be non-negative"))
        if params.min_players < 1:
            errors.append(FieldError("min_players", "min_players must be at least 1"))
        if params.min_players > params.max_players:
            errors.append(FieldError("min_players", "min_players must not exceed max_players"))
        if params.duration <= 0:
            errors.append(FieldError("duration", "duration must be positive"))
        if params.start_time.tzinfo is None:
            errors.append(FieldError("start_time", "start_time must be timezone-aware"))
        errors.extend(validate_rules(params.rules).errors)

        if params.category_id is not None:
            if params.category_id not in self.rules.categories:
                errors.append(FieldError("category_id", f"Unknown category: {params.category_id}"))
            else:
                result = self.rules.validate(
                    params.category_id, params.entry_fee, params.max_players, params.duration
                )
                errors.extend(result.errors)

        if errors:
            raise ValidationError("Invalid tournament parameters", errors)

    # ------------------------------------------------------------------
    # Creation & registration
    # ------------------------------------------------------------------

    def create_tournament(self, params: TournamentParams) -> Tournament:
        """Create an UPCOMING tournament with an empty roster."""
        self._validate_params(params)

        chain_id = params.chain_id
        if chain_id is None and self.gateway is not None:
            chain_id = self.gateway.create_tournament(params)

        tournament = Tournament(
            id=str(chain_id) if chain_id is not None else str(uuid.uuid4()),
            name=params.name.strip(),
            description=params.description,
            start_time=params.start_time,
            entry_fee=params.entry_fee,
            prize_pool=params.prize_pool,
            min_players=params.min_players,
            max_players=params.max_players,
            rules=params.rules,
            duration=params.duration,
            category_id=params.category_id,
            chain_id=chain_id,
            created_at=self.clock(),
        )
        with self._lock:
            if self._tournaments.get(tournament.id) is not None:
                raise DuplicateError(f"Tournament {tournament.id} already exists")
            self._tournaments.put(tournament.id, tournament)

        logger.info(
            f"Created tournament {tournament.id} ({tournament.name}): "
            f"fee={tournament.entry_fee} pool={tournament.prize_pool} "
            f"players={tournament.min_players}-{tournament.max_players}"
        )
        self._emit([(
            BROADCAST,
            RegistrationOpen(
                tournament_id=tournament.id,
                name=tournament.name,
                entry_fee=tournament.entry_fee,
                max_players=tournament.max_players,
            ),
        )])
        return tournament.copy()

    def join_tournament(self, tournament_id: str, address: str, entry_fee: int) -> Tournament:
        """Register a player. Join order is kept and breaks ranking ties."""
        address = normalize_address(address)
        with self._lock:
            tournament = self._require(tournament_id)
            if tournament.status == TournamentStatus.COMPLETED:
                raise ValidationError.for_field("status", f"Tournament {tournament_id} is completed")
            if entry_fee < tournament.entry_fee:
                raise ValidationError.for_field(
                    "entry_fee", f"Entry fee {entry_fee} is below the required {tournament.entry_fee}"
                )
            if address in tournament.players:
                raise DuplicateError(f"{address} is already registered for {tournament_id}")
            if tournament.is_full:
                raise CapacityError(
                    f"Tournament {tournament_id} is full ({tournament.max_players} players)"
                )

            if tournament.chain_id is not None and self.gateway is not None:
                self.gateway.join_tournament(tournament.chain_id, address, entry_fee)

            tournament.players.append(address)
            self._tournaments.put(tournament.id, tournament)

        logger.info(f"{address} joined {tournament_id} ({len(tournament.players)}/{tournament.max_players})")
        self._emit([(
            address,
            PlayerJoined(
                tournament_id=tournament.id, player=address, player_count=len(tournament.players)
            ),
        )])
        return tournament.copy()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(
        self, tournament: Tournament, new_status: TournamentStatus, now: datetime
    ) -> list[tuple[str, NotificationPayload]]:
        """Apply one allowed transition to a working copy. Returns events to emit."""
        if new_status not in STATUS_TRANSITIONS[tournament.status]:
            raise ValidationError.for_field(
                "status",
                f"Cannot move tournament {tournament.id} from {tournament.status.value} to {new_status.value}",
            )
        if tournament.chain_id is not None and self.gateway is not None:
            self.gateway.update_tournament_status(tournament.chain_id, new_status)

        previous = tournament.status
        tournament.status = new_status
        logger.info(f"Tournament {tournament.id}: {previous.value} -> {new_status.value}")

        if new_status == TournamentStatus.ACTIVE:
            return [(BROADCAST, TournamentStart(tournament_id=tournament.id, name=tournament.name))]
        tournament.end_time = now
        return [(
            BROADCAST,
            TournamentEnd(
                tournament_id=tournament.id,
                name=tournament.name,
                player_count=len(tournament.players),
            ),
        )]

    def update_status(self, tournament_id: str, new_status: TournamentStatus) -> Tournament:
        """Move a tournament forward. Setting the current status again is a no-op."""
        new_status = TournamentStatus(new_status)
        with self._lock:
            tournament = self._require(tournament_id)
            if tournament.status == new_status:
                logger.debug(f"Tournament {tournament_id} already {new_status.value}")
                return tournament
            events = self._transition(tournament, new_status, self.clock())
            self._tournaments.put(tournament.id, tournament)

        self._emit(events)
        return tournament.copy()

    def set_winners(self, tournament_id: str, winners: list[Winner]) -> Tournament:
        """Record final placings. Only allowed once the tournament is COMPLETED."""
        with self._lock:
            tournament = self._require(tournament_id)
            if tournament.status != TournamentStatus.COMPLETED:
                raise ValidationError.for_field(
                    "status", f"Winners can only be set on a completed tournament ({tournament_id})"
                )

            errors = []
            normalized = []
            seen_ranks = set()
            for i, w in enumerate(winners):
                address = normalize_address(w.address)
                if address not in tournament.players:
                    errors.append(FieldError(f"winners[{i}].address", f"{address} is not registered"))
                if w.rank < 1 or w.rank in seen_ranks:
                    errors.append(FieldError(f"winners[{i}].rank", f"rank {w.rank} is invalid or repeated"))
                if w.prize < 0:
                    errors.append(FieldError(f"winners[{i}].prize", "prize must be non-negative"))
                seen_ranks.add(w.rank)
                normalized.append(Winner(address=address, prize=w.prize, rank=w.rank))
            if errors:
                raise ValidationError("Invalid winners", errors)

            tournament.winners = sorted(normalized, key=lambda w: w.rank)
            self._tournaments.put(tournament.id, tournament)

        logger.info(f"Recorded {len(winners)} winner(s) for {tournament_id}")
        return tournament.copy()

    def distribute_prizes(self, tournament_id: str, scores: dict[str, float]) -> list[Winner]:
        """Rank players by score, pay out per the category's prize table, complete the tournament.

        Players missing from scores rank as 0. Equal scores keep join order.
        """
        scores = {normalize_address(k): v for k, v in scores.items()}
        with self._lock:
            tournament = self._require(tournament_id)
            if tournament.winners:
                raise ValidationError.for_field("status", f"Prizes for {tournament_id} were already distributed")
            unknown = sorted(set(scores) - set(tournament.players))
            if unknown:
                raise ValidationError(
                    "Scores given for unregistered players",
                    [FieldError("scores", f"{addr} is not registered") for addr in unknown],
                )

            order = {addr: i for i, addr in enumerate(tournament.players)}
            ranked = sorted(tournament.players, key=lambda a: (-scores.get(a, 0), order[a]))
            category = tournament.category_id or DEFAULT_CATEGORY
            shares = self.rules.calculate_prize_distribution(
                category, tournament.prize_pool, len(ranked)
            )
            winners = [
                Winner(address=ranked[s.rank - 1], prize=s.amount, rank=s.rank)
                for s in shares
                if s.rank <= len(ranked)
            ]

            if tournament.chain_id is not None and self.gateway is not None:
                self.gateway.distribute_prizes(tournament.chain_id)

            events = []
            if tournament.status != TournamentStatus.COMPLETED:
                events.extend(self._transition(tournament, TournamentStatus.COMPLETED, self.clock()))
            tournament.winners = winners
            self._tournaments.put(tournament.id, tournament)

        paid = sum(w.prize for w in winners)
        logger.info(
            f"Distributed {paid} of {tournament.prize_pool} across {len(winners)} winner(s) in {tournament_id}"
        )
        events.extend(
            (w.address, PrizeDistribution(tournament_id=tournament.id, rank=w.rank, prize=w.prize))
            for w in winners
        )
        self._emit(events)
        return winners

    def reconcile(self, now: datetime | None = None) -> list[StatusChange]:
        """Start and finish tournaments whose scheduled times have passed.

        A Gateway failure on one tournament is logged and that tournament is
        left for the next sweep; the rest still reconcile.
        """
        now = now or self.clock()
        changes: list[StatusChange] = []
        events: list[tuple[str, NotificationPayload]] = []

        with self._lock:
            for tournament in self._tournaments.list():
                if tournament.status == TournamentStatus.COMPLETED:
                    continue
                working = tournament.copy()
                steps = []
                if working.status == TournamentStatus.UPCOMING and working.start_time <= now:
                    steps.append(TournamentStatus.ACTIVE)
                if working.scheduled_end <= now:
                    steps.append(TournamentStatus.COMPLETED)
                if not steps:
                    continue

                try:
                    for step in steps:
                        previous = working.status
                        events.extend(self._transition(working, step, now))
                        changes.append(StatusChange(working.id, previous, step))
                except Exception as e:
                    logger.warning(f"Sweep skipped {working.id}: {e}")
                    # Drop partial changes for this tournament
                    changes = [c for c in changes if c.tournament_id != working.id]
                    events = [ev for ev in events if getattr(ev[1], "tournament_id", None) != working.id]
                    continue
                self._tournaments.put(working.id, working)

        if changes:
            logger.info(f"Sweep applied {len(changes)} status change(s)")
        self._emit(events)
        return changes

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_tournament(self, tournament_id: str) -> Tournament | None:
        tournament = self._load(tournament_id)
        return tournament.copy() if tournament is not None else None

    def _filtered(self, active: bool, completed: bool) -> list[Tournament]:
        wanted = set()
        if active:
            wanted.add(TournamentStatus.ACTIVE)
        if completed:
            wanted.add(TournamentStatus.COMPLETED)
        items = [t for t in self._tournaments.list() if not wanted or t.status in wanted]
        # Stable: equal start times keep creation order
        items.sort(key=lambda t: t.start_time, reverse=True)
        return items

    def get_all_tournaments(
        self, active: bool = False, completed: bool = False, offset: int = 0, limit: int = 10
    ) -> list[Tournament]:
        """Newest start first. With no flags every status is included; both flags give the union."""
        if offset < 0 or limit < 0:
            raise ValidationError.for_field("offset", "offset and limit must be non-negative")
        items = self._filtered(active, completed)
        return [t.copy() for t in items[offset:offset + limit]]

    def count_tournaments(self, active: bool = False, completed: bool = False) -> int:
        return len(self._filtered(active, completed))

    def get_tournament_analytics(self, tournament_id: str) -> TournamentAnalytics:
        tournament = self._require(tournament_id)
        players = len(tournament.players)
        return TournamentAnalytics(
            tournament_id=tournament.id,
            status=tournament.status,
            total_players=players,
            max_players=tournament.max_players,
            entry_fee=tournament.entry_fee,
            prize_pool=tournament.prize_pool,
            start_time=tournament.start_time,
            end_time=tournament.end_time,
            participation_rate=players / tournament.max_players * 100 if tournament.max_players else 0.0,
            completion_rate=len(tournament.winners) / players * 100 if players else 0.0,
            collected_fees=players * tournament.entry_fee,
        )

    def get_tournament_schedule(self, start: datetime, end: datetime) -> list[Tournament]:
        """Tournaments starting in [start, end], earliest first."""
        if start > end:
            raise ValidationError.for_field("start", "start must not be after end")
        items = [t for t in self._tournaments.list() if start <= t.start_time <= end]
        items.sort(key=lambda t: t.start_time)
        return [t.copy() for t in items]

    def get_tournament_recommendations(
        self, address: str, average_bet: int, limit: int = RECOMMENDATION_LIMIT
    ) -> list[Tournament]:
        """Open upcoming tournaments the player hasn't joined, entry fee closest to their average bet first."""
        address = normalize_address(address)
        if limit < 0:
            raise ValidationError.for_field("limit", "limit must be non-negative")
        items = [
            t for t in self._tournaments.list()
            if t.status == TournamentStatus.UPCOMING and address not in t.players and not t.is_full
        ]
        items.sort(key=lambda t: (abs(t.entry_fee - average_bet), t.start_time))
        return [t.copy() for t in items[:limit]]
