"""
playchain/history.py - Tournament History & Analytics.

record_tournament() freezes a copy of a tournament (roster, winners, per-player
game counts) into the history store. Snapshots are independent of the live
registry record, so analytics stay accurate after the registry entry changes
or is pruned. Re-recording the same id replaces the earlier snapshot.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable

from .contract import ChainGateway
from .errors import NotFoundError, ValidationError
from .models import TournamentHistory, normalize_address, utcnow
from .registry import TournamentRegistry
from .store import Codec, Store

logger = logging.getLogger(__name__)

HISTORY_CODEC: Codec[TournamentHistory] = Codec(TournamentHistory.to_dict, TournamentHistory.from_dict)

TOP_PLAYERS = 10


@dataclass(frozen=True)
class PlayerSuccess:
    address: str
    total_prize: int
    tournaments_won: int  # first-place finishes
    placements: int  # any paid rank


@dataclass(frozen=True)
class TournamentStatistics:
    total_tournaments: int
    total_players: int  # distinct addresses
    total_prize_pool: int
    average_players_per_tournament: float
    most_successful_players: list[PlayerSuccess]


@dataclass(frozen=True)
class TrendPoint:
    date: date
    tournaments: int
    players: int
    prize_pool: int


@dataclass(frozen=True)
class TournamentSummary:
    total_players: int
    active_players: int
    total_prize_pool: int
    average_entry_fee: int
    completed_tournaments: int
    active_tournaments: int


def _utc_day(value: date | datetime) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


class TournamentHistoryService:
    def __init__(
        self,
        store: Store,
        registry: TournamentRegistry,
        gateway: ChainGateway | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._history = store.repository("tournament_history", HISTORY_CODEC)
        self.registry = registry
        self.gateway = gateway
        self.clock = clock

    def record_tournament(self, tournament_id: str) -> TournamentHistory:
        """Snapshot the tournament as it is now. Upserts by id."""
        tournament = self.registry.get_tournament(tournament_id)
        if tournament is None:
            raise NotFoundError(f"Tournament not found: {tournament_id}")

        player_games = {}
        for address in tournament.players:
            if self.gateway is not None:
                player_games[address] = self.gateway.get_player_stats(address).total_games
            else:
                player_games[address] = 0

        snapshot = TournamentHistory(
            tournament_id=tournament.id,
            name=tournament.name,
            start_time=tournament.start_time,
            end_time=tournament.end_time,
            entry_fee=tournament.entry_fee,
            prize_pool=tournament.prize_pool,
            status=tournament.status,
            players=tuple(tournament.players),
            winners=tuple(tournament.winners),
            player_games=player_games,
            recorded_at=self.clock(),
        )
        replaced = self._history.get(tournament.id) is not None
        self._history.put(tournament.id, snapshot)
        logger.info(
            f"{'Re-recorded' if replaced else 'Recorded'} history for {tournament.id} "
            f"({len(snapshot.players)} players, {len(snapshot.winners)} winners)"
        )
        return snapshot

    def get_tournament_history(self, tournament_id: str) -> TournamentHistory | None:
        return self._history.get(tournament_id)

    def histories(self) -> list[TournamentHistory]:
        return self._history.list()

    def get_player_history(self, address: str) -> list[TournamentHistory]:
        """Snapshots the player took part in or won, newest start first."""
        address = normalize_address(address)
        items = [h for h in self._history.list() if h.involves(address)]
        items.sort(key=lambda h: h.start_time, reverse=True)
        return items

    def list_history(
        self, active: bool = False, completed: bool = False, offset: int = 0, limit: int = 10
    ) -> tuple[list[TournamentHistory], int]:
        """Snapshots newest start first. active = no end time yet, completed = ended."""
        if offset < 0 or limit < 0:
            raise ValidationError.for_field("offset", "offset and limit must be non-negative")
        items = self._history.list()
        if active and not completed:
            items = [h for h in items if h.end_time is None]
        elif completed and not active:
            items = [h for h in items if h.end_time is not None]
        items.sort(key=lambda h: h.start_time, reverse=True)
        return items[offset:offset + limit], len(items)

    def get_tournament_statistics(self) -> TournamentStatistics:
        histories = self._history.list()

        prize = defaultdict(int)
        firsts = defaultdict(int)
        placements = defaultdict(int)
        for h in histories:
            for w in h.winners:
                prize[w.address] += w.prize
                placements[w.address] += 1
                if w.rank == 1:
                    firsts[w.address] += 1

        ranked = sorted(
            placements,
            key=lambda addr: (-prize[addr], -firsts[addr], addr),
        )
        top = [
            PlayerSuccess(
                address=addr,
                total_prize=prize[addr],
                tournaments_won=firsts[addr],
                placements=placements[addr],
            )
            for addr in ranked[:TOP_PLAYERS]
        ]

        total_seats = sum(len(h.players) for h in histories)
        return TournamentStatistics(
            total_tournaments=len(histories),
            total_players=len({p for h in histories for p in h.players}),
            total_prize_pool=sum(h.prize_pool for h in histories),
            average_players_per_tournament=total_seats / len(histories) if histories else 0.0,
            most_successful_players=top,
        )

    def get_tournament_trends(
        self, start: date | datetime, end: date | datetime
    ) -> list[TrendPoint]:
        """Per-UTC-day totals for tournaments starting in [start, end], ascending.

        Sparse: days without tournaments are left out.
        """
        start_day, end_day = _utc_day(start), _utc_day(end)
        if start_day > end_day:
            raise ValidationError.for_field("start", "start must not be after end")

        buckets: dict[date, list[TournamentHistory]] = defaultdict(list)
        for h in self._history.list():
            day = _utc_day(h.start_time)
            if start_day <= day <= end_day:
                buckets[day].append(h)

        return [
            TrendPoint(
                date=day,
                tournaments=len(items),
                players=sum(len(h.players) for h in items),
                prize_pool=sum(h.prize_pool for h in items),
            )
            for day, items in sorted(buckets.items())
        ]

    def get_tournament_stats(self) -> TournamentSummary:
        histories = self._history.list()
        running = [h for h in histories if h.end_time is None]
        return TournamentSummary(
            total_players=len({p for h in histories for p in h.players}),
            active_players=len({p for h in running for p in h.players}),
            total_prize_pool=sum(h.prize_pool for h in histories),
            average_entry_fee=(
                sum(h.entry_fee for h in histories) // len(histories) if histories else 0
            ),
            completed_tournaments=len(histories) - len(running),
            active_tournaments=len(running),
        )
