"""Shared fixtures: in-memory store, a settable clock, and a fake chain gateway."""

from datetime import datetime, timedelta, timezone

import pytest

from playchain.errors import GatewayError
from playchain.models import ChainPlayerStats, Tournament, TournamentStatus, Winner
from playchain.notifications import NotificationDispatcher
from playchain.store import MemoryStore

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway:
    """In-memory stand-in for the tournament/game contracts.

    Operations named in `fail` raise GatewayError; every call is logged in `calls`.
    """

    def __init__(self):
        self.tournaments: dict[int, Tournament] = {}
        self.games = {}
        self.stats = {}
        self.balances = {}
        self.fail: set[str] = set()
        self.calls: list[tuple] = []
        self._next_id = 1

    def _check(self, operation: str, *args):
        self.calls.append((operation, *args))
        if operation in self.fail:
            raise GatewayError(operation, "rpc unavailable")

    def get_tournament(self, chain_id):
        self._check("getTournamentInfo", chain_id)
        t = self.tournaments.get(chain_id)
        return t.copy() if t is not None else None

    def get_registered_players(self, chain_id):
        self._check("getRegisteredPlayers", chain_id)
        return list(self.tournaments[chain_id].players)

    def get_tournament_winners(self, chain_id):
        self._check("getWinners", chain_id)
        return list(self.tournaments[chain_id].winners)

    def get_player_stats(self, address):
        self._check("getPlayerStats", address)
        return self.stats.get(address, ChainPlayerStats(address=address))

    def get_game_history(self, address):
        self._check("getPlayerHistory", address)
        return list(self.games.get(address, []))

    def create_tournament(self, params):
        self._check("createTournament", params.name)
        chain_id = self._next_id
        self._next_id += 1
        self.tournaments[chain_id] = Tournament(
            id=str(chain_id),
            name=params.name,
            start_time=params.start_time,
            entry_fee=params.entry_fee,
            prize_pool=params.prize_pool,
            min_players=params.min_players,
            max_players=params.max_players,
            chain_id=chain_id,
        )
        return chain_id

    def join_tournament(self, chain_id, address, entry_fee):
        self._check("joinTournament", chain_id, address)
        self.tournaments[chain_id].players.append(address)
        return f"0xjoin{chain_id}"

    def distribute_prizes(self, chain_id):
        self._check("distributePrizes", chain_id)
        return f"0xpay{chain_id}"

    def update_tournament_status(self, chain_id, status):
        self._check("updateTournamentStatus", chain_id, status)
        self.tournaments[chain_id].status = TournamentStatus(status)
        return f"0xstatus{chain_id}"

    def get_balance(self, address):
        self._check("balanceOf", address)
        return self.balances.get(address, 0)

    def seed(self, chain_id: int, **fields) -> Tournament:
        """Put a tournament 'onchain' directly."""
        defaults = dict(
            id=str(chain_id),
            name=f"Onchain #{chain_id}",
            start_time=NOW,
            entry_fee=10,
            prize_pool=1000,
            min_players=2,
            max_players=8,
            chain_id=chain_id,
        )
        defaults.update(fields)
        defaults["winners"] = [
            w if isinstance(w, Winner) else Winner(**w) for w in defaults.get("winners", [])
        ]
        t = Tournament(**defaults)
        self.tournaments[chain_id] = t
        self._next_id = max(self._next_id, chain_id + 1)
        return t


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier(store):
    return NotificationDispatcher(store)
