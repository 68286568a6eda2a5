"""Tests for playchain.registry — tournament lifecycle, joins and payouts."""

from datetime import timedelta

import pytest

from playchain.errors import (
    CapacityError,
    DuplicateError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from playchain.models import TournamentParams, TournamentRules, TournamentStatus, Winner
from playchain.notifications import BROADCAST
from playchain.history import TournamentHistoryService
from playchain.registry import TournamentRegistry

from conftest import NOW

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20
DAVE = "0x" + "d4" * 20
# Mixed-case (EIP-55 style) as web3 decodes addresses
CHECKSUMMED = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"


def _params(**overrides) -> TournamentParams:
    fields = dict(
        name="Friday Night",
        start_time=NOW + timedelta(hours=1),
        entry_fee=100,
        prize_pool=1000,
        min_players=2,
        max_players=4,
    )
    fields.update(overrides)
    return TournamentParams(**fields)


@pytest.fixture
def registry(store, notifier, clock):
    return TournamentRegistry(store, notifier=notifier, clock=clock)


@pytest.fixture
def chain_registry(store, notifier, clock, gateway):
    return TournamentRegistry(store, notifier=notifier, gateway=gateway, clock=clock)


def _types(notifier, address):
    items, _ = notifier.get_notifications(address, limit=100)
    return [n.type for n in items]


# ============================================================================
# Creation
# ============================================================================


class TestCreateTournament:
    def test_new_tournament_is_upcoming_and_empty(self, registry):
        t = registry.create_tournament(_params())
        assert t.status == TournamentStatus.UPCOMING
        assert t.players == []
        assert t.winners == []
        assert t.end_time is None
        assert registry.get_tournament(t.id) == t

    def test_min_players_above_max_rejected(self, registry):
        with pytest.raises(ValidationError) as exc:
            registry.create_tournament(_params(min_players=5, max_players=4))
        assert [e.field for e in exc.value.errors] == ["min_players"]

    @pytest.mark.parametrize("field", ["entry_fee", "prize_pool"])
    def test_negative_amount_rejected(self, registry, field):
        with pytest.raises(ValidationError) as exc:
            registry.create_tournament(_params(**{field: -1}))
        assert field in [e.field for e in exc.value.errors]

    def test_reports_every_bad_field(self, registry):
        with pytest.raises(ValidationError) as exc:
            registry.create_tournament(_params(name=" ", entry_fee=-1, prize_pool=-1))
        fields = {e.field for e in exc.value.errors}
        assert fields == {"name", "entry_fee", "prize_pool"}

    def test_bad_rules_rejected(self, registry):
        rules = TournamentRules(min_bet=200, max_bet=100)
        with pytest.raises(ValidationError):
            registry.create_tournament(_params(rules=rules))

    def test_category_bounds_enforced(self, registry):
        # beginner caps entry fee at 50
        with pytest.raises(ValidationError) as exc:
            registry.create_tournament(_params(category_id="beginner", entry_fee=100))
        assert "entry_fee" in [e.field for e in exc.value.errors]

    def test_unknown_category_rejected(self, registry):
        with pytest.raises(ValidationError) as exc:
            registry.create_tournament(_params(category_id="grandmaster"))
        assert "category_id" in [e.field for e in exc.value.errors]

    def test_naive_start_time_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.create_tournament(_params(start_time=NOW.replace(tzinfo=None)))

    def test_broadcasts_registration_open(self, registry, notifier):
        registry.create_tournament(_params())
        assert _types(notifier, ALICE) == ["registration_open"]

    def test_returned_copy_is_detached(self, registry):
        t = registry.create_tournament(_params())
        t.players.append(ALICE)
        assert registry.get_tournament(t.id).players == []


# ============================================================================
# Joining
# ============================================================================


class TestJoinTournament:
    def test_join_keeps_order(self, registry):
        t = registry.create_tournament(_params())
        registry.join_tournament(t.id, BOB, 100)
        t = registry.join_tournament(t.id, ALICE, 100)
        assert t.players == [BOB, ALICE]

    def test_address_is_normalized(self, registry):
        t = registry.create_tournament(_params())
        t = registry.join_tournament(t.id, "  " + ALICE.upper().replace("0X", "0x") + " ", 100)
        assert t.players == [ALICE]

    def test_unknown_tournament(self, registry):
        with pytest.raises(NotFoundError):
            registry.join_tournament("missing", ALICE, 100)

    def test_second_join_is_duplicate(self, registry):
        t = registry.create_tournament(_params())
        registry.join_tournament(t.id, ALICE, 100)
        with pytest.raises(DuplicateError):
            registry.join_tournament(t.id, ALICE, 100)
        assert registry.get_tournament(t.id).players == [ALICE]

    def test_join_past_capacity(self, registry):
        t = registry.create_tournament(_params(max_players=2))
        registry.join_tournament(t.id, ALICE, 100)
        registry.join_tournament(t.id, BOB, 100)
        with pytest.raises(CapacityError):
            registry.join_tournament(t.id, CAROL, 100)
        assert len(registry.get_tournament(t.id).players) == 2

    def test_duplicate_checked_before_capacity(self, registry):
        t = registry.create_tournament(_params(min_players=1, max_players=1))
        registry.join_tournament(t.id, ALICE, 100)
        with pytest.raises(DuplicateError):
            registry.join_tournament(t.id, ALICE, 100)

    def test_underpaid_entry_rejected(self, registry):
        t = registry.create_tournament(_params())
        with pytest.raises(ValidationError):
            registry.join_tournament(t.id, ALICE, 99)
        assert registry.get_tournament(t.id).players == []

    def test_cannot_join_completed(self, registry):
        t = registry.create_tournament(_params())
        registry.update_status(t.id, TournamentStatus.COMPLETED)
        with pytest.raises(ValidationError):
            registry.join_tournament(t.id, ALICE, 100)

    def test_join_notifies_player(self, registry, notifier):
        t = registry.create_tournament(_params())
        registry.join_tournament(t.id, ALICE, 100)
        assert "player_joined" in _types(notifier, ALICE)
        assert "player_joined" not in _types(notifier, BOB)


# ============================================================================
# Lifecycle
# ============================================================================


class TestUpdateStatus:
    def test_forward_transitions(self, registry, clock):
        t = registry.create_tournament(_params())
        t = registry.update_status(t.id, TournamentStatus.ACTIVE)
        assert t.status == TournamentStatus.ACTIVE
        assert t.end_time is None
        clock.advance(hours=3)
        t = registry.update_status(t.id, TournamentStatus.COMPLETED)
        assert t.status == TournamentStatus.COMPLETED
        assert t.end_time == clock.now

    def test_skip_active_allowed(self, registry):
        t = registry.create_tournament(_params())
        t = registry.update_status(t.id, TournamentStatus.COMPLETED)
        assert t.status == TournamentStatus.COMPLETED

    def test_same_status_is_noop(self, registry, notifier):
        t = registry.create_tournament(_params())
        registry.update_status(t.id, TournamentStatus.ACTIVE)
        before = _types(notifier, ALICE)
        t = registry.update_status(t.id, TournamentStatus.ACTIVE)
        assert t.status == TournamentStatus.ACTIVE
        assert _types(notifier, ALICE) == before

    @pytest.mark.parametrize(
        "path",
        [
            [TournamentStatus.ACTIVE, TournamentStatus.UPCOMING],
            [TournamentStatus.COMPLETED, TournamentStatus.ACTIVE],
            [TournamentStatus.COMPLETED, TournamentStatus.UPCOMING],
        ],
    )
    def test_backwards_rejected(self, registry, path):
        t = registry.create_tournament(_params())
        registry.update_status(t.id, path[0])
        with pytest.raises(ValidationError):
            registry.update_status(t.id, path[1])
        assert registry.get_tournament(t.id).status == path[0]

    def test_accepts_plain_string(self, registry):
        t = registry.create_tournament(_params())
        assert registry.update_status(t.id, "active").status == TournamentStatus.ACTIVE

    def test_start_and_end_broadcast(self, registry, notifier):
        t = registry.create_tournament(_params())
        registry.update_status(t.id, TournamentStatus.ACTIVE)
        registry.update_status(t.id, TournamentStatus.COMPLETED)
        assert _types(notifier, CAROL)[:2] == ["tournament_end", "tournament_start"]


class TestWinners:
    def _completed(self, registry, players=(ALICE, BOB)):
        t = registry.create_tournament(_params())
        for p in players:
            registry.join_tournament(t.id, p, 100)
        registry.update_status(t.id, TournamentStatus.ACTIVE)
        registry.update_status(t.id, TournamentStatus.COMPLETED)
        return t.id

    def test_winners_empty_until_completed(self, registry):
        t = registry.create_tournament(_params())
        registry.join_tournament(t.id, ALICE, 100)
        with pytest.raises(ValidationError):
            registry.set_winners(t.id, [Winner(ALICE, 600, 1)])
        registry.update_status(t.id, TournamentStatus.ACTIVE)
        with pytest.raises(ValidationError):
            registry.set_winners(t.id, [Winner(ALICE, 600, 1)])
        assert registry.get_tournament(t.id).winners == []

    def test_set_winners_sorted_by_rank(self, registry):
        tid = self._completed(registry)
        t = registry.set_winners(tid, [Winner(BOB, 300, 2), Winner(ALICE, 600, 1)])
        assert [w.rank for w in t.winners] == [1, 2]
        assert t.winners[0].address == ALICE

    def test_winner_must_be_registered(self, registry):
        tid = self._completed(registry)
        with pytest.raises(ValidationError) as exc:
            registry.set_winners(tid, [Winner(CAROL, 600, 1)])
        assert exc.value.errors[0].field == "winners[0].address"

    def test_repeated_rank_rejected(self, registry):
        tid = self._completed(registry)
        with pytest.raises(ValidationError):
            registry.set_winners(tid, [Winner(ALICE, 600, 1), Winner(BOB, 300, 1)])


class TestDistributePrizes:
    def _active(self, registry, players, pool=1000, category_id=None, fee=100):
        t = registry.create_tournament(
            _params(max_players=8, prize_pool=pool, category_id=category_id, entry_fee=fee)
        )
        for p in players:
            registry.join_tournament(t.id, p, fee)
        registry.update_status(t.id, TournamentStatus.ACTIVE)
        return t.id

    def test_ranks_by_score_and_completes(self, registry):
        tid = self._active(registry, [ALICE, BOB, CAROL, DAVE])
        winners = registry.distribute_prizes(tid, {ALICE: 5, BOB: 9, CAROL: 7, DAVE: 1})
        # beginner table with 4 players: 60% / 30%
        assert [(w.address, w.prize, w.rank) for w in winners] == [(BOB, 600, 1), (CAROL, 300, 2)]
        t = registry.get_tournament(tid)
        assert t.status == TournamentStatus.COMPLETED
        assert t.winners == winners

    def test_ties_keep_join_order(self, registry):
        tid = self._active(registry, [CAROL, ALICE, BOB, DAVE])
        winners = registry.distribute_prizes(tid, {ALICE: 3, CAROL: 3})
        assert [w.address for w in winners] == [CAROL, ALICE]

    def test_payout_never_exceeds_pool(self, registry):
        tid = self._active(registry, [ALICE, BOB, CAROL, DAVE], pool=999)
        winners = registry.distribute_prizes(tid, {})
        assert sum(w.prize for w in winners) <= 999

    def test_unregistered_scorer_rejected(self, registry):
        tid = self._active(registry, [ALICE, BOB])
        with pytest.raises(ValidationError):
            registry.distribute_prizes(tid, {CAROL: 10})
        assert registry.get_tournament(tid).status == TournamentStatus.ACTIVE

    def test_only_once(self, registry):
        tid = self._active(registry, [ALICE, BOB])
        registry.distribute_prizes(tid, {ALICE: 1})
        with pytest.raises(ValidationError):
            registry.distribute_prizes(tid, {ALICE: 1})

    def test_winners_notified(self, registry, notifier):
        tid = self._active(registry, [ALICE, BOB])
        registry.distribute_prizes(tid, {BOB: 2, ALICE: 1})
        assert "prize_distribution" in _types(notifier, BOB)
        assert "prize_distribution" not in _types(notifier, ALICE)


# ============================================================================
# Sweep
# ============================================================================


class TestReconcile:
    def test_nothing_due(self, registry):
        registry.create_tournament(_params())
        assert registry.reconcile() == []

    def test_starts_when_due(self, registry, clock):
        t = registry.create_tournament(_params())
        clock.advance(hours=2)
        changes = registry.reconcile()
        assert [(c.previous, c.current) for c in changes] == [
            (TournamentStatus.UPCOMING, TournamentStatus.ACTIVE)
        ]
        assert registry.get_tournament(t.id).status == TournamentStatus.ACTIVE

    def test_overdue_goes_straight_through(self, registry, clock):
        t = registry.create_tournament(_params(duration=3600))
        clock.advance(days=1)
        changes = registry.reconcile()
        assert [c.current for c in changes] == [TournamentStatus.ACTIVE, TournamentStatus.COMPLETED]
        done = registry.get_tournament(t.id)
        assert done.status == TournamentStatus.COMPLETED
        assert done.end_time == clock.now

    def test_explicit_now(self, registry):
        t = registry.create_tournament(_params())
        registry.reconcile(now=NOW + timedelta(hours=1))
        assert registry.get_tournament(t.id).status == TournamentStatus.ACTIVE

    def test_completed_left_alone(self, registry, clock):
        t = registry.create_tournament(_params())
        registry.update_status(t.id, TournamentStatus.COMPLETED)
        clock.advance(days=5)
        assert registry.reconcile() == []


# ============================================================================
# Queries
# ============================================================================


class TestListing:
    def test_newest_start_first(self, registry):
        ids = [
            registry.create_tournament(_params(name=f"T{i}", start_time=NOW + timedelta(days=i))).id
            for i in range(3)
        ]
        listed = [t.id for t in registry.get_all_tournaments()]
        assert listed == list(reversed(ids))

    def test_pagination(self, registry):
        for i in range(5):
            registry.create_tournament(_params(name=f"T{i}", start_time=NOW + timedelta(days=i)))
        page = registry.get_all_tournaments(offset=1, limit=2)
        assert [t.name for t in page] == ["T3", "T2"]
        assert registry.count_tournaments() == 5

    def test_status_filters(self, registry):
        upcoming = registry.create_tournament(_params(name="up"))
        active = registry.create_tournament(_params(name="on"))
        done = registry.create_tournament(_params(name="done"))
        registry.update_status(active.id, TournamentStatus.ACTIVE)
        registry.update_status(done.id, TournamentStatus.COMPLETED)

        assert [t.id for t in registry.get_all_tournaments(active=True)] == [active.id]
        assert [t.id for t in registry.get_all_tournaments(completed=True)] == [done.id]
        both = {t.id for t in registry.get_all_tournaments(active=True, completed=True)}
        assert both == {active.id, done.id}
        assert registry.count_tournaments() == 3
        assert upcoming.id not in both

    def test_negative_offset_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.get_all_tournaments(offset=-1)

    def test_unknown_returns_none(self, registry):
        assert registry.get_tournament("nope") is None


class TestAnalytics:
    def test_empty_tournament(self, registry):
        t = registry.create_tournament(_params())
        a = registry.get_tournament_analytics(t.id)
        assert a.total_players == 0
        assert a.participation_rate == 0.0
        assert a.completion_rate == 0.0
        assert a.collected_fees == 0

    def test_rates_after_completion(self, registry):
        t = registry.create_tournament(_params())
        for p in (ALICE, BOB):
            registry.join_tournament(t.id, p, 100)
        registry.update_status(t.id, TournamentStatus.ACTIVE)
        registry.update_status(t.id, TournamentStatus.COMPLETED)
        registry.set_winners(t.id, [Winner(address=ALICE, prize=1000, rank=1)])

        a = registry.get_tournament_analytics(t.id)
        assert a.status == TournamentStatus.COMPLETED
        assert (a.total_players, a.max_players) == (2, 4)
        assert a.participation_rate == 50.0
        assert a.completion_rate == 50.0
        assert a.collected_fees == 200

    def test_unknown_tournament(self, registry):
        with pytest.raises(NotFoundError):
            registry.get_tournament_analytics("nope")


class TestSchedule:
    def test_window_is_inclusive_and_ascending(self, registry):
        made = [
            registry.create_tournament(_params(name=f"T{i}", start_time=NOW + timedelta(days=i)))
            for i in (3, 1, 2, 5)
        ]
        window = registry.get_tournament_schedule(NOW + timedelta(days=1), NOW + timedelta(days=3))
        assert [t.name for t in window] == ["T1", "T2", "T3"]
        assert made[3].id not in {t.id for t in window}

    def test_empty_window(self, registry):
        registry.create_tournament(_params())
        assert registry.get_tournament_schedule(NOW - timedelta(days=2), NOW - timedelta(days=1)) == []

    def test_inverted_window_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.get_tournament_schedule(NOW + timedelta(days=1), NOW)


class TestRecommendations:
    def test_closest_entry_fee_first(self, registry):
        for fee in (500, 40, 120, 60):
            registry.create_tournament(_params(name=f"fee-{fee}", entry_fee=fee))
        picks = registry.get_tournament_recommendations(ALICE, average_bet=50, limit=3)
        assert [t.entry_fee for t in picks] == [40, 60, 120]

    def test_skips_joined_full_and_started(self, registry):
        joined = registry.create_tournament(_params(name="joined"))
        registry.join_tournament(joined.id, ALICE, 100)
        full = registry.create_tournament(_params(name="full", min_players=1, max_players=1))
        registry.join_tournament(full.id, BOB, 100)
        started = registry.create_tournament(_params(name="started"))
        registry.update_status(started.id, TournamentStatus.ACTIVE)
        open_ = registry.create_tournament(_params(name="open"))

        picks = registry.get_tournament_recommendations(ALICE.upper().replace("0X", "0x"), average_bet=100)
        assert [t.id for t in picks] == [open_.id]

    def test_negative_limit_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.get_tournament_recommendations(ALICE, average_bet=0, limit=-1)


# ============================================================================
# Chain Gateway
# ============================================================================


class TestWithGateway:
    def test_create_uses_chain_id(self, chain_registry, gateway):
        t = chain_registry.create_tournament(_params())
        assert t.id == "1"
        assert t.chain_id == 1
        assert ("createTournament", "Friday Night") in gateway.calls

    def test_create_failure_stores_nothing(self, chain_registry, gateway):
        gateway.fail.add("createTournament")
        with pytest.raises(GatewayError):
            chain_registry.create_tournament(_params())
        assert chain_registry.count_tournaments() == 0

    def test_failed_join_leaves_roster(self, chain_registry, gateway):
        t = chain_registry.create_tournament(_params())
        gateway.fail.add("joinTournament")
        with pytest.raises(GatewayError):
            chain_registry.join_tournament(t.id, ALICE, 100)
        assert chain_registry.get_tournament(t.id).players == []

    def test_status_goes_to_chain(self, chain_registry, gateway):
        t = chain_registry.create_tournament(_params())
        chain_registry.update_status(t.id, TournamentStatus.ACTIVE)
        assert gateway.tournaments[1].status == TournamentStatus.ACTIVE

    def test_failed_status_change_leaves_record(self, chain_registry, gateway):
        t = chain_registry.create_tournament(_params())
        gateway.fail.add("updateTournamentStatus")
        with pytest.raises(GatewayError):
            chain_registry.update_status(t.id, TournamentStatus.ACTIVE)
        assert chain_registry.get_tournament(t.id).status == TournamentStatus.UPCOMING

    def test_unknown_numeric_id_read_through(self, chain_registry, gateway):
        gateway.seed(7, players=[ALICE])
        t = chain_registry.get_tournament("7")
        assert t.name == "Onchain #7"
        assert t.players == [ALICE]
        # Now cached locally
        gateway.fail.add("getTournamentInfo")
        assert chain_registry.get_tournament("7").players == [ALICE]

    def test_checksummed_chain_roster_blocks_rejoin(self, chain_registry, gateway):
        gateway.seed(7, players=[CHECKSUMMED])
        assert chain_registry.get_tournament("7").players == [CHECKSUMMED.lower()]
        with pytest.raises(DuplicateError):
            chain_registry.join_tournament("7", CHECKSUMMED, 10)
        assert len(chain_registry.get_tournament("7").players) == 1

    def test_checksummed_chain_winner_found_in_history(self, store, chain_registry, gateway, clock):
        gateway.seed(
            8,
            players=[CHECKSUMMED, ALICE],
            status=TournamentStatus.COMPLETED,
            winners=[Winner(CHECKSUMMED, 600, 1)],
        )
        history = TournamentHistoryService(store, chain_registry, clock=clock)
        history.record_tournament("8")
        found = history.get_player_history(CHECKSUMMED)
        assert [h.tournament_id for h in found] == ["8"]
        assert found[0].winners[0].address == CHECKSUMMED.lower()

    def test_non_numeric_id_never_hits_chain(self, chain_registry, gateway):
        assert chain_registry.get_tournament("abc") is None
        assert gateway.calls == []

    def test_sweep_skips_failing_tournament(self, chain_registry, gateway, clock):
        first = chain_registry.create_tournament(_params(name="first"))
        gateway.fail.add("updateTournamentStatus")
        clock.advance(hours=2)
        assert chain_registry.reconcile() == []
        assert chain_registry.get_tournament(first.id).status == TournamentStatus.UPCOMING

        gateway.fail.clear()
        changes = chain_registry.reconcile()
        assert [c.tournament_id for c in changes] == [first.id]

    def test_prize_payout_sent_onchain(self, chain_registry, gateway):
        t = chain_registry.create_tournament(_params())
        chain_registry.join_tournament(t.id, ALICE, 100)
        chain_registry.join_tournament(t.id, BOB, 100)
        chain_registry.distribute_prizes(t.id, {ALICE: 1})
        assert ("distributePrizes", 1) in gateway.calls


def test_full_lifecycle_broadcasts_reach_everyone(registry, notifier):
    t = registry.create_tournament(_params())
    items, total = notifier.get_notifications(DAVE)
    assert total == 1
    assert items[0].recipient == BROADCAST
    assert items[0].payload.tournament_id == t.id
