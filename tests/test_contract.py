"""Tests for playchain.contract — Web3Gateway against a mocked web3 instance.

No chain needed: the contract objects are MagicMocks, so these cover the
decoding and error wrapping, not the ABI itself.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

pytest.importorskip("web3", reason="web3 not installed")

import playchain.contract as contract_mod
from playchain.contract import TOURNAMENT_ABI, Web3Gateway, load_operator_account
from playchain.errors import GatewayError
from playchain.models import GameOutcome, TournamentParams, TournamentStatus

TOURNAMENT_ADDR = "0x1111111111111111111111111111111111111111"
GAME_ADDR = "0x2222222222222222222222222222222222222222"
PLAYER = "0x" + "ab" * 20
CHECKSUMMED = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"

# Anvil's first default account
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"

START = 1_750_000_000


def _mock_w3():
    w3 = MagicMock()
    contracts = {"tournament": MagicMock(name="tournament"), "game": MagicMock(name="game")}

    def _contract(address, abi):
        return contracts["tournament"] if abi is TOURNAMENT_ABI else contracts["game"]

    w3.eth.contract.side_effect = _contract
    w3.eth.chain_id = 31337
    w3.eth.get_transaction_count.return_value = 7
    tx_hash = MagicMock()
    tx_hash.hex.return_value = "0xfeed"
    w3.eth.send_raw_transaction.return_value = tx_hash
    w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 12}
    return w3, contracts


@pytest.fixture
def w3():
    return _mock_w3()


@pytest.fixture
def account():
    acct = MagicMock()
    acct.address = "0x" + "cd" * 20
    acct.key = b"\x01" * 32
    return acct


def _gateway(w3, account=None, **kwargs):
    mock, _ = w3
    kwargs.setdefault("tournament_address", TOURNAMENT_ADDR)
    kwargs.setdefault("game_address", GAME_ADDR)
    return Web3Gateway("http://unused", account=account, w3=mock, **kwargs)


class TestTournamentReads:
    def test_unset_struct_is_none(self, w3):
        _, contracts = w3
        contracts["tournament"].functions.getTournamentInfo.return_value.call.return_value = (
            "", 0, 0, 0, 0, 0, 0,
        )
        assert _gateway(w3).get_tournament(5) is None

    def test_decodes_tournament(self, w3):
        _, contracts = w3
        fns = contracts["tournament"].functions
        fns.getTournamentInfo.return_value.call.return_value = (
            "Onchain Cup", 10**17, 10**18, 8, 2, START, 1,
        )
        fns.getRegisteredPlayers.return_value.call.return_value = [PLAYER]

        t = _gateway(w3).get_tournament(5)
        assert t.id == "5"
        assert t.chain_id == 5
        assert t.name == "Onchain Cup"
        assert t.entry_fee == 10**17
        assert t.prize_pool == 10**18
        assert t.max_players == 8
        assert t.min_players == 2
        assert t.status == TournamentStatus.ACTIVE
        assert t.players == [PLAYER]
        assert t.start_time == datetime.fromtimestamp(START, tz=timezone.utc)
        assert t.winners == []

    def test_completed_reads_winners(self, w3):
        _, contracts = w3
        fns = contracts["tournament"].functions
        fns.getTournamentInfo.return_value.call.return_value = ("Cup", 1, 100, 4, 2, START, 2)
        fns.getRegisteredPlayers.return_value.call.return_value = [PLAYER]
        fns.getWinners.return_value.call.return_value = [(PLAYER, 60, 1)]

        t = _gateway(w3).get_tournament(1)
        assert t.status == TournamentStatus.COMPLETED
        assert [(w.address, w.prize, w.rank) for w in t.winners] == [(PLAYER, 60, 1)]

    def test_checksummed_addresses_lowercased(self, w3):
        _, contracts = w3
        fns = contracts["tournament"].functions
        fns.getTournamentInfo.return_value.call.return_value = ("Cup", 1, 100, 4, 2, START, 2)
        fns.getRegisteredPlayers.return_value.call.return_value = [CHECKSUMMED]
        fns.getWinners.return_value.call.return_value = [(CHECKSUMMED, 60, 1)]

        gw = _gateway(w3)
        t = gw.get_tournament(1)
        assert t.players == [CHECKSUMMED.lower()]
        assert t.winners[0].address == CHECKSUMMED.lower()
        assert gw.get_registered_players(1) == [CHECKSUMMED.lower()]
        assert gw.get_tournament_winners(1)[0].address == CHECKSUMMED.lower()

    def test_rpc_failure_wrapped(self, w3):
        _, contracts = w3
        contracts["tournament"].functions.getTournamentInfo.return_value.call.side_effect = ConnectionError("down")
        with pytest.raises(GatewayError) as exc:
            _gateway(w3).get_tournament(1)
        assert exc.value.operation == "getTournamentInfo"
        assert isinstance(exc.value.__cause__, ConnectionError)

    def test_unconfigured_contract(self, w3):
        gw = _gateway(w3, tournament_address=None)
        with pytest.raises(GatewayError):
            gw.get_registered_players(1)


class TestTournamentWrites:
    def _params(self):
        return TournamentParams(
            name="Cup",
            start_time=datetime.fromtimestamp(START, tz=timezone.utc),
            entry_fee=10,
            prize_pool=100,
            min_players=2,
            max_players=4,
        )

    def test_writes_need_operator(self, w3):
        with pytest.raises(GatewayError, match="operator wallet"):
            _gateway(w3).create_tournament(self._params())

    def test_create_returns_event_id(self, w3, account):
        mock, contracts = w3
        c = contracts["tournament"]
        c.events.TournamentCreated.return_value.process_receipt.return_value = [
            {"args": {"tournamentId": 42}}
        ]
        assert _gateway(w3, account).create_tournament(self._params()) == 42

        c.functions.createTournament.assert_called_once_with("Cup", 10, 4, START)
        tx = c.functions.createTournament.return_value.build_transaction.call_args[0][0]
        assert tx["from"] == account.address
        assert tx["nonce"] == 7
        assert tx["chainId"] == 31337
        mock.eth.wait_for_transaction_receipt.assert_called_once()

    def test_create_without_event_fails(self, w3, account):
        _, contracts = w3
        contracts["tournament"].events.TournamentCreated.return_value.process_receipt.return_value = []
        with pytest.raises(GatewayError):
            _gateway(w3, account).create_tournament(self._params())

    def test_reverted_tx(self, w3, account):
        mock, _ = w3
        mock.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 12}
        with pytest.raises(GatewayError, match="reverted"):
            _gateway(w3, account).distribute_prizes(3)

    def test_join_sends_entry_fee(self, w3, account):
        _, contracts = w3
        tx_hash = _gateway(w3, account).join_tournament(3, PLAYER, 500)
        assert tx_hash == "0xfeed"
        fn = contracts["tournament"].functions.joinTournament
        fn.assert_called_once_with(3)
        assert fn.return_value.build_transaction.call_args[0][0]["value"] == 500

    def test_status_update_uses_codes(self, w3, account):
        _, contracts = w3
        _gateway(w3, account).update_tournament_status(3, TournamentStatus.COMPLETED)
        contracts["tournament"].functions.updateTournamentStatus.assert_called_once_with(3, 2)


class TestGameReads:
    def test_player_stats(self, w3):
        _, contracts = w3
        contracts["game"].functions.getPlayerStats.return_value.call.return_value = (10, 6, 3, 1, 500, 900, 300)
        s = _gateway(w3).get_player_stats(PLAYER)
        assert (s.total_games, s.wins, s.losses, s.draws) == (10, 6, 3, 1)
        assert s.total_win_amount == 900
        assert s.highest_win == 300

    def test_history_pages_and_sorts(self, w3, monkeypatch):
        monkeypatch.setattr(contract_mod, "HISTORY_PAGE", 2)
        _, contracts = w3
        real_tx = b"\x12" * 32
        contracts["game"].functions.getPlayerHistory.return_value.call.side_effect = [
            [(10, 0, START + 60, real_tx), (20, 1, START, b"\x00" * 32)],
            [(30, 2, START + 120, b"\x00" * 32)],
        ]
        games = _gateway(w3).get_game_history(PLAYER)

        assert [g.bet_amount for g in games] == [20, 10, 30]
        assert [g.outcome for g in games] == [GameOutcome.LOSS, GameOutcome.WIN, GameOutcome.DRAW]
        assert games[1].id == "0x" + "12" * 32
        # Zero tx hash falls back to address:index
        assert games[0].id == f"{PLAYER}:1"
        assert games[2].id == f"{PLAYER}:2"
        assert contracts["game"].functions.getPlayerHistory.return_value.call.call_count == 2

    def test_balance(self, w3):
        _, contracts = w3
        contracts["game"].functions.balanceOf.return_value.call.return_value = 12345
        assert _gateway(w3).get_balance(PLAYER) == 12345


class TestOperatorAccount:
    def test_none_without_key(self):
        assert load_operator_account(None) is None
        assert load_operator_account("") is None

    def test_bad_key_is_none(self):
        pytest.importorskip("eth_account")
        assert load_operator_account("not-a-key") is None

    def test_loads_key(self):
        eth_account = pytest.importorskip("eth_account")
        account = load_operator_account(TEST_PRIVATE_KEY)
        assert account.address == eth_account.Account.from_key(TEST_PRIVATE_KEY).address
