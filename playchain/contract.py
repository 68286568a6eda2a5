"""
playchain/contract.py - Chain Gateway: tournament and game contracts via web3.py.

The services talk to the chain through the ChainGateway protocol. Web3Gateway
is the real implementation; tests substitute a fake. Every failure (network,
timeout, revert) surfaces as GatewayError and is never retried here.

Reads are plain eth_call. Writes are signed by the operator wallet
(OPERATOR_PRIVATE_KEY): build, sign, send, then wait for the receipt.

Install: pip install web3 eth-account
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, TypeVar

from .errors import GatewayError
from .models import (
    ChainPlayerStats,
    GameOutcome,
    GameRecord,
    Tournament,
    TournamentParams,
    TournamentStatus,
    Winner,
    normalize_address,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

# Tournament contract ABI, subset used by the service.
TOURNAMENT_ABI = [
    {
        "type": "function",
        "name": "createTournament",
        "inputs": [
            {"name": "name", "type": "string"},
            {"name": "entryFee", "type": "uint256"},
            {"name": "maxPlayers", "type": "uint256"},
            {"name": "startTime", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "joinTournament",
        "inputs": [{"name": "tournamentId", "type": "uint256"}],
        "outputs": [],
        "stateMutability": "payable",
    },
    {
        "type": "function",
        "name": "getTournamentInfo",
        "inputs": [{"name": "tournamentId", "type": "uint256"}],
        "outputs": [
            {"name": "name", "type": "string"},
            {"name": "entryFee", "type": "uint256"},
            {"name": "prizePool", "type": "uint256"},
            {"name": "maxPlayers", "type": "uint256"},
            {"name": "registeredPlayers", "type": "uint256"},
            {"name": "startTime", "type": "uint256"},
            {"name": "status", "type": "uint8"},
        ],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "getRegisteredPlayers",
        "inputs": [{"name": "tournamentId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address[]"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "getWinners",
        "inputs": [{"name": "tournamentId", "type": "uint256"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [
                    {"name": "player", "type": "address"},
                    {"name": "prize", "type": "uint256"},
                    {"name": "rank", "type": "uint256"},
                ],
            }
        ],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "distributePrizes",
        "inputs": [{"name": "tournamentId", "type": "uint256"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "updateTournamentStatus",
        "inputs": [
            {"name": "tournamentId", "type": "uint256"},
            {"name": "status", "type": "uint8"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "event",
        "name": "TournamentCreated",
        "inputs": [
            {"name": "tournamentId", "type": "uint256", "indexed": True},
            {"name": "name", "type": "string", "indexed": False},
        ],
        "anonymous": False,
    },
]

# Game contract ABI, subset used by the service.
GAME_ABI = [
    {
        "type": "function",
        "name": "getPlayerStats",
        "inputs": [{"name": "player", "type": "address"}],
        "outputs": [
            {"name": "totalGames", "type": "uint256"},
            {"name": "wins", "type": "uint256"},
            {"name": "losses", "type": "uint256"},
            {"name": "draws", "type": "uint256"},
            {"name": "totalBetAmount", "type": "uint256"},
            {"name": "totalWinAmount", "type": "uint256"},
            {"name": "highestWin", "type": "uint256"},
            {"name": "currentStreak", "type": "uint256"},
            {"name": "bestStreak", "type": "uint256"},
        ],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "getPlayerHistory",
        "inputs": [
            {"name": "player", "type": "address"},
            {"name": "offset", "type": "uint256"},
            {"name": "limit", "type": "uint256"},
        ],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [
                    {"name": "betAmount", "type": "uint256"},
                    {"name": "outcome", "type": "uint8"},
                    {"name": "timestamp", "type": "uint256"},
                    {"name": "txHash", "type": "bytes32"},
                ],
            }
        ],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "balanceOf",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]

STATUS_CODES = {
    TournamentStatus.UPCOMING: 0,
    TournamentStatus.ACTIVE: 1,
    TournamentStatus.COMPLETED: 2,
}

# Page size for getPlayerHistory
HISTORY_PAGE = 100


class ChainGateway(Protocol):
    """What the services need from the chain. Every method may raise GatewayError."""

    def get_tournament(self, chain_id: int) -> Tournament | None: ...

    def get_registered_players(self, chain_id: int) -> list[str]: ...

    def get_tournament_winners(self, chain_id: int) -> list[Winner]: ...

    def get_player_stats(self, address: str) -> ChainPlayerStats: ...

    def get_game_history(self, address: str) -> list[GameRecord]: ...

    def create_tournament(self, params: TournamentParams) -> int: ...

    def join_tournament(self, chain_id: int, address: str, entry_fee: int) -> str: ...

    def distribute_prizes(self, chain_id: int) -> str: ...

    def update_tournament_status(self, chain_id: int, status: TournamentStatus) -> str: ...

    def get_balance(self, address: str) -> int: ...


def _require_web3():
    """Import and return web3, raising a clear error if not installed."""
    try:
        from web3 import Web3
        return Web3
    except ImportError:
        raise ImportError(
            "web3 is required for contract operations. "
            "Install it with: pip install web3"
        )


def _from_epoch(seconds: int) -> datetime:
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class Web3Gateway:
    """ChainGateway backed by deployed tournament + game contracts.

    Args:
        rpc_url: JSON-RPC endpoint.
        tournament_address: Deployed tournament contract (None disables those calls).
        game_address: Deployed game contract (None disables those calls).
        account: eth_account LocalAccount used to sign writes. Reads work without it.
        tx_timeout: Seconds to wait for a transaction receipt.
    """

    def __init__(
        self,
        rpc_url: str,
        tournament_address: str | None = None,
        game_address: str | None = None,
        account=None,
        tx_timeout: int = 30,
        w3=None,
    ):
        Web3 = _require_web3()
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url))
        self.account = account
        self.tx_timeout = tx_timeout
        self.tournaments = None
        self.games = None
        if tournament_address:
            self.tournaments = self.w3.eth.contract(
                address=Web3.to_checksum_address(tournament_address), abi=TOURNAMENT_ABI
            )
        if game_address:
            self.games = self.w3.eth.contract(
                address=Web3.to_checksum_address(game_address), abi=GAME_ABI
            )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable[[], R]) -> R:
        try:
            return fn()
        except GatewayError:
            raise
        except Exception as e:
            logger.warning(f"Gateway {operation} failed: {e}")
            raise GatewayError(operation, e) from e

    def _tournament_contract(self, operation: str):
        if self.tournaments is None:
            raise GatewayError(operation, "tournament contract not configured")
        return self.tournaments

    def _game_contract(self, operation: str):
        if self.games is None:
            raise GatewayError(operation, "game contract not configured")
        return self.games

    def _send(self, operation: str, fn, value: int = 0):
        """Sign, send, and wait for a contract write. Returns (tx_hash_hex, receipt)."""
        if self.account is None:
            raise GatewayError(operation, "operator wallet not configured")

        tx = fn.build_transaction(
            {
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address),
                "chainId": self.w3.eth.chain_id,
                "value": value,
            }
        )
        signed_tx = self.w3.eth.account.sign_transaction(tx, self.account.key)
        tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        logger.info(f"{operation} tx sent: {tx_hash.hex()}")

        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        if receipt["status"] != 1:
            raise GatewayError(operation, f"reverted: {tx_hash.hex()}")

        logger.info(f"{operation} confirmed in block {receipt['blockNumber']}")
        return tx_hash.hex(), receipt

    # ------------------------------------------------------------------
    # Tournament contract
    # ------------------------------------------------------------------

    def get_tournament(self, chain_id: int) -> Tournament | None:
        def _read():
            contract = self._tournament_contract("getTournamentInfo")
            raw = contract.functions.getTournamentInfo(chain_id).call()
            name, entry_fee, prize_pool, max_players, _registered, start, status = raw
            # Unset struct slots come back zeroed
            if not name and max_players == 0:
                return None
            raw_players = contract.functions.getRegisteredPlayers(chain_id).call()
            players = [normalize_address(p) for p in raw_players]
            status = TournamentStatus.from_chain(status)
            winners = []
            if status == TournamentStatus.COMPLETED:
                winners = self._read_winners(contract, chain_id)
            return Tournament(
                id=str(chain_id),
                name=name,
                start_time=_from_epoch(start),
                entry_fee=int(entry_fee),
                prize_pool=int(prize_pool),
                min_players=min(2, int(max_players)),
                max_players=int(max_players),
                status=status,
                players=players,
                winners=winners,
                chain_id=chain_id,
            )

        return self._call("getTournamentInfo", _read)

    def get_registered_players(self, chain_id: int) -> list[str]:
        return self._call(
            "getRegisteredPlayers",
            lambda: [
                normalize_address(p)
                for p in self._tournament_contract("getRegisteredPlayers")
                .functions.getRegisteredPlayers(chain_id)
                .call()
            ],
        )

    def get_tournament_winners(self, chain_id: int) -> list[Winner]:
        return self._call(
            "getWinners",
            lambda: self._read_winners(self._tournament_contract("getWinners"), chain_id),
        )

    @staticmethod
    def _read_winners(contract, chain_id: int) -> list[Winner]:
        raw = contract.functions.getWinners(chain_id).call()
        return [Winner(address=normalize_address(w[0]), prize=int(w[1]), rank=int(w[2])) for w in raw]

    def create_tournament(self, params: TournamentParams) -> int:
        def _write():
            contract = self._tournament_contract("createTournament")
            fn = contract.functions.createTournament(
                params.name,
                params.entry_fee,
                params.max_players,
                int(params.start_time.timestamp()),
            )
            _, receipt = self._send("createTournament", fn)
            events = contract.events.TournamentCreated().process_receipt(receipt)
            if not events:
                raise GatewayError("createTournament", "no TournamentCreated event in receipt")
            return int(events[0]["args"]["tournamentId"])

        return self._call("createTournament", _write)

    def join_tournament(self, chain_id: int, address: str, entry_fee: int) -> str:
        # The operator relays the entry on the player's behalf
        def _write():
            contract = self._tournament_contract("joinTournament")
            tx_hash, _ = self._send(
                "joinTournament", contract.functions.joinTournament(chain_id), value=entry_fee
            )
            logger.info(f"Relayed join for {address} into onchain tournament {chain_id}")
            return tx_hash

        return self._call("joinTournament", _write)

    def distribute_prizes(self, chain_id: int) -> str:
        def _write():
            contract = self._tournament_contract("distributePrizes")
            tx_hash, _ = self._send("distributePrizes", contract.functions.distributePrizes(chain_id))
            return tx_hash

        return self._call("distributePrizes", _write)

    def update_tournament_status(self, chain_id: int, status: TournamentStatus) -> str:
        def _write():
            contract = self._tournament_contract("updateTournamentStatus")
            fn = contract.functions.updateTournamentStatus(chain_id, STATUS_CODES[status])
            tx_hash, _ = self._send("updateTournamentStatus", fn)
            return tx_hash

        return self._call("updateTournamentStatus", _write)

    # ------------------------------------------------------------------
    # Game contract
    # ------------------------------------------------------------------

    def get_player_stats(self, address: str) -> ChainPlayerStats:
        def _read():
            Web3 = _require_web3()
            contract = self._game_contract("getPlayerStats")
            raw = contract.functions.getPlayerStats(Web3.to_checksum_address(address)).call()
            return ChainPlayerStats(
                address=normalize_address(address),
                total_games=int(raw[0]),
                wins=int(raw[1]),
                losses=int(raw[2]),
                draws=int(raw[3]),
                total_bet_amount=int(raw[4]),
                total_win_amount=int(raw[5]),
                highest_win=int(raw[6]),
            )

        return self._call("getPlayerStats", _read)

    def get_game_history(self, address: str) -> list[GameRecord]:
        """Full game log for a player, oldest first, paged through getPlayerHistory."""

        def _read():
            Web3 = _require_web3()
            contract = self._game_contract("getPlayerHistory")
            checksum = Web3.to_checksum_address(address)
            player = normalize_address(address)
            records: list[GameRecord] = []
            offset = 0
            while True:
                page = contract.functions.getPlayerHistory(checksum, offset, HISTORY_PAGE).call()
                for i, (bet, outcome, ts, tx_hash) in enumerate(page):
                    tx = _hex(tx_hash)
                    records.append(
                        GameRecord(
                            id=tx if int(tx, 16) else f"{player}:{offset + i}",
                            player=player,
                            bet_amount=int(bet),
                            outcome=GameOutcome.from_chain(outcome),
                            timestamp=_from_epoch(ts),
                            tx_hash=tx,
                        )
                    )
                if len(page) < HISTORY_PAGE:
                    break
                offset += HISTORY_PAGE
            records.sort(key=lambda g: g.timestamp)
            return records

        return self._call("getPlayerHistory", _read)

    def get_balance(self, address: str) -> int:
        def _read():
            Web3 = _require_web3()
            contract = self._game_contract("balanceOf")
            return int(contract.functions.balanceOf(Web3.to_checksum_address(address)).call())

        return self._call("balanceOf", _read)


def load_operator_account(private_key: str | None):
    """eth_account LocalAccount for the operator wallet, or None if unset/invalid."""
    if not private_key:
        return None
    try:
        from eth_account import Account
        account = Account.from_key(private_key)
        logger.info(f"Operator wallet loaded: {account.address}")
        return account
    except ImportError:
        logger.debug("eth-account not installed, onchain writes disabled")
        return None
    except Exception as e:
        logger.warning(f"Failed to load operator wallet: {e}")
        return None
