"""
playchain/services.py - Wires the services together over one store.

Both the API server and the CLI build their service graph here so they share
one wiring order: notifications, registry, history, stats, achievements.
"""

import logging
from dataclasses import dataclass

from .config import ChainConfig, get_operator_key
from .contract import ChainGateway, Web3Gateway, load_operator_account
from .achievements import AchievementEvaluator
from .history import TournamentHistoryService
from .notifications import NotificationDispatcher
from .registry import TournamentRegistry
from .rules import RulesEngine
from .stats import PlayerStatsService
from .store import MemoryStore, Store

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: Store
    gateway: ChainGateway | None
    notifications: NotificationDispatcher
    rules: RulesEngine
    registry: TournamentRegistry
    history: TournamentHistoryService
    stats: PlayerStatsService
    achievements: AchievementEvaluator


def build_services(store: Store | None = None, gateway: ChainGateway | None = None) -> Services:
    store = store if store is not None else MemoryStore()
    notifications = NotificationDispatcher(store)
    rules = RulesEngine()
    registry = TournamentRegistry(store, rules=rules, notifier=notifications, gateway=gateway)
    history = TournamentHistoryService(store, registry, gateway=gateway)
    stats = PlayerStatsService(store, history=history, gateway=gateway, notifier=notifications)
    achievements = AchievementEvaluator(store, stats, notifier=notifications)
    return Services(
        store=store,
        gateway=gateway,
        notifications=notifications,
        rules=rules,
        registry=registry,
        history=history,
        stats=stats,
        achievements=achievements,
    )


def gateway_from_config(chain: ChainConfig) -> ChainGateway | None:
    """Web3Gateway for the configured contracts, or None when none are set."""
    if not chain.enabled:
        logger.info("No contracts configured, running without a chain gateway")
        return None
    account = load_operator_account(get_operator_key())
    return Web3Gateway(
        chain.rpc_url,
        tournament_address=chain.tournament_contract,
        game_address=chain.game_contract,
        account=account,
        tx_timeout=chain.tx_timeout,
    )
