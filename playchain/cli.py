#!/usr/bin/env python3
"""
playchain/cli.py - Command line interface for playchain

Usage:
    playchain serve [--port 8000] [--db playchain.db]
    playchain sweep [--db playchain.db]
    playchain categories
    playchain category <id>
    playchain stats <address> [--db playchain.db]
    playchain leaderboard [--limit 20] [--db playchain.db]
    playchain config
"""

import argparse
import logging
import sys

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def _open_services(args):
    """Service graph over the --db file, with the configured chain gateway."""
    from api.db import SqliteStore
    from playchain.config import load_config
    from playchain.services import build_services, gateway_from_config

    config = load_config()
    db_path = args.db or config.server.db
    return build_services(SqliteStore(db_path), gateway_from_config(config.chain))


def cmd_serve(args):
    """Start the playchain API server."""
    try:
        import uvicorn
    except ImportError:
        logger.error("Server requires uvicorn: pip install playchain")
        return 1

    from api.server import app
    from playchain.config import load_config

    server = load_config().server
    db_path = args.db or server.db
    port = args.port or server.port

    # Set DB path on app state so lifespan picks it up
    app.state.db_path = db_path
    logger.info(f"Starting playchain server on port {port} (db: {db_path})")
    uvicorn.run(app, host=server.host, port=port, log_level="info")
    return 0


def cmd_sweep(args):
    """Run one lifecycle sweep and report the transitions."""
    services = _open_services(args)
    changes = services.registry.reconcile()
    if not changes:
        print("No status changes")
        return 0
    for change in changes:
        print(f"{change.tournament_id:<38} {change.previous.value:>10} -> {change.current.value}")
    return 0


def cmd_categories(args):
    """List tournament categories."""
    from playchain.rules import RulesEngine

    print(f"\n{'ID':<22} {'Tier':<13} {'Entry fee':<16} {'Players':<9} {'Days'}")
    print("-" * 68)
    for cat in RulesEngine().list_categories():
        fee = f"{cat.min_entry_fee}-{cat.max_entry_fee}"
        players = f"{cat.min_players}-{cat.max_players}"
        print(f"{cat.id:<22} {cat.tier:<13} {fee:<16} {players:<9} {cat.duration // 86400}")
    print()
    return 0


def cmd_category(args):
    """Show one category and its prize table."""
    from playchain.errors import NotFoundError
    from playchain.rules import RulesEngine

    try:
        cat = RulesEngine().get_category(args.category)
    except NotFoundError as e:
        logger.error(str(e))
        return 1

    print(f"\n{cat.name} ({cat.id})")
    print(f"   {cat.description}")
    print()
    print(f"   Entry fee: {cat.min_entry_fee} - {cat.max_entry_fee}")
    print(f"   Players:   {cat.min_players} - {cat.max_players}")
    print(f"   Duration:  up to {cat.duration // 3600}h")
    print()
    print("   Prizes:")
    for tier in cat.prize_distribution:
        print(f"     #{tier.rank:<3} {tier.percentage:>6.2f}%   (needs {tier.min_players}+ players)")
    print()
    return 0


def cmd_stats(args):
    """Show a player's stats."""
    from playchain.errors import PlaychainError

    services = _open_services(args)
    try:
        stats = services.stats.get_player_stats(args.address)
    except PlaychainError as e:
        logger.error(str(e))
        return 1

    print(f"\n{stats.address}  {stats.rank} (level {stats.level}, {stats.experience} XP)")
    print()
    print(f"   Games:       {stats.total_games} ({stats.wins}W / {stats.losses}L / {stats.draws}D)")
    print(f"   Win rate:    {stats.win_rate:.1%}")
    print(f"   Wagered:     {stats.total_bet_amount}")
    print(f"   Won:         {stats.total_win_amount}")
    print(f"   Best streak: {stats.best_streak}")
    print(f"   Tournaments: {stats.tournaments_played} played, {stats.tournaments_won} won")
    print()
    return 0


def cmd_leaderboard(args):
    """Show the player leaderboard."""
    services = _open_services(args)
    entries = services.stats.get_leaderboard(args.limit)

    print(f"\n{'#':<4} {'Address':<44} {'Score':>7} {'Win %':>7} {'Games':>6}")
    print("-" * 72)
    for e in entries:
        print(f"{e.rank:<4} {e.address:<44} {e.score:>7.1f} {e.win_rate:>7.1%} {e.total_games:>6}")
    print()
    return 0


def cmd_config(args):
    """Show the effective configuration."""
    from playchain.config import CONFIG_PATH, get_operator_key, load_config

    config = load_config()
    chain = config.chain
    print(f"\nConfig file: {CONFIG_PATH}{'' if CONFIG_PATH.exists() else ' (not found)'}")
    print()
    print(f"   chain_id:            {chain.chain_id}")
    print(f"   rpc_url:             {chain.rpc_url}")
    print(f"   tournament_contract: {chain.tournament_contract or '-'}")
    print(f"   game_contract:       {chain.game_contract or '-'}")
    print(f"   token_contract:      {chain.token_contract or '-'}")
    print(f"   operator key:        {'set' if get_operator_key() else 'not set'}")
    print()
    print(f"   server:              {config.server.host}:{config.server.port}")
    print(f"   db:                  {config.server.db}")
    print(f"   sweep_on_request:    {config.server.sweep_on_request}")
    print()
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="playchain",
        description="Onchain tournament and player stats backend",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="Server port (default: from config, 8000)")
    serve_parser.add_argument("--db", default=None, help="SQLite database path (default: from config)")
    serve_parser.set_defaults(func=cmd_serve)

    # sweep command
    sweep_parser = subparsers.add_parser("sweep", help="Advance tournament statuses by the clock")
    sweep_parser.add_argument("--db", default=None, help="SQLite database path (default: from config)")
    sweep_parser.set_defaults(func=cmd_sweep)

    # categories command
    cats_parser = subparsers.add_parser("categories", help="List tournament categories")
    cats_parser.set_defaults(func=cmd_categories)

    # category command
    cat_parser = subparsers.add_parser("category", help="Show one tournament category")
    cat_parser.add_argument("category", help="Category id (e.g. beginner)")
    cat_parser.set_defaults(func=cmd_category)

    # stats command
    stats_parser = subparsers.add_parser("stats", help="Show a player's stats")
    stats_parser.add_argument("address", help="Player wallet address")
    stats_parser.add_argument("--db", default=None, help="SQLite database path (default: from config)")
    stats_parser.set_defaults(func=cmd_stats)

    # leaderboard command
    lb_parser = subparsers.add_parser("leaderboard", help="Show the player leaderboard")
    lb_parser.add_argument("--limit", "-n", type=int, default=20, help="Rows to show (default: 20)")
    lb_parser.add_argument("--db", default=None, help="SQLite database path (default: from config)")
    lb_parser.set_defaults(func=cmd_leaderboard)

    # config command
    config_parser = subparsers.add_parser("config", help="Show the effective configuration")
    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
