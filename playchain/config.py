"""
playchain/config.py - Local configuration management

Reads service config from a platform-appropriate config directory:
  - macOS/Linux: ~/.playchain/config.toml
  - Windows: %APPDATA%\\playchain\\config.toml

Environment variables win over the file so a deployment can be configured
without one. The operator private key is env-only (OPERATOR_PRIVATE_KEY) and
is never read from disk.

Example:
    [chain]
    chain_id = 11155111
    rpc_url = "https://rpc.sepolia.org"
    tournament_contract = "0x..."
    game_contract = "0x..."

    [server]
    port = 8000
    db = "playchain.db"
    sweep_on_request = true
"""

import logging
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================


def _get_config_dir() -> Path:
    """Get platform-appropriate config directory."""
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / "playchain"
    return Path.home() / ".playchain"


CONFIG_DIR = _get_config_dir()
CONFIG_PATH = CONFIG_DIR / "config.toml"

DEFAULT_RPC_URL = "http://127.0.0.1:8545"
DEFAULT_CHAIN_ID = 31337  # local hardhat/anvil node


# ============================================================================
# Data Types
# ============================================================================


@dataclass
class ChainConfig:
    """Blockchain network configuration.

    Contract addresses left as None mean the service runs without a Chain
    Gateway: tournaments live only in the local store.
    """

    chain_id: int = DEFAULT_CHAIN_ID
    rpc_url: str = DEFAULT_RPC_URL
    tournament_contract: str | None = None
    game_contract: str | None = None
    token_contract: str | None = None
    tx_timeout: int = 30  # seconds to wait for a receipt

    @property
    def enabled(self) -> bool:
        return bool(self.tournament_contract or self.game_contract)


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    db: str = "playchain.db"
    sweep_on_request: bool = True
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class PlaychainConfig:
    """Top-level configuration."""

    chain: ChainConfig = field(default_factory=ChainConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


# ============================================================================
# Parsing
# ============================================================================


def _parse_chain(data: dict) -> ChainConfig:
    _defaults = ChainConfig()
    return ChainConfig(
        chain_id=int(data.get("chain_id", _defaults.chain_id)),
        rpc_url=data.get("rpc_url", _defaults.rpc_url),
        tournament_contract=data.get("tournament_contract"),
        game_contract=data.get("game_contract"),
        token_contract=data.get("token_contract"),
        tx_timeout=int(data.get("tx_timeout", _defaults.tx_timeout)),
    )


def _parse_server(data: dict) -> ServerConfig:
    _defaults = ServerConfig()
    return ServerConfig(
        host=data.get("host", _defaults.host),
        port=int(data.get("port", _defaults.port)),
        db=str(Path(data["db"]).expanduser()) if "db" in data else _defaults.db,
        sweep_on_request=bool(data.get("sweep_on_request", _defaults.sweep_on_request)),
        cors_origins=list(data.get("cors_origins", _defaults.cors_origins)),
    )


def _apply_env(config: PlaychainConfig, env: dict[str, str]) -> PlaychainConfig:
    """Environment variables override whatever the file said."""
    chain = config.chain
    if env.get("PLAYCHAIN_RPC_URL"):
        chain.rpc_url = env["PLAYCHAIN_RPC_URL"]
    if env.get("PLAYCHAIN_CHAIN_ID"):
        try:
            chain.chain_id = int(env["PLAYCHAIN_CHAIN_ID"])
        except ValueError:
            logger.warning(f"Ignoring non-integer PLAYCHAIN_CHAIN_ID: {env['PLAYCHAIN_CHAIN_ID']}")
    if env.get("TOURNAMENT_CONTRACT"):
        chain.tournament_contract = env["TOURNAMENT_CONTRACT"]
    if env.get("GAME_CONTRACT"):
        chain.game_contract = env["GAME_CONTRACT"]
    if env.get("TOKEN_CONTRACT"):
        chain.token_contract = env["TOKEN_CONTRACT"]
    if env.get("PLAYCHAIN_DB"):
        config.server.db = env["PLAYCHAIN_DB"]
    if env.get("PLAYCHAIN_CORS_ORIGINS"):
        config.server.cors_origins = env["PLAYCHAIN_CORS_ORIGINS"].split(",")
    return config


def load_config(path: Path | None = None, env: dict[str, str] | None = None) -> PlaychainConfig:
    """
    Read config from TOML file, then apply environment overrides.

    Args:
        path: Override config file path (default: ~/.playchain/config.toml)
        env: Environment mapping (default: os.environ)

    Returns:
        PlaychainConfig. Missing file or bad TOML falls back to defaults.
    """
    config_path = path or CONFIG_PATH
    env = dict(os.environ) if env is None else env

    config = PlaychainConfig()
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                raw = tomllib.load(f)
        except Exception as e:
            logger.warning(f"Failed to parse {config_path}: {e}")
            raw = {}

        if isinstance(raw.get("chain"), dict):
            config.chain = _parse_chain(raw["chain"])
        if isinstance(raw.get("server"), dict):
            config.server = _parse_server(raw["server"])

    return _apply_env(config, env)


def get_operator_key(env: dict[str, str] | None = None) -> str | None:
    """Operator wallet key. Env var only, never the config file."""
    env = dict(os.environ) if env is None else env
    return env.get("OPERATOR_PRIVATE_KEY") or None
