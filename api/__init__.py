"""
api - HTTP/WebSocket server for playchain

Exposes the tournament, stats, rules, achievement and notification services
over FastAPI. All state lives in one SQLite file.
"""

from .server import app
from .db import SqliteStore

__all__ = ["app", "SqliteStore"]
