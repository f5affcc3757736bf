"""Database package: shared engine, session factory, and Redis pool."""

from metering.db.base import Base, asyncpg_dsn, close_db, get_session_factory, init_db
from metering.db.redis import close_redis, get_redis, init_redis

__all__ = [
    "Base",
    "asyncpg_dsn",
    "close_db",
    "close_redis",
    "get_redis",
    "get_session_factory",
    "init_db",
    "init_redis",
]
