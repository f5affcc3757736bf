"""Shared test fixtures and fakes for all test groups."""

import asyncio
import os

# Settings are cached on first use; set test values before metering imports.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("REALTIME_JWT_SECRET", "test-realtime-secret-0123456789abcdef")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("STRIPE_PRICE_BASIC_MONTHLY", "price_test_basic")
os.environ.setdefault("STRIPE_PRICE_PRO_MONTHLY", "price_test_pro")

import pytest

from metering.core.auth import AuthUser


# ---------------------------------------------------------------------------
# Fake SQLAlchemy session factory
# ---------------------------------------------------------------------------


class FakeResult:
    """Just enough of sqlalchemy.engine.Result for the stores under test."""

    def __init__(self, rows):
        self._rows = list(rows)

    def mappings(self):
        return self

    def one_or_none(self):
        return self._rows[0] if self._rows else None

    def one(self):
        if len(self._rows) != 1:
            raise AssertionError(f"expected one row, got {len(self._rows)}")
        return self._rows[0]

    def all(self):
        return self._rows

    def scalar_one_or_none(self):
        row = self.one_or_none()
        if row is None:
            return None
        return next(iter(row.values())) if isinstance(row, dict) else row


class FakeSession:
    def __init__(self, factory: "FakeSessionFactory"):
        self._factory = factory

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, statement):
        self._factory.executed.append(statement)
        if self._factory.error is not None:
            raise self._factory.error
        if self._factory.results:
            return FakeResult(self._factory.results.pop(0))
        return FakeResult(self._factory.rows)

    async def commit(self):
        self._factory.commits += 1

    async def rollback(self):
        pass


class FakeSessionFactory:
    """Callable like async_sessionmaker; records every executed statement.

    ``rows`` is returned for every execute unless ``results`` holds a queue of
    per-call row lists.
    """

    def __init__(self, rows=None, error: Exception | None = None, results=None):
        self.rows = rows or []
        self.error = error
        self.results = list(results or [])
        self.executed = []
        self.commits = 0

    def __call__(self):
        return FakeSession(self)


@pytest.fixture
def make_session_factory():
    """Factory for FakeSessionFactory instances with canned rows or errors."""
    return FakeSessionFactory


@pytest.fixture
def alice():
    return AuthUser(user_id="user_alice", claims={"sub": "user_alice", "email": "alice@example.com"})


@pytest.fixture
def bob():
    return AuthUser(user_id="user_bob", claims={"sub": "user_bob", "email": "bob@example.com"})


# ---------------------------------------------------------------------------
# Fake asyncpg connection for the change notifier
# ---------------------------------------------------------------------------


class FakePgConnection:
    def __init__(self):
        self.listeners: dict[str, list] = {}
        self.listen_calls: list[str] = []
        self.unlisten_calls: list[str] = []
        self.executed: list[tuple] = []
        self.termination_listeners = []
        self.closed = False
        # Seconds each UNLISTEN takes, to expose cancellation mid-release
        self.unlisten_delay = 0.0

    async def add_listener(self, channel, callback):
        self.listen_calls.append(channel)
        self.listeners.setdefault(channel, []).append(callback)

    async def remove_listener(self, channel, callback):
        if self.unlisten_delay:
            await asyncio.sleep(self.unlisten_delay)
        self.unlisten_calls.append(channel)
        callbacks = self.listeners.get(channel, [])
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            self.listeners.pop(channel, None)

    def add_termination_listener(self, callback):
        self.termination_listeners.append(callback)

    async def execute(self, query, *args):
        self.executed.append((query, *args))
        return "SELECT 1"

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True

    def publish(self, channel: str, payload: str) -> None:
        """Deliver a NOTIFY as asyncpg would."""
        for callback in list(self.listeners.get(channel, [])):
            callback(self, 4242, channel, payload)


@pytest.fixture
def pg_conn():
    return FakePgConnection()


@pytest.fixture
def pg_conn_factory():
    """Builds extra fake connections, e.g. the one a reconnect hands back."""
    return FakePgConnection


@pytest.fixture
async def notifier(pg_conn):
    from metering.realtime.notifier import PgChangeNotifier

    async def connect(dsn):
        return pg_conn

    n = PgChangeNotifier("postgresql://test/test", connect=connect)
    await n.start()
    yield n
    await n.stop()
