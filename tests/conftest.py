"""
Shared test fixtures.

Provides: an app wired to the in-memory snapshot store, a TestClient, a
controllable clock, and a Redis test double covering the subset of the
redis.asyncio client the snapshot backend uses.
"""

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from app import create_app


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakePipeline:
    """WATCH/MULTI/EXEC subset of redis.asyncio's Pipeline."""

    def __init__(self, redis):
        self.redis = redis
        self.watched = {}
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.watched.clear()
        self.commands.clear()
        return False

    async def watch(self, *keys):
        self.redis._check()
        for key in keys:
            self.watched[key] = self.redis.versions.get(key, 0)

    async def get(self, key):
        return await self.redis.get(key)

    def multi(self):
        pass

    def set(self, key, value, **kwargs):
        self.commands.append((key, value, kwargs))
        return self

    async def execute(self):
        self.redis._check()
        hook, self.redis.before_exec = self.redis.before_exec, None
        if hook is not None:
            hook()
        for key, version in self.watched.items():
            if self.redis.versions.get(key, 0) != version:
                raise WatchError("Watched variable changed.")
        return [await self.redis.set(key, value, **kwargs) for key, value, kwargs in self.commands]


class FakeRedis:
    """In-process stand-in for redis.asyncio.Redis (get/set with NX, XX, EX)."""

    def __init__(self):
        self.values = {}
        self.ttls = {}
        self.versions = {}
        # Runs once inside the next EXEC, before watched keys are checked
        self.before_exec = None
        self.fail = False
        self.closed = False

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def replace(self, key, value):
        """Overwrite ``key`` as another client would."""
        self.values[key] = value
        self.versions[key] = self.versions.get(key, 0) + 1

    def _check(self):
        if self.fail:
            raise RedisConnectionError("Connection refused")

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.values.get(key)

    async def set(self, key, value, nx=False, xx=False, ex=None):
        self._check()
        if nx and key in self.values:
            return None
        if xx and key not in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        self.versions[key] = self.versions.get(key, 0) + 1
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def relay_app():
    return create_app(redis_url=None, sweep_interval=0, cors_origins=["*"])


@pytest.fixture
def client(relay_app):
    # Entering the context runs the lifespan handler (store, registry, broker)
    with TestClient(relay_app) as test_client:
        yield test_client
