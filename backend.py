import asyncio
import copy
import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from constants import ROOM_TTL_SECONDS
from exceptions import DuplicateCode, RoomNotFound, StoreUnavailable
from logging_config import get_logger
from redis_keys import REDIS_SNAPSHOT_KEY

logger = get_logger(__name__)

REDIS_CONNECT_TIMEOUT = 2.0
UPDATE_ATTEMPTS = 5


def normalize_code(code: Optional[str]) -> str:
    """Room codes are case-insensitive; store and route them upper-cased."""
    if not code:
        return ""
    return code.strip().upper()


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class RedisSnapshotBackend:
    """Room snapshots as JSON strings in Redis, expired by native key TTL."""

    name = "redis"

    def __init__(self, redis_client, ttl_seconds: int = ROOM_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _key(self, code: str) -> str:
        return REDIS_SNAPSHOT_KEY.format(code=code)

    def _expiry(self) -> Optional[int]:
        return self.ttl_seconds if self.ttl_seconds > 0 else None

    async def ping(self):
        await self.redis_client.ping()

    async def create(self, code: str, mode: str, data: Any) -> Dict[str, Any]:
        now = _isoformat(self.clock())
        room = {"code": code, "mode": mode, "data": data, "createdAt": now, "updatedAt": now}
        created = await self.redis_client.set(self._key(code), json.dumps(room), nx=True, ex=self._expiry())
        if not created:
            raise DuplicateCode(code)
        logger.debug(f"Room {code} written to Redis with TTL {self.ttl_seconds}s")
        return room

    async def read(self, code: str) -> Dict[str, Any]:
        raw = await self.redis_client.get(self._key(code))
        if raw is None:
            raise RoomNotFound(code)
        return json.loads(raw)

    async def update(self, code: str, data: Any) -> Dict[str, Any]:
        """Replace ``data`` in a WATCH/MULTI transaction.

        If the key expires or is re-created between the read and the write,
        EXEC fails and the update is retried against the current room.
        """
        key = self._key(code)
        for attempt in range(1, UPDATE_ATTEMPTS + 1):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    raise RoomNotFound(code)
                room = json.loads(raw)
                room["data"] = data
                room["updatedAt"] = _isoformat(self.clock())
                pipe.multi()
                pipe.set(key, json.dumps(room), xx=True, ex=self._expiry())
                try:
                    (updated,) = await pipe.execute()
                except WatchError:
                    if attempt == UPDATE_ATTEMPTS:
                        raise
                    logger.debug(f"Room {code} changed during update, retrying (attempt {attempt})")
                    continue
            if not updated:
                raise RoomNotFound(code)
            logger.debug(f"Room {code} updated in Redis, TTL reset to {self.ttl_seconds}s")
            return room

    def sweep(self) -> int:
        # Redis expires keys itself
        return 0

    async def close(self):
        await self.redis_client.aclose()


class InMemorySnapshotBackend:
    """Process-local room snapshots. Lost on restart."""

    name = "memory"

    def __init__(self, ttl_seconds: int = ROOM_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._rooms: Dict[str, Dict[str, Any]] = {}
        self._expires_at: Dict[str, float] = {}

    def _touch(self, code: str):
        if self.ttl_seconds > 0:
            self._expires_at[code] = self.clock() + self.ttl_seconds
        else:
            self._expires_at.pop(code, None)

    def _is_expired(self, code: str) -> bool:
        expires_at = self._expires_at.get(code)
        return expires_at is not None and expires_at <= self.clock()

    def _get_live(self, code: str) -> Optional[Dict[str, Any]]:
        if code not in self._rooms:
            return None
        if self._is_expired(code):
            self._drop(code)
            return None
        return self._rooms[code]

    def _drop(self, code: str):
        self._rooms.pop(code, None)
        self._expires_at.pop(code, None)
        logger.debug(f"Room {code} expired from in-memory store")

    async def ping(self):
        return True

    async def create(self, code: str, mode: str, data: Any) -> Dict[str, Any]:
        if self._get_live(code) is not None:
            raise DuplicateCode(code)
        now = _isoformat(self.clock())
        room = {"code": code, "mode": mode, "data": copy.deepcopy(data), "createdAt": now, "updatedAt": now}
        self._rooms[code] = room
        self._touch(code)
        return copy.deepcopy(room)

    async def read(self, code: str) -> Dict[str, Any]:
        room = self._get_live(code)
        if room is None:
            raise RoomNotFound(code)
        return copy.deepcopy(room)

    async def update(self, code: str, data: Any) -> Dict[str, Any]:
        room = self._get_live(code)
        if room is None:
            raise RoomNotFound(code)
        room["data"] = copy.deepcopy(data)
        room["updatedAt"] = _isoformat(self.clock())
        self._touch(code)
        return copy.deepcopy(room)

    def sweep(self) -> int:
        """Remove every expired room and return how many were removed."""
        expired = [code for code in self._rooms if self._is_expired(code)]
        for code in expired:
            self._drop(code)
        return len(expired)

    async def close(self):
        self._rooms.clear()
        self._expires_at.clear()


class SnapshotStore:
    """Durable room snapshots with an in-memory fallback.

    The store starts on Redis when it is configured and reachable. If Redis is
    missing at startup, or a call fails with a connection error later, the
    store switches to an in-memory backend for the rest of the process
    lifetime. ``degraded`` reports that switch.
    """

    def __init__(self, backend, degraded: bool = False):
        self.backend = backend
        self.degraded = degraded

    @property
    def backend_name(self) -> str:
        return self.backend.name

    @classmethod
    async def connect(
        cls,
        redis_url: Optional[str],
        ttl_seconds: int = ROOM_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> "SnapshotStore":
        if not redis_url:
            logger.warning("REDIS_URL not set. Using in-memory snapshot store; rooms will not survive a restart.")
            return cls(InMemorySnapshotBackend(ttl_seconds, clock), degraded=True)

        try:
            backend = await cls._connect_redis(redis_url, ttl_seconds, clock)
        except StoreUnavailable as e:
            logger.error(
                f"{type(e).__name__}: {e}. "
                "Falling back to in-memory snapshot store; rooms will not survive a restart."
            )
            return cls(InMemorySnapshotBackend(ttl_seconds, clock), degraded=True)
        return cls(backend)

    @classmethod
    async def _connect_redis(
        cls, redis_url: str, ttl_seconds: int, clock: Callable[[], float]
    ) -> RedisSnapshotBackend:
        try:
            redis_client = redis.Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=REDIS_CONNECT_TIMEOUT,
                socket_timeout=REDIS_CONNECT_TIMEOUT,
            )
        except ValueError as e:
            # The URL itself is not logged, it may carry a password
            raise StoreUnavailable(f"invalid REDIS_URL: {e}") from e

        backend = RedisSnapshotBackend(redis_client, ttl_seconds, clock)
        target = cls._describe(redis_client)
        try:
            await backend.ping()
        except (RedisError, OSError) as e:
            await cls._close_quietly(backend)
            raise StoreUnavailable(f"failed to connect to Redis at {target}: {e}") from e

        logger.info(f"Snapshot store connected to Redis at {target} (room TTL {ttl_seconds}s)")
        return backend

    @staticmethod
    def _describe(redis_client) -> str:
        kwargs = redis_client.connection_pool.connection_kwargs
        return f"{kwargs.get('host', 'localhost')}:{kwargs.get('port', 6379)}/{kwargs.get('db', 0)}"

    @staticmethod
    async def _close_quietly(backend):
        try:
            await backend.close()
        except (RedisError, OSError) as e:
            logger.debug(f"Error closing Redis client: {e}")

    async def _fall_back(self, error: StoreUnavailable):
        if self.degraded:
            return
        failed = self.backend
        logger.error(
            f"{type(error).__name__}: {error}. "
            "Switching to in-memory snapshot store for the rest of this process.",
            exc_info=error.__cause__,
        )
        self.backend = InMemorySnapshotBackend(failed.ttl_seconds, failed.clock)
        self.degraded = True
        await self._close_quietly(failed)

    async def _invoke(self, operation: str, *args):
        try:
            return await getattr(self.backend, operation)(*args)
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise StoreUnavailable(f"Redis {operation} failed: {e}") from e

    async def _call(self, operation: str, *args):
        try:
            return await self._invoke(operation, *args)
        except StoreUnavailable as e:
            await self._fall_back(e)
        return await getattr(self.backend, operation)(*args)

    async def create(self, code: str, mode: str, data: Any) -> Dict[str, Any]:
        code = normalize_code(code)
        logger.info(f"Creating room {code} (mode {mode}) on {self.backend_name} store")
        return await self._call("create", code, mode, data)

    async def read(self, code: str) -> Dict[str, Any]:
        code = normalize_code(code)
        logger.debug(f"Reading room {code} from {self.backend_name} store")
        return await self._call("read", code)

    async def update(self, code: str, data: Any) -> Dict[str, Any]:
        code = normalize_code(code)
        logger.debug(f"Updating room {code} on {self.backend_name} store")
        return await self._call("update", code, data)

    async def run_sweeper(self, interval_seconds: float):
        """Periodically purge expired rooms from the in-memory backend."""
        if interval_seconds <= 0:
            return
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.backend.sweep()
            if removed:
                logger.info(f"Swept {removed} expired rooms from {self.backend_name} store")

    async def close(self):
        await self._close_quietly(self.backend)
