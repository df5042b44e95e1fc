from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding attempt counters and account lockouts."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Fixed-window attempt counter with exponential window extension.
    # Returns {attempts, reset_at, backoff_seconds}; reset_at is a string so
    # Redis does not truncate the fractional timestamp.
    _ATTEMPT_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_attempts = tonumber(ARGV[3])
local multiplier = tonumber(ARGV[4])
local max_backoff = tonumber(ARGV[5])

local data = redis.call('HMGET', key, 'attempts', 'reset_at')
local attempts = tonumber(data[1])
local reset_at = tonumber(data[2])
local backoff = 0

if attempts == nil or reset_at == nil or now > reset_at then
  attempts = 1
  reset_at = now + window
else
  attempts = attempts + 1
  if attempts > max_attempts and (attempts - 1) % max_attempts == 0 then
    local violations = math.floor((attempts - 1) / max_attempts)
    if violations > 1 then
      backoff = math.min(window * math.pow(multiplier, violations - 1), max_backoff)
      reset_at = math.max(reset_at, now + backoff)
    end
  end
end

redis.call('HSET', key, 'attempts', attempts, 'reset_at', tostring(reset_at))
redis.call('EXPIRE', key, math.max(math.ceil(reset_at - now), 1))
return {attempts, tostring(reset_at), math.floor(backoff)}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._attempt_script = self.client.register_script(self._ATTEMPT_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash counter subjects so identifiers cannot inject key delimiters."""

        return "rate:" + hashlib.sha256(key.encode()).hexdigest()

    @staticmethod
    def _lockout_key(identifier: str) -> str:
        return "lockout:" + hashlib.sha256(identifier.encode()).hexdigest()

    @staticmethod
    def _parse_attempt(result: Any) -> Tuple[int, float, int]:
        attempts, reset_at, backoff = result
        return int(attempts), float(reset_at), int(backoff)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def record_attempt(
        self,
        key: str,
        *,
        now: float,
        window_seconds: int,
        max_attempts: int,
        multiplier: float,
        max_backoff_seconds: int,
    ) -> Tuple[int, float, int]:
        """Atomically count one attempt against ``key``.

        Returns ``(attempts, window_reset_at, backoff_seconds)`` where
        ``window_reset_at`` is a POSIX timestamp.
        """

        result = await self._attempt_script(
            keys=[self._normalize_rate_key(key)],
            args=[now, window_seconds, max_attempts, multiplier, max_backoff_seconds],
        )
        return self._parse_attempt(result)

    async def clear_attempts(self, key: str) -> None:
        await self.client.delete(self._normalize_rate_key(key))

    async def get_lockout(self, identifier: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(self._lockout_key(identifier))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_lockout(
        self, identifier: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> bool:
        """Store a lockout unless one is already active; True if this call created it."""

        created = await self.client.set(
            self._lockout_key(identifier),
            json.dumps(payload),
            ex=max(1, int(ttl_seconds)),
            nx=True,
        )
        return bool(created)

    async def clear_lockout(self, identifier: str) -> None:
        await self.client.delete(self._lockout_key(identifier))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes the same awaitable API as ``RedisCache``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._attempt_script = self._sync_client.register_script(
            RedisCache._ATTEMPT_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def record_attempt(
        self,
        key: str,
        *,
        now: float,
        window_seconds: int,
        max_attempts: int,
        multiplier: float,
        max_backoff_seconds: int,
    ) -> Tuple[int, float, int]:
        result = self._attempt_script(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[now, window_seconds, max_attempts, multiplier, max_backoff_seconds],
        )
        return RedisCache._parse_attempt(result)

    async def clear_attempts(self, key: str) -> None:
        self._sync_client.delete(RedisCache._normalize_rate_key(key))

    async def get_lockout(self, identifier: str) -> Optional[Dict[str, Any]]:
        raw = self._sync_client.get(RedisCache._lockout_key(identifier))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_lockout(
        self, identifier: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> bool:
        created = self._sync_client.set(
            RedisCache._lockout_key(identifier),
            json.dumps(payload),
            ex=max(1, int(ttl_seconds)),
            nx=True,
        )
        return bool(created)

    async def clear_lockout(self, identifier: str) -> None:
        self._sync_client.delete(RedisCache._lockout_key(identifier))

    async def close(self) -> None:
        """Close the sync client connection pool."""
        self._sync_client.close()
