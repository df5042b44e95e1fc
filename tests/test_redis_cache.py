import json
from unittest.mock import AsyncMock, MagicMock

from sessionguard.storage.redis_cache import RedisCache, SyncRedisCache


def _async_cache():
    cache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unit"
    cache.client = MagicMock()
    cache.client.get = AsyncMock(return_value=None)
    cache.client.set = AsyncMock(return_value=True)
    cache.client.delete = AsyncMock(return_value=1)
    cache._attempt_script = AsyncMock(return_value=[3, "1735689900.5", 0])
    return cache


def _sync_cache():
    cache = SyncRedisCache.__new__(SyncRedisCache)
    cache.redis_url = "redis://unit"
    cache._sync_client = MagicMock()
    cache._attempt_script = MagicMock(return_value=[11, "1735690200", 600])
    return cache


def test_keys_are_hashed():
    key = RedisCache._normalize_rate_key("login:identifier:a@example.com")
    assert key.startswith("rate:")
    assert "a@example.com" not in key
    assert RedisCache._lockout_key("identifier:x") != RedisCache._normalize_rate_key("identifier:x")


async def test_record_attempt_parses_script_result():
    cache = _async_cache()
    result = await cache.record_attempt(
        "login:ip:1.2.3.4",
        now=1735689600.0,
        window_seconds=300,
        max_attempts=5,
        multiplier=2.0,
        max_backoff_seconds=7200,
    )
    assert result == (3, 1735689900.5, 0)
    kwargs = cache._attempt_script.await_args.kwargs
    assert kwargs["keys"] == [RedisCache._normalize_rate_key("login:ip:1.2.3.4")]
    assert kwargs["args"] == [1735689600.0, 300, 5, 2.0, 7200]


async def test_lockout_round_trip_uses_nx():
    cache = _async_cache()
    payload = {"locked_until": "2025-01-01T01:00:00+00:00", "attempts": 11, "reason": "x"}

    assert await cache.set_lockout("identifier:a", payload, 3600) is True
    args, kwargs = cache.client.set.await_args
    assert kwargs == {"ex": 3600, "nx": True}
    assert json.loads(args[1]) == payload

    cache.client.set.return_value = None
    assert await cache.set_lockout("identifier:a", payload, 3600) is False

    cache.client.get.return_value = json.dumps(payload)
    assert await cache.get_lockout("identifier:a") == payload


async def test_corrupt_lockout_is_ignored():
    cache = _async_cache()
    cache.client.get.return_value = "{not json"
    assert await cache.get_lockout("identifier:a") is None


async def test_sync_cache_exposes_the_same_api():
    cache = _sync_cache()
    result = await cache.record_attempt(
        "login:ip:1.2.3.4",
        now=1735689600.0,
        window_seconds=300,
        max_attempts=5,
        multiplier=2.0,
        max_backoff_seconds=7200,
    )
    assert result == (11, 1735690200.0, 600)

    await cache.clear_attempts("login:ip:1.2.3.4")
    cache._sync_client.delete.assert_called_once_with(
        RedisCache._normalize_rate_key("login:ip:1.2.3.4")
    )

    cache._sync_client.set.return_value = True
    assert await cache.set_lockout("identifier:a", {"attempts": 1}, 0) is True
    assert cache._sync_client.set.call_args.kwargs["ex"] == 1
