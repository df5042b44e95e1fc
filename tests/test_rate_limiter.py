"""Tests for attempt counting, backoff, CAPTCHA signalling and lockout."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from sessionguard.service.rate_limit import (
    RateLimitEngine,
    RateLimitPolicy,
    advance_counter,
    compute_backoff_seconds,
    default_policies,
    identifier_key,
)


@pytest.fixture
def engine(settings, audit, clock):
    return RateLimitEngine(None, settings, audit=audit, clock=clock)


async def _attempts(engine, n, **kwargs):
    kwargs.setdefault("ip_address", "203.0.113.7")
    kwargs.setdefault("identifier", "victim@example.com")
    result = None
    for _ in range(n):
        result = await engine.check("login", **kwargs)
    return result


class TestPolicies:
    def test_defaults(self, settings):
        policies = default_policies(settings)
        assert (policies["login"].max_attempts, policies["login"].window_seconds) == (5, 300)
        assert (policies["refresh"].max_attempts, policies["refresh"].window_seconds) == (30, 60)
        assert (policies["register"].max_attempts, policies["register"].window_seconds) == (3, 900)
        assert (policies["password_reset"].max_attempts, policies["password_reset"].window_seconds) == (3, 900)
        assert (policies["reset_confirm"].max_attempts, policies["reset_confirm"].window_seconds) == (5, 300)
        assert (policies["api"].max_attempts, policies["api"].window_seconds) == (100, 60)
        assert policies["login"].lockout_threshold == 10
        assert policies["api"].lockout_threshold is None

    def test_unknown_action(self, engine):
        with pytest.raises(ValueError):
            engine.policy("teleport")

    async def test_check_needs_a_track(self, engine):
        with pytest.raises(ValueError):
            await engine.check("login")


class TestBackoff:
    def test_backoff_grows_and_caps(self):
        values = [compute_backoff_seconds(v, 300, 2.0, 7200) for v in range(1, 10)]
        assert values[:5] == [300, 600, 1200, 2400, 4800]
        assert values == sorted(values)
        assert max(values) == 7200

    def test_counter_window_is_never_shortened(self, clock):
        policy = RateLimitPolicy(max_attempts=5, window_seconds=300)
        counter = None
        reset_times = []
        for _ in range(40):
            counter, _ = advance_counter(counter, "ip:x", "login", clock.now(), policy)
            reset_times.append(counter.window_reset_at)
        assert reset_times == sorted(reset_times)
        assert counter.window_reset_at <= clock.now() + timedelta(seconds=7200)

    def test_lapsed_window_restarts(self, clock):
        policy = RateLimitPolicy(max_attempts=5, window_seconds=300)
        counter, _ = advance_counter(None, "ip:x", "login", clock.now(), policy)
        counter, _ = advance_counter(counter, "ip:x", "login", clock.now(), policy)
        assert counter.attempts == 2

        clock.advance(301)
        counter, _ = advance_counter(counter, "ip:x", "login", clock.now(), policy)
        assert counter.attempts == 1

    def test_second_violation_triggers_backoff(self, clock):
        policy = RateLimitPolicy(max_attempts=5, window_seconds=300)
        counter = None
        backoffs = []
        for _ in range(11):
            counter, backoff = advance_counter(counter, "ip:x", "login", clock.now(), policy)
            backoffs.append(backoff)
        # Attempt 6 is the first violation; attempt 11 the second
        assert backoffs[5] == 0
        assert backoffs[10] == 600
        assert counter.window_reset_at == clock.now() + timedelta(seconds=600)


class TestCheck:
    async def test_fifth_allowed_sixth_denied(self, engine, clock):
        fifth = await _attempts(engine, 5)
        assert fifth.allowed
        assert fifth.remaining == 0

        sixth = await engine.check("login", ip_address="203.0.113.7", identifier="victim@example.com")
        assert not sixth.allowed
        assert sixth.retry_after_seconds(clock.now()) > 0
        assert sixth.headers(clock.now())["Retry-After"] == str(sixth.retry_after_seconds(clock.now()))

    async def test_tracks_are_independent(self, engine):
        await _attempts(engine, 6, ip_address="198.51.100.1")
        other = await engine.check("login", ip_address="198.51.100.2", identifier="someone@example.com")
        assert other.allowed

    async def test_identifier_track_spans_addresses(self, engine):
        for i in range(6):
            result = await engine.check(
                "login", ip_address=f"198.51.100.{i}", identifier="victim@example.com"
            )
        assert not result.allowed
        assert result.layer == "identifier"

    async def test_identifier_is_case_insensitive(self, engine):
        await _attempts(engine, 5, identifier="Victim@Example.com")
        result = await engine.check("login", ip_address="203.0.113.7", identifier="victim@example.com")
        assert result.tracks["identifier"] == 6

    async def test_captcha_flag_from_third_attempt(self, engine):
        assert not (await _attempts(engine, 2)).requires_captcha
        assert (await _attempts(engine, 1)).requires_captcha

    async def test_window_expiry_allows_again(self, engine, clock):
        await _attempts(engine, 6)
        clock.advance(301)
        assert (await _attempts(engine, 1)).allowed

    async def test_clear_all_resets_counters(self, engine):
        await _attempts(engine, 4)
        await engine.clear_all("login", ip_address="203.0.113.7", identifier="victim@example.com")
        result = await _attempts(engine, 1)
        assert result.attempts == 1
        assert not result.requires_captcha


class TestLockout:
    async def test_eleventh_attempt_locks(self, engine, store, clock):
        tenth = await _attempts(engine, 10)
        assert not tenth.locked

        eleventh = await _attempts(engine, 1)
        assert eleventh.locked
        assert eleventh.locked_until > clock.now()
        assert eleventh.reason == "Exceeded 10 failed login attempts"
        assert await engine.is_locked("victim@example.com")

        [entry] = store.list_audit_entries(event="ACCOUNT_LOCKED")
        assert entry.severity == "high"

    async def test_lock_is_checked_before_counting(self, engine, clock):
        await _attempts(engine, 11)
        clock.advance(30 * 60)
        result = await engine.check("login", ip_address="192.0.2.99", identifier="victim@example.com")
        assert result.locked
        assert result.locked_until - clock.now() == timedelta(minutes=30)

    async def test_lock_expires_after_an_hour(self, engine, clock):
        await _attempts(engine, 11)
        clock.advance(3601)
        assert not await engine.is_locked("victim@example.com")

    async def test_unlock(self, engine):
        await _attempts(engine, 11)
        await engine.unlock("victim@example.com")
        assert not await engine.is_locked("victim@example.com")

    async def test_lockout_only_for_identifier_track(self, engine):
        for i in range(12):
            result = await engine.check("login", ip_address="203.0.113.7", identifier=f"u{i}@example.com")
        assert not result.locked


class TestCacheBackend:
    def _cache(self):
        cache = MagicMock()
        cache.record_attempt = AsyncMock(return_value=(1, 1_800_000_000.0, 0))
        cache.get_lockout = AsyncMock(return_value=None)
        cache.set_lockout = AsyncMock(return_value=True)
        cache.clear_attempts = AsyncMock()
        cache.clear_lockout = AsyncMock()
        return cache

    async def test_counters_go_to_cache(self, settings, clock):
        cache = self._cache()
        engine = RateLimitEngine(cache, settings, clock=clock)
        result = await engine.check("login", ip_address="203.0.113.7", identifier="a@example.com")

        assert result.allowed
        keys = [call.args[0] for call in cache.record_attempt.await_args_list]
        assert keys == ["login:ip:203.0.113.7", "login:" + identifier_key("a@example.com")]

    async def test_cache_failure_falls_back_to_local_counters(self, settings, clock):
        cache = self._cache()
        cache.record_attempt.side_effect = ConnectionError("redis down")
        engine = RateLimitEngine(cache, settings, clock=clock)

        for _ in range(5):
            assert (await engine.check("login", ip_address="203.0.113.7")).allowed
        assert not (await engine.check("login", ip_address="203.0.113.7")).allowed

    async def test_cached_lockout_blocks(self, settings, clock):
        cache = self._cache()
        cache.get_lockout.return_value = {
            "locked_until": (clock.now() + timedelta(minutes=10)).isoformat(),
            "attempts": 11,
            "reason": "Exceeded 10 failed login attempts",
        }
        engine = RateLimitEngine(cache, settings, clock=clock)
        result = await engine.check("login", ip_address="203.0.113.7", identifier="a@example.com")

        assert result.locked
        cache.record_attempt.assert_not_awaited()

    async def test_lockout_written_to_cache_once(self, settings, audit, store, clock):
        cache = self._cache()
        cache.record_attempt.return_value = (11, clock.current + 300, 600)
        cache.set_lockout.return_value = False
        engine = RateLimitEngine(cache, settings, audit=audit, clock=clock)

        result = await engine.check("login", identifier="a@example.com")
        assert result.locked
        # NX write lost: someone else already locked it, so no second audit entry
        assert store.list_audit_entries(event="ACCOUNT_LOCKED") == []

    async def test_lost_nx_write_reports_the_stored_lock(self, settings, clock):
        stored_until = clock.now() + timedelta(minutes=20)
        cache = self._cache()
        cache.record_attempt.return_value = (11, clock.current + 300, 600)
        cache.set_lockout.return_value = False
        cache.get_lockout.side_effect = [
            None,
            {"locked_until": stored_until.isoformat(), "attempts": 11, "reason": "locked elsewhere"},
        ]
        engine = RateLimitEngine(cache, settings, clock=clock)

        result = await engine.check("login", identifier="a@example.com")
        assert result.locked
        assert result.locked_until == stored_until
        assert result.reason == "locked elsewhere"

    async def test_lockout_holds_when_cache_goes_down(self, settings, audit, store, clock):
        cache = self._cache()
        cache.record_attempt.return_value = (11, clock.current + 300, 600)
        engine = RateLimitEngine(cache, settings, audit=audit, clock=clock)
        assert (await engine.check("login", identifier="a@example.com")).locked
        assert len(store.list_audit_entries(event="ACCOUNT_LOCKED")) == 1

        cache.get_lockout.side_effect = ConnectionError("redis down")
        cache.record_attempt.side_effect = ConnectionError("redis down")
        result = await engine.check("login", ip_address="10.9.9.9", identifier="a@example.com")

        assert not result.allowed
        assert result.locked
        assert await engine.is_locked("A@example.com")

    def test_purge_local(self, engine, clock):
        asyncio.run(_attempts(engine, 11))
        clock.advance(3601)
        assert engine.purge_local() >= 3
