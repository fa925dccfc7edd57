"""
Redis-backed challenge store and rate limiter, exercised against fakeredis
"""
import threading
from collections import Counter
from unittest.mock import MagicMock

import fakeredis
import pytest
import redis
from redis.exceptions import LockNotOwnedError

from phone_otp.services.auth.challenge_store import ChallengeState, RedisChallengeStore
from phone_otp.services.auth.errors import ChallengeStoreError, StoreUnavailableError
from phone_otp.services.auth.factory import build_verification_engine
from phone_otp.services.auth.rate_limit import RateRule, RedisRateLimiter, default_rules
from phone_otp.services.otp_service import OTPStatus
from tests.helpers.fakes import FakeIdentityIssuer, RecordingGateway

PHONE = "+919876543210"
NOW = 1_700_000_000.0


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def redis_store(redis_client) -> RedisChallengeStore:
    return RedisChallengeStore(redis_client, max_attempts=3)


class TestRedisChallengeStore:
    def test_put_and_lookup(self, redis_store):
        created = redis_store.put(PHONE, "hash-1", 300, NOW)
        lookup = redis_store.try_consume(PHONE, NOW + 1)

        assert lookup.state == ChallengeState.ACTIVE
        assert lookup.challenge.challenge_id == created.challenge_id
        assert lookup.challenge.expires_at == NOW + 300
        assert lookup.challenge.remaining_attempts == 3

    def test_key_ttl_outlives_logical_expiry(self, redis_store, redis_client):
        redis_store.put(PHONE, "hash-1", 300, NOW)
        ttl = redis_client.ttl(f"otp:challenge:{PHONE}")
        assert 300 < ttl <= 300 + RedisChallengeStore.EXPIRY_GRACE_SECONDS

    def test_expired_challenge_is_evicted(self, redis_store):
        redis_store.put(PHONE, "hash-1", 300, NOW)
        assert redis_store.try_consume(PHONE, NOW + 300).state == ChallengeState.EXPIRED
        assert redis_store.try_consume(PHONE, NOW + 300).state == ChallengeState.NOT_FOUND

    def test_supersession_resets_attempts(self, redis_store):
        redis_store.put(PHONE, "hash-1", 300, NOW)
        redis_store.record_failed_attempt(PHONE)
        redis_store.put(PHONE, "hash-2", 300, NOW + 1)

        challenge = redis_store.try_consume(PHONE, NOW + 2).challenge
        assert challenge.code_hash == "hash-2"
        assert challenge.remaining_attempts == 3

    def test_failed_attempts_evict_at_zero(self, redis_store):
        redis_store.put(PHONE, "hash-1", 300, NOW)
        assert [redis_store.record_failed_attempt(PHONE) for _ in range(3)] == [2, 1, 0]
        assert redis_store.try_consume(PHONE, NOW).state == ChallengeState.NOT_FOUND

    def test_missing_challenge_raises(self, redis_store):
        with pytest.raises(ChallengeStoreError):
            redis_store.record_failed_attempt(PHONE)
        with pytest.raises(ChallengeStoreError):
            redis_store.mark_consumed(PHONE)

    def test_mark_consumed(self, redis_store):
        redis_store.put(PHONE, "hash-1", 300, NOW)
        redis_store.mark_consumed(PHONE)
        assert redis_store.try_consume(PHONE, NOW).state == ChallengeState.NOT_FOUND

    def test_purge_expired(self, redis_store):
        redis_store.put(PHONE, "hash-1", 60, NOW)
        redis_store.put("+919876543211", "hash-2", 600, NOW)

        assert redis_store.purge_expired(NOW + 120) == 1
        assert redis_store.try_consume("+919876543211", NOW + 120).state == ChallengeState.ACTIVE

    def test_purge_keeps_challenge_reissued_after_scan(self, redis_store, redis_client, monkeypatch):
        redis_store.put(PHONE, "stale", 300, NOW)
        read_expiry = redis_client.hget
        reissued = []

        def hget_then_reissue(key, field):
            value = read_expiry(key, field)
            if not reissued:
                reissued.append(key)
                with redis_store.locked(PHONE):
                    redis_store.put(PHONE, "fresh", 300, NOW + 400)
            return value

        monkeypatch.setattr(redis_client, "hget", hget_then_reissue)

        assert redis_store.purge_expired(NOW + 400) == 0
        lookup = redis_store.try_consume(PHONE, NOW + 401)
        assert lookup.state == ChallengeState.ACTIVE
        assert lookup.challenge.code_hash == "fresh"

    def test_purge_keeps_reissue_from_another_process(self, monkeypatch):
        server = fakeredis.FakeServer()
        sweeper_client = fakeredis.FakeRedis(server=server, decode_responses=True)
        sweeper = RedisChallengeStore(sweeper_client)
        other = RedisChallengeStore(fakeredis.FakeRedis(server=server, decode_responses=True))
        sweeper.put(PHONE, "stale", 300, NOW)

        open_pipeline = sweeper_client.pipeline
        reissued = []

        def pipeline_with_reissue(*args, **kwargs):
            pipe = open_pipeline(*args, **kwargs)
            read = pipe.hget

            def hget(key, field):
                value = read(key, field)
                if not reissued:
                    reissued.append(key)
                    with other.locked(PHONE):
                        other.put(PHONE, "fresh", 300, NOW + 400)
                return value

            pipe.hget = hget
            return pipe

        monkeypatch.setattr(sweeper_client, "pipeline", pipeline_with_reissue)

        assert sweeper.purge_expired(NOW + 400) == 0
        assert reissued
        assert other.try_consume(PHONE, NOW + 401).challenge.code_hash == "fresh"

    def test_purge_skips_locked_keys(self, redis_store):
        redis_store.put(PHONE, "hash-1", 60, NOW)

        with redis_store.locked(PHONE):
            assert redis_store.purge_expired(NOW + 120) == 0
        assert redis_store.purge_expired(NOW + 120) == 1

    def test_purge_without_decoded_responses(self):
        store = RedisChallengeStore(fakeredis.FakeRedis(), max_attempts=3)
        store.put(PHONE, "hash-1", 60, NOW)

        assert store.purge_expired(NOW + 120) == 1
        assert store.try_consume(PHONE, NOW + 120).state == ChallengeState.NOT_FOUND

    def test_locked_serializes_a_key(self, redis_store):
        redis_store.put(PHONE, "hash-1", 300, NOW)
        with redis_store.locked(PHONE):
            assert redis_store.record_failed_attempt(PHONE) == 2

    def test_connection_errors_surface_as_unavailable(self):
        client = MagicMock()
        client.hgetall.side_effect = redis.ConnectionError("connection refused")
        store = RedisChallengeStore(client)

        with pytest.raises(StoreUnavailableError):
            store.try_consume(PHONE, NOW)

    def test_lock_release_failure_does_not_mask_the_body(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = True
        client.lock.return_value.release.side_effect = LockNotOwnedError("lock expired")
        store = RedisChallengeStore(client)

        with store.locked(PHONE):
            pass

        with pytest.raises(ChallengeStoreError, match="from the body"):
            with store.locked(PHONE):
                raise ChallengeStoreError("from the body")


class TestRedisRateLimiter:
    def test_cooldown_and_reset(self, redis_client, config):
        limiter = RedisRateLimiter(redis_client, default_rules(config))

        assert limiter.allow(PHONE, NOW).allowed
        decision = limiter.allow(PHONE, NOW + 10)
        assert not decision.allowed
        assert decision.scope == "phone_cooldown"
        assert decision.retry_after == 50
        assert limiter.allow(PHONE, NOW + 60).allowed

    def test_denied_requests_spend_no_budget(self, redis_client):
        limiter = RedisRateLimiter(redis_client, [RateRule("burst", 1, 60), RateRule("slow", 2, 600)])
        assert limiter.allow(PHONE, NOW).allowed
        for _ in range(5):
            assert not limiter.allow(PHONE, NOW + 1).allowed
        assert limiter.allow(PHONE, NOW + 60).allowed
        assert limiter.allow(PHONE, NOW + 120).scope == "slow"

    def test_works_without_decoded_responses(self, config):
        limiter = RedisRateLimiter(fakeredis.FakeRedis(), default_rules(config))

        assert limiter.allow(PHONE, NOW).allowed
        decision = limiter.allow(PHONE, NOW + 10)
        assert not decision.allowed
        assert decision.scope == "phone_cooldown"
        assert decision.retry_after == 50

    def test_clear(self, redis_client, config):
        limiter = RedisRateLimiter(redis_client, default_rules(config))
        limiter.allow(PHONE, NOW)
        limiter.clear()
        assert limiter.allow(PHONE, NOW + 1).allowed

    def test_concurrent_issuance_never_exceeds_limit(self, redis_client):
        limiter = RedisRateLimiter(redis_client, [RateRule("hourly", 3, 3600)])
        barrier = threading.Barrier(10)
        decisions = []

        def request():
            barrier.wait()
            decisions.append(limiter.allow(PHONE, NOW))

        threads = [threading.Thread(target=request) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert Counter(d.allowed for d in decisions)[True] == 3

    def test_connection_errors_surface_as_unavailable(self, config):
        client = MagicMock()
        client.transaction.side_effect = redis.ConnectionError("connection refused")
        limiter = RedisRateLimiter(client, default_rules(config))

        with pytest.raises(StoreUnavailableError):
            limiter.allow(PHONE, NOW)


def test_engine_on_redis_backends(redis_client, config, clock):
    config = config.model_copy(update={"OTP_STORE_BACKEND": "redis", "REDIS_URL": "redis://fake"})
    gateway = RecordingGateway()
    engine = build_verification_engine(
        config,
        clock=clock,
        gateway=gateway,
        identity_issuer=FakeIdentityIssuer(),
        redis_client=redis_client,
    )
    try:
        assert engine.request_code(PHONE).ok
        assert engine.dispatcher.wait_idle(5)
        code = gateway.sent[-1][1]

        assert engine.verify_code(PHONE, "000000" if code != "000000" else "111111").status == OTPStatus.INVALID_CODE
        assert engine.verify_code(PHONE, code).status == OTPStatus.SUCCESS
        assert engine.verify_code(PHONE, code).status == OTPStatus.NO_ACTIVE_CHALLENGE
    finally:
        engine.dispatcher.stop()
