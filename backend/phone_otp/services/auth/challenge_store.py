"""
Challenge storage for phone OTP verification.

One outstanding challenge per phone key. Creating a new challenge supersedes
the previous one; consumption, attempt exhaustion and expiry evict it.
In-memory by default (state is lost on restart), Redis-backed when the
deployment runs more than one process.
"""
import logging
import math
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from threading import Lock
from typing import ContextManager, Dict, Iterator, Optional

from ...utils.locks import KeyedLock
from ...utils.phone import get_phone_last4
from .errors import ChallengeStoreError, StoreUnavailableError

import redis

logger = logging.getLogger(__name__)


@dataclass
class Challenge:
    """One outstanding OTP attempt window for a phone number"""
    phone_key: str
    code_hash: str
    created_at: float
    expires_at: float
    remaining_attempts: int
    consumed: bool = False
    challenge_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


class ChallengeState(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ChallengeLookup:
    state: ChallengeState
    challenge: Optional[Challenge] = None


class ChallengeStore(ABC):
    """
    Per-phone challenge state.

    Every operation is atomic for its key. locked() extends that to a
    multi-step sequence (look up, compare, decrement or consume) so the
    verification engine behaves as if calls on one key were serialized.
    """

    max_attempts: int

    @abstractmethod
    def put(self, phone_key: str, code_hash: str, ttl_seconds: float, now: float) -> Challenge:
        """Create a challenge, superseding any prior one for the key"""

    @abstractmethod
    def try_consume(self, phone_key: str, now: float) -> ChallengeLookup:
        """Peek at the active challenge; evicts it when expires_at <= now"""

    @abstractmethod
    def record_failed_attempt(self, phone_key: str) -> int:
        """Decrement attempts; evicts at zero. Returns remaining attempts."""

    @abstractmethod
    def mark_consumed(self, phone_key: str) -> None:
        """Remove a successfully verified challenge so it cannot be replayed"""

    @abstractmethod
    def locked(self, phone_key: str) -> ContextManager[None]:
        """Mutual exclusion for one key across several operations"""

    @abstractmethod
    def purge_expired(self, now: float) -> int:
        """Evict expired challenges without a read. Returns number evicted."""


class InMemoryChallengeStore(ChallengeStore):
    """
    Process-local challenge store.

    Expiry is checked on every access path; a sweep also runs on the issuance
    path at most once per cleanup interval so abandoned challenges do not pile up.
    """

    def __init__(self, max_attempts: int = 3, cleanup_interval: float = 60):
        self.max_attempts = max_attempts
        self._challenges: Dict[str, Challenge] = {}
        self._guard = Lock()
        self._locks = KeyedLock()
        self._cleanup_interval = cleanup_interval
        self._last_cleanup: Optional[float] = None

    def locked(self, phone_key: str) -> ContextManager[None]:
        return self._locks.hold(phone_key)

    def put(self, phone_key: str, code_hash: str, ttl_seconds: float, now: float) -> Challenge:
        self._maybe_cleanup(now)
        challenge = Challenge(
            phone_key=phone_key,
            code_hash=code_hash,
            created_at=now,
            expires_at=now + ttl_seconds,
            remaining_attempts=self.max_attempts,
        )
        with self._locks.hold(phone_key):
            with self._guard:
                superseded = self._challenges.get(phone_key)
                self._challenges[phone_key] = challenge
        if superseded is not None:
            logger.info(f"[OTP][Store] Superseded challenge {superseded.challenge_id} for {get_phone_last4(phone_key)}")
        return replace(challenge)

    def try_consume(self, phone_key: str, now: float) -> ChallengeLookup:
        with self._locks.hold(phone_key):
            with self._guard:
                challenge = self._challenges.get(phone_key)
                if challenge is None or challenge.consumed:
                    return ChallengeLookup(ChallengeState.NOT_FOUND)
                if challenge.is_expired(now):
                    del self._challenges[phone_key]
                    return ChallengeLookup(ChallengeState.EXPIRED, replace(challenge))
                return ChallengeLookup(ChallengeState.ACTIVE, replace(challenge))

    def record_failed_attempt(self, phone_key: str) -> int:
        with self._locks.hold(phone_key):
            with self._guard:
                challenge = self._challenges.get(phone_key)
                if challenge is None:
                    raise ChallengeStoreError(f"No challenge to record a failed attempt for {get_phone_last4(phone_key)}")
                challenge.remaining_attempts -= 1
                if challenge.remaining_attempts <= 0:
                    challenge.consumed = True
                    del self._challenges[phone_key]
                return max(0, challenge.remaining_attempts)

    def mark_consumed(self, phone_key: str) -> None:
        with self._locks.hold(phone_key):
            with self._guard:
                challenge = self._challenges.pop(phone_key, None)
            if challenge is None:
                raise ChallengeStoreError(f"No challenge to consume for {get_phone_last4(phone_key)}")
            challenge.consumed = True

    def purge_expired(self, now: float) -> int:
        with self._guard:
            candidates = [key for key, c in self._challenges.items() if c.is_expired(now)]

        evicted = 0
        for phone_key in candidates:
            # Keys busy in a verification are left for their own access path
            with self._locks.try_hold(phone_key) as acquired:
                if not acquired:
                    continue
                with self._guard:
                    challenge = self._challenges.get(phone_key)
                    if challenge is not None and challenge.is_expired(now):
                        del self._challenges[phone_key]
                        evicted += 1

        if evicted:
            logger.debug(f"[OTP][Store] Purged {evicted} expired challenge(s)")
        return evicted

    def _maybe_cleanup(self, now: float):
        with self._guard:
            due = self._last_cleanup is None or now - self._last_cleanup >= self._cleanup_interval
            if due:
                self._last_cleanup = now
        if due:
            self.purge_expired(now)

    def __len__(self) -> int:
        with self._guard:
            return len(self._challenges)


@contextmanager
def _redis_errors(action: str) -> Iterator[None]:
    try:
        yield
    except redis.RedisError as e:
        logger.error(f"[OTP][Store] Redis failure during {action}: {e}")
        raise StoreUnavailableError(f"Challenge store unavailable ({action})") from e


class RedisChallengeStore(ChallengeStore):
    """
    Redis-backed challenge store for multi-process deployments.

    One hash per phone key. Logical expiry is always checked against the
    caller's clock; the Redis key TTL (ttl + grace) only guarantees eventual
    eviction of abandoned challenges.
    """

    EXPIRY_GRACE_SECONDS = 60

    def __init__(
        self,
        redis_client: "redis.Redis",
        max_attempts: int = 3,
        key_prefix: str = "otp",
        lock_timeout: float = 5.0,
    ):
        self._redis = redis_client
        self.max_attempts = max_attempts
        self._prefix = key_prefix
        self._lock_timeout = lock_timeout

    def _key(self, phone_key: str) -> str:
        return f"{self._prefix}:challenge:{phone_key}"

    def _lock_key(self, phone_key: str) -> str:
        return f"{self._prefix}:lock:{phone_key}"

    @staticmethod
    def _decode(data: Dict) -> Challenge:
        values = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in data.items()
        }
        return Challenge(
            phone_key=values["phone_key"],
            code_hash=values["code_hash"],
            created_at=float(values["created_at"]),
            expires_at=float(values["expires_at"]),
            remaining_attempts=int(values["remaining_attempts"]),
            challenge_id=values["challenge_id"],
        )

    @contextmanager
    def locked(self, phone_key: str) -> Iterator[None]:
        lock = self._redis.lock(
            self._lock_key(phone_key),
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_timeout,
        )
        with _redis_errors("lock acquire"):
            acquired = lock.acquire()
        if not acquired:
            raise StoreUnavailableError(f"Timed out waiting for challenge lock on {get_phone_last4(phone_key)}")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.RedisError as e:
                # The lock still lapses after lock_timeout; the body's result or error stands
                logger.warning(f"[OTP][Store] Failed to release lock for {get_phone_last4(phone_key)}: {e}")

    def put(self, phone_key: str, code_hash: str, ttl_seconds: float, now: float) -> Challenge:
        challenge = Challenge(
            phone_key=phone_key,
            code_hash=code_hash,
            created_at=now,
            expires_at=now + ttl_seconds,
            remaining_attempts=self.max_attempts,
        )
        key = self._key(phone_key)
        with _redis_errors("put"):
            pipe = self._redis.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(key, mapping={
                "phone_key": challenge.phone_key,
                "code_hash": challenge.code_hash,
                "created_at": repr(challenge.created_at),
                "expires_at": repr(challenge.expires_at),
                "remaining_attempts": challenge.remaining_attempts,
                "challenge_id": challenge.challenge_id,
            })
            pipe.expire(key, int(math.ceil(ttl_seconds)) + self.EXPIRY_GRACE_SECONDS)
            pipe.execute()
        return challenge

    def try_consume(self, phone_key: str, now: float) -> ChallengeLookup:
        key = self._key(phone_key)
        with _redis_errors("read"):
            data = self._redis.hgetall(key)
            if not data:
                return ChallengeLookup(ChallengeState.NOT_FOUND)
            challenge = self._decode(data)
            if challenge.is_expired(now):
                self._redis.delete(key)
                return ChallengeLookup(ChallengeState.EXPIRED, challenge)
        return ChallengeLookup(ChallengeState.ACTIVE, challenge)

    def record_failed_attempt(self, phone_key: str) -> int:
        key = self._key(phone_key)

        def _decrement(pipe) -> int:
            current = pipe.hget(key, "remaining_attempts")
            if current is None:
                raise ChallengeStoreError(f"No challenge to record a failed attempt for {get_phone_last4(phone_key)}")
            remaining = int(current) - 1
            pipe.multi()
            if remaining <= 0:
                pipe.delete(key)
            else:
                pipe.hset(key, "remaining_attempts", remaining)
            return max(0, remaining)

        with _redis_errors("record failed attempt"):
            return self._redis.transaction(_decrement, key, value_from_callable=True)

    def mark_consumed(self, phone_key: str) -> None:
        with _redis_errors("consume"):
            deleted = self._redis.delete(self._key(phone_key))
        if not deleted:
            raise ChallengeStoreError(f"No challenge to consume for {get_phone_last4(phone_key)}")

    def purge_expired(self, now: float) -> int:
        evicted = 0
        with _redis_errors("purge"):
            for key in self._redis.scan_iter(match=f"{self._prefix}:challenge:*"):
                expires_at = self._redis.hget(key, "expires_at")
                if expires_at is not None and float(expires_at) <= now:
                    evicted += self._evict_if_expired(key, now)
        if evicted:
            logger.debug(f"[OTP][Store] Purged {evicted} expired challenge(s)")
        return evicted

    def _evict_if_expired(self, key, now: float) -> int:
        # Re-read under WATCH: a challenge re-issued or locked since the scan is left alone
        name = key.decode() if isinstance(key, bytes) else key
        lock_key = self._lock_key(name[len(f"{self._prefix}:challenge:"):])

        def _delete(pipe) -> int:
            expires_at = pipe.hget(key, "expires_at")
            stale = expires_at is not None and float(expires_at) <= now and not pipe.exists(lock_key)
            pipe.multi()
            if not stale:
                return 0
            pipe.delete(key)
            return 1

        return self._redis.transaction(_delete, key, lock_key, value_from_callable=True)
