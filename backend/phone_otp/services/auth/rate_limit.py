"""
Issuance rate limiting for OTP requests

Fixed windows per (rule, key). In-memory by default, Redis-backed for
multi-process deployments.
"""
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional, Sequence, Tuple

import redis

from ...core.config import Settings
from ...utils.locks import KeyedLock
from ...utils.phone import get_phone_last4
from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)

PHONE = "phone"
IP = "ip"


@dataclass(frozen=True)
class RateRule:
    """At most `limit` issuances per `window_seconds` for one subject"""
    scope: str
    limit: int
    window_seconds: float
    subject: str = PHONE  # phone or ip


@dataclass
class RateWindow:
    window_start: float
    count: int
    limit: int
    window_duration: float

    def is_stale(self, now: float) -> bool:
        return now >= self.window_start + self.window_duration

    def retry_after(self, now: float) -> float:
        return self.window_start + self.window_duration - now


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0
    scope: Optional[str] = None


def default_rules(config: Settings) -> List[RateRule]:
    """Resend cooldown, per-phone hourly cap and the coarse per-IP layer"""
    return [
        RateRule("phone_cooldown", 1, config.OTP_RESEND_COOLDOWN_SECONDS),
        RateRule("phone_hourly", config.OTP_MAX_SENDS_PER_PHONE, config.OTP_SENDS_WINDOW_SECONDS),
        RateRule("ip_window", config.OTP_IP_LIMIT, config.OTP_IP_WINDOW_SECONDS, subject=IP),
    ]


def _decode(data: Dict) -> Dict[str, str]:
    """Hash fields as text, whether or not the client decodes responses"""
    return {
        (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
        for k, v in data.items()
    }


def _deny(denials: Sequence[Tuple[RateRule, float]]) -> RateDecision:
    rule, wait = max(denials, key=lambda item: item[1])
    return RateDecision(allowed=False, retry_after=max(1, int(math.ceil(wait))), scope=rule.scope)


class IssuanceRateLimiter(ABC):
    """
    Decides whether a new code may be issued.

    All applicable rules are checked before any counter moves, so a denied
    request spends no budget. Rules with subject "ip" only apply when the
    client address is known.
    """

    def __init__(self, rules: Sequence[RateRule]):
        self.rules = list(rules)

    def _subjects(self, phone_key: str, client_ip: Optional[str]) -> List[Tuple[RateRule, str]]:
        applicable = []
        for rule in self.rules:
            if rule.subject == IP:
                if client_ip:
                    applicable.append((rule, f"{rule.scope}:{client_ip}"))
            else:
                applicable.append((rule, f"{rule.scope}:{phone_key}"))
        return applicable

    @abstractmethod
    def allow(self, phone_key: str, now: float, client_ip: Optional[str] = None) -> RateDecision:
        """Check every rule and, when all pass, count one issuance against each"""

    @abstractmethod
    def clear(self):
        """Reset all windows"""


class InMemoryRateLimiter(IssuanceRateLimiter):
    """Process-local fixed-window limiter"""

    def __init__(self, rules: Sequence[RateRule], cleanup_interval: float = 3600):
        super().__init__(rules)
        self._windows: Dict[str, RateWindow] = {}
        self._guard = Lock()
        self._locks = KeyedLock()
        self._cleanup_interval = cleanup_interval
        self._last_cleanup: Optional[float] = None

    def allow(self, phone_key: str, now: float, client_ip: Optional[str] = None) -> RateDecision:
        self._cleanup_old_windows(now)
        subjects = self._subjects(phone_key, client_ip)

        # Per-key locks serialize a window's check-and-increment; _guard only covers the dict
        with self._locks.hold_many(key for _, key in subjects):
            windows = []
            denials = []
            for rule, key in subjects:
                with self._guard:
                    window = self._windows.get(key)
                if window is None or window.is_stale(now):
                    window = RateWindow(now, 0, rule.limit, rule.window_seconds)
                if window.count >= window.limit:
                    denials.append((rule, window.retry_after(now)))
                windows.append((key, window))

            if denials:
                decision = _deny(denials)
                logger.info(
                    f"[OTP][RateLimit] Denied {get_phone_last4(phone_key)} by {decision.scope}, "
                    f"retry after {decision.retry_after}s"
                )
                return decision

            with self._guard:
                for key, window in windows:
                    window.count += 1
                    self._windows[key] = window

        return RateDecision(allowed=True)

    def _cleanup_old_windows(self, now: float):
        """Drop windows that have already reset"""
        with self._guard:
            if self._last_cleanup is not None and now - self._last_cleanup < self._cleanup_interval:
                return
            stale = [key for key, window in self._windows.items() if window.is_stale(now)]
            for key in stale:
                del self._windows[key]
            self._last_cleanup = now

    def clear(self):
        with self._guard:
            self._windows.clear()
            self._last_cleanup = None

    def __len__(self) -> int:
        with self._guard:
            return len(self._windows)


class RedisRateLimiter(IssuanceRateLimiter):
    """
    Shared fixed-window limiter.

    Each window is a hash {start, count}. Check-and-increment runs inside a
    WATCH/MULTI transaction over every key involved, retried on conflict.
    """

    def __init__(self, redis_client: "redis.Redis", rules: Sequence[RateRule], key_prefix: str = "otp"):
        super().__init__(rules)
        self._redis = redis_client
        self._prefix = key_prefix

    def _key(self, subject_key: str) -> str:
        return f"{self._prefix}:rate:{subject_key}"

    def allow(self, phone_key: str, now: float, client_ip: Optional[str] = None) -> RateDecision:
        subjects = [(rule, self._key(key)) for rule, key in self._subjects(phone_key, client_ip)]

        def _check_and_increment(pipe) -> RateDecision:
            windows = []
            denials = []
            for rule, key in subjects:
                data = _decode(pipe.hgetall(key))
                window = None
                if data:
                    window = RateWindow(float(data["start"]), int(data["count"]), rule.limit, rule.window_seconds)
                if window is None or window.is_stale(now):
                    window = RateWindow(now, 0, rule.limit, rule.window_seconds)
                if window.count >= window.limit:
                    denials.append((rule, window.retry_after(now)))
                windows.append((key, window))

            if denials:
                pipe.multi()
                return _deny(denials)

            pipe.multi()
            for key, window in windows:
                pipe.hset(key, mapping={"start": repr(window.window_start), "count": window.count + 1})
                pipe.expire(key, int(math.ceil(window.window_duration)) + 1)
            return RateDecision(allowed=True)

        try:
            decision = self._redis.transaction(
                _check_and_increment, *[key for _, key in subjects], value_from_callable=True
            )
        except redis.RedisError as e:
            logger.error(f"[OTP][RateLimit] Redis failure: {e}")
            raise StoreUnavailableError("Rate limiter unavailable") from e

        if not decision.allowed:
            logger.info(
                f"[OTP][RateLimit] Denied {get_phone_last4(phone_key)} by {decision.scope}, "
                f"retry after {decision.retry_after}s"
            )
        return decision

    def clear(self):
        try:
            keys = list(self._redis.scan_iter(match=f"{self._prefix}:rate:*"))
            if keys:
                self._redis.delete(*keys)
        except redis.RedisError as e:
            raise StoreUnavailableError("Rate limiter unavailable") from e
