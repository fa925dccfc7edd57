"""
Verification engine factory
"""
import logging
from threading import Lock
from typing import Optional

import redis

from ...core.clock import Clock, SystemClock
from ...core.config import Settings, settings
from ...utils.phone import PhoneNormalizer
from .challenge_store import ChallengeStore, InMemoryChallengeStore, RedisChallengeStore
from .codes import CodeGenerator
from .delivery import DeliveryGateway, DeliveryWorker, StubDeliveryGateway, TwilioSMSGateway
from .identity import IdentityAssertionIssuer, JWTIdentityIssuer
from .rate_limit import InMemoryRateLimiter, IssuanceRateLimiter, RedisRateLimiter, default_rules

logger = logging.getLogger(__name__)

_engine_instance = None
_engine_lock = Lock()


def build_redis_client(config: Settings) -> "redis.Redis":
    return redis.from_url(config.REDIS_URL, decode_responses=True, socket_connect_timeout=3, socket_timeout=3)


def build_delivery_gateway(config: Settings) -> DeliveryGateway:
    """
    Get delivery gateway based on configuration.

    Raises:
        ValueError: If the provider is unknown or misconfigured
    """
    provider_type = config.OTP_DELIVERY_PROVIDER.lower()

    if provider_type == "twilio_sms":
        try:
            gateway = TwilioSMSGateway.from_settings(config)
        except ValueError as e:
            logger.error(f"[OTP] Failed to initialize Twilio SMS: {e}")
            raise
        logger.info("[OTP] Using Twilio SMS delivery")
        return gateway

    elif provider_type == "stub":
        logger.info("[OTP] Using stub delivery")
        return StubDeliveryGateway(env=config.ENV, log_codes=config.OTP_LOG_CODES)

    else:
        raise ValueError(f"Unknown OTP delivery provider: {provider_type}. Must be one of: twilio_sms, stub")


def build_verification_engine(
    config: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    store: Optional[ChallengeStore] = None,
    limiter: Optional[IssuanceRateLimiter] = None,
    gateway: Optional[DeliveryGateway] = None,
    identity_issuer: Optional[IdentityAssertionIssuer] = None,
    redis_client: Optional["redis.Redis"] = None,
):
    """
    Assemble a VerificationEngine from settings.

    Any component passed explicitly is used as-is; the rest are built from
    configuration.
    """
    from ..otp_service import VerificationEngine

    config = config or settings
    clock = clock or SystemClock()

    if config.OTP_STORE_BACKEND == "redis" and (store is None or limiter is None):
        redis_client = redis_client or build_redis_client(config)
        logger.info("[OTP] Using Redis challenge store and rate limiter")

    if store is None:
        if config.OTP_STORE_BACKEND == "redis":
            store = RedisChallengeStore(redis_client, max_attempts=config.OTP_MAX_ATTEMPTS)
        else:
            store = InMemoryChallengeStore(
                max_attempts=config.OTP_MAX_ATTEMPTS,
                cleanup_interval=config.OTP_CLEANUP_INTERVAL_SECONDS,
            )

    if limiter is None:
        if config.OTP_STORE_BACKEND == "redis":
            limiter = RedisRateLimiter(redis_client, default_rules(config))
        else:
            limiter = InMemoryRateLimiter(default_rules(config))

    dispatcher = DeliveryWorker(
        gateway or build_delivery_gateway(config),
        queue_size=config.OTP_DELIVERY_QUEUE_SIZE,
        env=config.ENV,
    )

    return VerificationEngine(
        store=store,
        limiter=limiter,
        generator=CodeGenerator(config.OTP_CODE_LENGTH),
        dispatcher=dispatcher,
        identity_issuer=identity_issuer or JWTIdentityIssuer.from_settings(config, clock=clock),
        normalizer=PhoneNormalizer.from_settings(config),
        clock=clock,
        hash_secret=config.OTP_HASH_SECRET,
        ttl_seconds=config.OTP_TTL_SECONDS,
        env=config.ENV,
    )


def get_verification_engine():
    """Get or create the process-wide engine"""
    global _engine_instance
    with _engine_lock:
        if _engine_instance is None:
            _engine_instance = build_verification_engine(settings)
        return _engine_instance


def reset_verification_engine():
    """Stop the current engine's worker and drop the singleton (tests)"""
    global _engine_instance
    with _engine_lock:
        if _engine_instance is not None:
            _engine_instance.dispatcher.stop()
        _engine_instance = None
