"""
Phone OTP authentication building blocks
"""
from .audit import AuditService
from .challenge_store import (
    Challenge,
    ChallengeLookup,
    ChallengeState,
    ChallengeStore,
    InMemoryChallengeStore,
    RedisChallengeStore,
)
from .codes import CodeGenerator, codes_match, hash_code, is_well_formed
from .delivery import DeliveryGateway, DeliveryWorker, StubDeliveryGateway, TwilioSMSGateway
from .errors import (
    ChallengeStoreError,
    CodeGenerationError,
    DeliveryError,
    IdentityIssuerError,
    OTPInfrastructureError,
    StoreUnavailableError,
)
from .factory import build_verification_engine, get_verification_engine, reset_verification_engine
from .identity import IdentityAssertionIssuer, JWTIdentityIssuer, decode_identity_token
from .rate_limit import (
    InMemoryRateLimiter,
    IssuanceRateLimiter,
    RateDecision,
    RateRule,
    RateWindow,
    RedisRateLimiter,
    default_rules,
)

__all__ = [
    "AuditService",
    "Challenge",
    "ChallengeLookup",
    "ChallengeState",
    "ChallengeStore",
    "InMemoryChallengeStore",
    "RedisChallengeStore",
    "CodeGenerator",
    "codes_match",
    "hash_code",
    "is_well_formed",
    "DeliveryGateway",
    "DeliveryWorker",
    "StubDeliveryGateway",
    "TwilioSMSGateway",
    "ChallengeStoreError",
    "CodeGenerationError",
    "DeliveryError",
    "IdentityIssuerError",
    "OTPInfrastructureError",
    "StoreUnavailableError",
    "build_verification_engine",
    "get_verification_engine",
    "reset_verification_engine",
    "IdentityAssertionIssuer",
    "JWTIdentityIssuer",
    "decode_identity_token",
    "InMemoryRateLimiter",
    "IssuanceRateLimiter",
    "RateDecision",
    "RateRule",
    "RateWindow",
    "RedisRateLimiter",
    "default_rules",
]
