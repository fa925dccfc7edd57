from pydantic import BaseModel
import os
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    # Environment and app identity
    ENV: str = os.getenv("ENV", "dev")  # local, dev, staging, prod
    APP_NAME: str = os.getenv("APP_NAME", "Kisan Market")

    # Identity token (JWT) issued after a successful verification
    JWT_SECRET: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

    # OTP challenge policy
    OTP_CODE_LENGTH: int = int(os.getenv("OTP_CODE_LENGTH", "6"))
    OTP_TTL_SECONDS: int = int(os.getenv("OTP_TTL_SECONDS", "300"))  # 5 minutes
    OTP_MAX_ATTEMPTS: int = int(os.getenv("OTP_MAX_ATTEMPTS", "3"))  # Wrong codes per challenge
    OTP_HASH_SECRET: str = os.getenv("OTP_HASH_SECRET", os.getenv("JWT_SECRET", "dev-secret-change-me"))

    # Issuance rate limits
    OTP_RESEND_COOLDOWN_SECONDS: int = int(os.getenv("OTP_RESEND_COOLDOWN_SECONDS", "60"))
    OTP_MAX_SENDS_PER_PHONE: int = int(os.getenv("OTP_MAX_SENDS_PER_PHONE", "5"))
    OTP_SENDS_WINDOW_SECONDS: int = int(os.getenv("OTP_SENDS_WINDOW_SECONDS", "3600"))
    OTP_IP_LIMIT: int = int(os.getenv("OTP_IP_LIMIT", "100"))  # Coarse per-network-address layer
    OTP_IP_WINDOW_SECONDS: int = int(os.getenv("OTP_IP_WINDOW_SECONDS", "900"))

    # Phone number rules (India by default: +91, 10 digits starting 6-9)
    PHONE_COUNTRY_CODE: str = os.getenv("PHONE_COUNTRY_CODE", "91")
    PHONE_NATIONAL_LENGTH: int = int(os.getenv("PHONE_NATIONAL_LENGTH", "10"))
    PHONE_VALID_LEADING_DIGITS: str = os.getenv("PHONE_VALID_LEADING_DIGITS", "6789")

    # State backends
    OTP_STORE_BACKEND: str = os.getenv("OTP_STORE_BACKEND", "memory")  # memory, redis
    REDIS_URL: Optional[str] = os.getenv("REDIS_URL")
    OTP_CLEANUP_INTERVAL_SECONDS: int = int(os.getenv("OTP_CLEANUP_INTERVAL_SECONDS", "60"))

    # Delivery (Twilio SMS)
    OTP_DELIVERY_PROVIDER: str = os.getenv("OTP_DELIVERY_PROVIDER", "stub")  # twilio_sms, stub
    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    OTP_FROM_NUMBER: str = os.getenv("OTP_FROM_NUMBER", "")
    OTP_DELIVERY_QUEUE_SIZE: int = int(os.getenv("OTP_DELIVERY_QUEUE_SIZE", "1000"))
    OTP_LOG_CODES: bool = os.getenv("OTP_LOG_CODES", "false").lower() == "true"  # Local env only

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() in {"prod", "production"}


settings = Settings()


def validate_config(config: Optional[Settings] = None):
    """Validate configuration at startup. Raises ValueError if invalid."""
    config = config or settings

    if config.OTP_CODE_LENGTH < 4 or config.OTP_CODE_LENGTH > 10:
        error_msg = f"OTP_CODE_LENGTH must be between 4 and 10, got {config.OTP_CODE_LENGTH}"
        logger.error(error_msg)
        raise ValueError(error_msg)

    for name in (
        "OTP_TTL_SECONDS",
        "OTP_MAX_ATTEMPTS",
        "OTP_RESEND_COOLDOWN_SECONDS",
        "OTP_MAX_SENDS_PER_PHONE",
        "OTP_SENDS_WINDOW_SECONDS",
        "OTP_IP_LIMIT",
        "OTP_IP_WINDOW_SECONDS",
        "OTP_DELIVERY_QUEUE_SIZE",
    ):
        if getattr(config, name) < 1:
            error_msg = f"{name} must be a positive integer"
            logger.error(error_msg)
            raise ValueError(error_msg)

    if not config.PHONE_COUNTRY_CODE.isdigit():
        error_msg = f"PHONE_COUNTRY_CODE must be digits only, got '{config.PHONE_COUNTRY_CODE}'"
        logger.error(error_msg)
        raise ValueError(error_msg)

    if not config.PHONE_VALID_LEADING_DIGITS or not config.PHONE_VALID_LEADING_DIGITS.isdigit():
        error_msg = "PHONE_VALID_LEADING_DIGITS must be a non-empty set of digits"
        logger.error(error_msg)
        raise ValueError(error_msg)

    if config.OTP_STORE_BACKEND not in ("memory", "redis"):
        error_msg = f"Unknown OTP_STORE_BACKEND: {config.OTP_STORE_BACKEND}. Must be one of: memory, redis"
        logger.error(error_msg)
        raise ValueError(error_msg)

    if config.OTP_STORE_BACKEND == "redis" and not config.REDIS_URL:
        error_msg = "OTP_STORE_BACKEND=redis requires REDIS_URL"
        logger.error(error_msg)
        raise ValueError(error_msg)

    if config.OTP_DELIVERY_PROVIDER not in ("stub", "twilio_sms"):
        error_msg = f"Unknown OTP_DELIVERY_PROVIDER: {config.OTP_DELIVERY_PROVIDER}. Must be one of: twilio_sms, stub"
        logger.error(error_msg)
        raise ValueError(error_msg)

    if config.OTP_DELIVERY_PROVIDER == "twilio_sms":
        missing = []
        if not config.TWILIO_ACCOUNT_SID:
            missing.append("TWILIO_ACCOUNT_SID")
        if not config.TWILIO_AUTH_TOKEN:
            missing.append("TWILIO_AUTH_TOKEN")
        if not config.OTP_FROM_NUMBER:
            missing.append("OTP_FROM_NUMBER")
        if missing:
            error_msg = f"Twilio SMS delivery enabled but missing required configuration: {', '.join(missing)}"
            logger.error(error_msg)
            raise ValueError(error_msg)

    # Production safety gates
    if config.is_production:
        if config.OTP_DELIVERY_PROVIDER == "stub":
            error_msg = "OTP_DELIVERY_PROVIDER=stub is not allowed in production"
            logger.error(error_msg)
            raise ValueError(error_msg)

        if not config.JWT_SECRET or config.JWT_SECRET in ("dev-secret-change-me", "dev-secret"):
            error_msg = (
                "CRITICAL SECURITY ERROR: JWT_SECRET must be set and not use default value in production. "
                "Set JWT_SECRET environment variable to a secure random value."
            )
            logger.error(error_msg)
            raise ValueError(error_msg)

        if config.OTP_LOG_CODES:
            error_msg = "OTP_LOG_CODES=true is not allowed in production"
            logger.error(error_msg)
            raise ValueError(error_msg)

    logger.info("Configuration validation complete")
    logger.info(f"Environment: {config.ENV}")
    logger.info(f"OTP store backend: {config.OTP_STORE_BACKEND}, delivery provider: {config.OTP_DELIVERY_PROVIDER}")
    if config.TWILIO_ACCOUNT_SID:
        logger.info(f"Twilio Account SID: {config.TWILIO_ACCOUNT_SID[:8]}...")
