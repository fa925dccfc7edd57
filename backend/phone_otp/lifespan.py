"""
Application lifespan management for startup and shutdown events
"""
import logging
from contextlib import asynccontextmanager

from .core.config import settings, validate_config
from .services.auth.factory import get_verification_engine, reset_verification_engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app):
    """Validate configuration, start the delivery worker, stop it on shutdown"""
    logger.info(f"Starting {settings.APP_NAME} OTP service...")

    validate_config(settings)

    engine = get_verification_engine()
    engine.dispatcher.start()
    logger.info("OTP delivery worker started")

    try:
        yield
    finally:
        logger.info("Shutting down OTP service...")
        reset_verification_engine()
        logger.info("OTP delivery worker stopped")
