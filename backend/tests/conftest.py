"""
Pytest configuration and fixtures for the OTP service tests.

Every engine built here runs on a ManualClock with recording fakes for
delivery and identity issuance, so tests control time and can read the code
that would have been sent.
"""
import os
import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("ENV", "test")

from phone_otp.core.clock import ManualClock  # noqa: E402
from phone_otp.core.config import Settings  # noqa: E402
from phone_otp.services.auth.challenge_store import InMemoryChallengeStore  # noqa: E402
from phone_otp.services.auth.rate_limit import InMemoryRateLimiter, default_rules  # noqa: E402
from phone_otp.services.otp_service import VerificationEngine  # noqa: E402
from phone_otp.utils.phone import PhoneNormalizer  # noqa: E402
from tests.helpers.fakes import FakeIdentityIssuer, FixedCodeGenerator, RecordingDispatcher  # noqa: E402

TEST_HASH_SECRET = "test-otp-hash-secret"


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def config() -> Settings:
    return Settings(
        ENV="test",
        JWT_SECRET="test-jwt-secret",
        OTP_HASH_SECRET=TEST_HASH_SECRET,
        OTP_CODE_LENGTH=6,
        OTP_TTL_SECONDS=300,
        OTP_MAX_ATTEMPTS=3,
        OTP_RESEND_COOLDOWN_SECONDS=60,
        OTP_MAX_SENDS_PER_PHONE=5,
        OTP_SENDS_WINDOW_SECONDS=3600,
        OTP_IP_LIMIT=100,
        OTP_IP_WINDOW_SECONDS=900,
        OTP_STORE_BACKEND="memory",
        OTP_DELIVERY_PROVIDER="stub",
        OTP_LOG_CODES=False,
    )


@pytest.fixture
def store(config) -> InMemoryChallengeStore:
    return InMemoryChallengeStore(max_attempts=config.OTP_MAX_ATTEMPTS)


@pytest.fixture
def limiter(config) -> InMemoryRateLimiter:
    return InMemoryRateLimiter(default_rules(config))


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def issuer() -> FakeIdentityIssuer:
    return FakeIdentityIssuer()


@pytest.fixture
def generator() -> FixedCodeGenerator:
    return FixedCodeGenerator()


@pytest.fixture
def engine(config, clock, store, limiter, generator, dispatcher, issuer) -> VerificationEngine:
    return VerificationEngine(
        store=store,
        limiter=limiter,
        generator=generator,
        dispatcher=dispatcher,
        identity_issuer=issuer,
        normalizer=PhoneNormalizer.from_settings(config),
        clock=clock,
        hash_secret=config.OTP_HASH_SECRET,
        ttl_seconds=config.OTP_TTL_SECONDS,
        env=config.ENV,
    )


@pytest.fixture
def client(engine):
    """TestClient with the engine dependency pointed at the test engine"""
    from fastapi.testclient import TestClient

    from phone_otp.dependencies import get_otp_engine
    from phone_otp.main import app

    app.dependency_overrides[get_otp_engine] = lambda: engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
