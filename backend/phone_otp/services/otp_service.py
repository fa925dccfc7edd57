"""
Phone OTP verification engine

Orchestrates normalization, rate limiting, challenge storage, delivery and
identity issuance. Holds no state of its own; everything durable lives in the
challenge store and the rate limiter.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..core.clock import Clock, SystemClock
from ..utils.phone import InvalidPhoneNumber, PhoneNormalizer, get_phone_last4
from .auth.audit import AuditService
from .auth.challenge_store import ChallengeState, ChallengeStore
from .auth.codes import CodeGenerator, codes_match, hash_code, is_well_formed
from .auth.delivery import DeliveryWorker
from .auth.identity import IdentityAssertionIssuer
from .auth.rate_limit import IssuanceRateLimiter

logger = logging.getLogger(__name__)


class OTPStatus(str, Enum):
    CODE_SENT = "CodeSent"
    SUCCESS = "Success"
    INVALID_FORMAT = "InvalidFormat"
    INVALID_CODE = "InvalidCode"
    EXPIRED = "Expired"
    ATTEMPTS_EXHAUSTED = "AttemptsExhausted"
    NO_ACTIVE_CHALLENGE = "NoActiveChallenge"
    RATE_LIMITED = "RateLimited"


@dataclass(frozen=True)
class IssuanceResult:
    status: OTPStatus
    phone_key: Optional[str] = None
    ttl_seconds: Optional[int] = None
    retry_after: Optional[int] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OTPStatus.CODE_SENT


@dataclass(frozen=True)
class VerificationOutcome:
    status: OTPStatus
    phone_key: Optional[str] = None
    identity: Optional[str] = None
    remaining_attempts: Optional[int] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == OTPStatus.SUCCESS


class VerificationEngine:
    """
    Issues and verifies one-time codes for phone numbers.

    Expected outcomes (bad input, wrong code, expiry, exhausted attempts, rate
    limits) are returned as values. Infrastructure failures raise
    OTPInfrastructureError subclasses and are never turned into outcomes.

    Every request_code/verify_code call for a phone key runs entirely under
    that key's store lock, so concurrent calls on one key behave as if
    serialized. Different keys never contend.
    """

    def __init__(
        self,
        store: ChallengeStore,
        limiter: IssuanceRateLimiter,
        generator: CodeGenerator,
        dispatcher: DeliveryWorker,
        identity_issuer: IdentityAssertionIssuer,
        normalizer: Optional[PhoneNormalizer] = None,
        clock: Optional[Clock] = None,
        hash_secret: str = "dev-secret-change-me",
        ttl_seconds: int = 300,
        env: Optional[str] = None,
    ):
        self.store = store
        self.limiter = limiter
        self.generator = generator
        self.dispatcher = dispatcher
        self.identity_issuer = identity_issuer
        self.normalizer = normalizer or PhoneNormalizer()
        self.clock = clock or SystemClock()
        self.hash_secret = hash_secret
        self.ttl_seconds = ttl_seconds
        self.env = env

    @property
    def code_length(self) -> int:
        return self.generator.length

    def request_code(
        self,
        raw_phone: Optional[str],
        client_ip: Optional[str] = None,
        request_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuanceResult:
        """
        Issue a fresh code for a phone number.

        Args:
            raw_phone: Phone number as typed by the user
            client_ip: Client network address, enables the per-IP rule
            request_id: Request ID from middleware, for audit correlation
            user_agent: User agent string, for audit

        Returns:
            IssuanceResult with CODE_SENT, INVALID_FORMAT or RATE_LIMITED.
            The code itself is never part of the result.
        """
        try:
            phone_key = self.normalizer.normalize(raw_phone)
        except InvalidPhoneNumber as e:
            logger.info(f"[OTP] Rejected phone number: {e}")
            AuditService.log_otp_start_invalid_phone(
                request_id=request_id, ip=client_ip, user_agent=user_agent, env=self.env, reason=str(e)
            )
            return IssuanceResult(OTPStatus.INVALID_FORMAT, message=str(e))

        phone_last4 = get_phone_last4(phone_key)
        AuditService.log_otp_start_requested(
            request_id=request_id, phone_last4=phone_last4, ip=client_ip, user_agent=user_agent, env=self.env
        )

        with self.store.locked(phone_key):
            now = self.clock.now()
            decision = self.limiter.allow(phone_key, now, client_ip=client_ip)
            if not decision.allowed:
                AuditService.log_otp_start_rate_limited(
                    request_id=request_id,
                    phone_last4=phone_last4,
                    ip=client_ip,
                    user_agent=user_agent,
                    env=self.env,
                    reason=decision.scope,
                    retry_after=decision.retry_after,
                )
                return IssuanceResult(OTPStatus.RATE_LIMITED, phone_key=phone_key, retry_after=decision.retry_after)

            code = self.generator.generate()
            challenge = self.store.put(
                phone_key, hash_code(phone_key, code, self.hash_secret), self.ttl_seconds, now
            )

        if self.dispatcher.submit(phone_key, code, request_id=request_id):
            AuditService.log_otp_start_sent(
                request_id=request_id,
                phone_last4=phone_last4,
                ip=client_ip,
                user_agent=user_agent,
                env=self.env,
                challenge_id=challenge.challenge_id,
            )
        else:
            # The dispatcher has audited the drop; the challenge stands until expiry or a resend
            logger.warning(f"[OTP] Delivery dropped for {phone_last4}, challenge {challenge.challenge_id} kept")
        logger.info(f"[OTP] Code issued for {phone_last4}, expires in {self.ttl_seconds}s")
        return IssuanceResult(OTPStatus.CODE_SENT, phone_key=phone_key, ttl_seconds=self.ttl_seconds)

    def verify_code(
        self,
        raw_phone: Optional[str],
        supplied_code: Optional[str],
        client_ip: Optional[str] = None,
        request_id: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VerificationOutcome:
        """
        Check a supplied code against the active challenge.

        Returns:
            VerificationOutcome. On SUCCESS `identity` carries the issued
            assertion; on INVALID_CODE `remaining_attempts` is set.

        Raises:
            OTPInfrastructureError: If the store or the identity issuer failed.
                A challenge consumed before an issuer failure stays consumed.
        """
        try:
            phone_key = self.normalizer.normalize(raw_phone)
        except InvalidPhoneNumber as e:
            logger.info(f"[OTP] Rejected phone number on verify: {e}")
            return VerificationOutcome(OTPStatus.INVALID_FORMAT, message=str(e))

        phone_last4 = get_phone_last4(phone_key)
        code = (supplied_code or "").strip()
        if not is_well_formed(code, self.code_length):
            self._audit_failure(OTPStatus.INVALID_FORMAT, phone_last4, client_ip, request_id, user_agent)
            return VerificationOutcome(
                OTPStatus.INVALID_FORMAT,
                phone_key=phone_key,
                message=f"Code must be {self.code_length} digits",
            )

        with self.store.locked(phone_key):
            lookup = self.store.try_consume(phone_key, self.clock.now())

            if lookup.state == ChallengeState.NOT_FOUND:
                self._audit_failure(OTPStatus.NO_ACTIVE_CHALLENGE, phone_last4, client_ip, request_id, user_agent)
                return VerificationOutcome(OTPStatus.NO_ACTIVE_CHALLENGE, phone_key=phone_key)

            if lookup.state == ChallengeState.EXPIRED:
                self._audit_failure(OTPStatus.EXPIRED, phone_last4, client_ip, request_id, user_agent)
                return VerificationOutcome(OTPStatus.EXPIRED, phone_key=phone_key)

            challenge = lookup.challenge
            if not codes_match(challenge.code_hash, phone_key, code, self.hash_secret):
                remaining = self.store.record_failed_attempt(phone_key)
                status = OTPStatus.ATTEMPTS_EXHAUSTED if remaining == 0 else OTPStatus.INVALID_CODE
                logger.warning(f"[OTP] Wrong code for {phone_last4}, {remaining} attempt(s) left")
                self._audit_failure(status, phone_last4, client_ip, request_id, user_agent, remaining)
                return VerificationOutcome(status, phone_key=phone_key, remaining_attempts=remaining)

            self.store.mark_consumed(phone_key)

        identity = self.identity_issuer.issue(phone_key)
        AuditService.log_otp_verify_success(
            request_id=request_id,
            phone_last4=phone_last4,
            ip=client_ip,
            user_agent=user_agent,
            env=self.env,
            challenge_id=challenge.challenge_id,
        )
        logger.info(f"[OTP] Verification successful for {phone_last4}")
        return VerificationOutcome(OTPStatus.SUCCESS, phone_key=phone_key, identity=identity)

    def _audit_failure(self, status, phone_last4, client_ip, request_id, user_agent, remaining=None):
        AuditService.log_otp_verify_fail(
            request_id=request_id,
            phone_last4=phone_last4,
            ip=client_ip,
            user_agent=user_agent,
            env=self.env,
            error=status.value,
            remaining_attempts=remaining,
        )
