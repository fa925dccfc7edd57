"""
Identity assertions issued after a phone number has been verified
"""
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from jose.exceptions import JOSEError

from ...core.clock import Clock, SystemClock
from ...core.config import Settings, settings
from ...utils.phone import get_phone_last4
from .errors import IdentityIssuerError

logger = logging.getLogger(__name__)

AUTH_PROVIDER = "phone"


class IdentityAssertionIssuer(ABC):
    """Turns a verified phone key into an opaque identity credential"""

    @abstractmethod
    def issue(self, phone_key: str) -> str:
        """
        Issue an identity assertion.

        Raises:
            IdentityIssuerError: If no assertion could be produced
        """
        pass


class JWTIdentityIssuer(IdentityAssertionIssuer):
    """Signed JWT whose subject is the verified phone key"""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        expire_minutes: int = 60,
        clock: Optional[Clock] = None,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes
        self.clock = clock or SystemClock()

    @classmethod
    def from_settings(cls, config: Settings, clock: Optional[Clock] = None) -> "JWTIdentityIssuer":
        return cls(
            secret=config.JWT_SECRET,
            algorithm=config.ALGORITHM,
            expire_minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES,
            clock=clock,
        )

    def issue(self, phone_key: str) -> str:
        issued_at = int(self.clock.now())
        payload = {
            "sub": phone_key,
            "auth_provider": AUTH_PROVIDER,
            "phone_verified": True,
            "iat": issued_at,
            "exp": issued_at + self.expire_minutes * 60,
            "jti": uuid.uuid4().hex,
        }
        try:
            return jwt.encode(payload, self.secret, algorithm=self.algorithm)
        except (JOSEError, TypeError, ValueError) as e:
            logger.error(f"[OTP][Identity] Failed to sign token for ...{get_phone_last4(phone_key)}: {e}")
            raise IdentityIssuerError("Unable to issue identity token") from e


def decode_identity_token(
    token: str,
    secret: Optional[str] = None,
    algorithm: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Decode and verify an identity token.

    Raises:
        jose.JWTError: If the signature is invalid or the token has expired
        JWTError: If the token was not issued for a verified phone
    """
    payload = jwt.decode(
        token,
        secret or settings.JWT_SECRET,
        algorithms=[algorithm or settings.ALGORITHM],
    )
    if payload.get("auth_provider") != AUTH_PROVIDER or not payload.get("phone_verified"):
        raise JWTError("Token was not issued for a verified phone")
    return payload
