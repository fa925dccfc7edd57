"""
OTP code generation and hashing
"""
import hashlib
import hmac
import logging
import secrets

from .errors import CodeGenerationError

logger = logging.getLogger(__name__)

_DIGITS = "0123456789"


class CodeGenerator:
    """Fixed-width numeric codes drawn from the OS CSPRNG"""

    def __init__(self, length: int = 6):
        if length < 4:
            raise ValueError(f"OTP code length must be at least 4, got {length}")
        self.length = length

    def generate(self) -> str:
        """Generate a random numeric code of the configured length"""
        try:
            return "".join(secrets.choice(_DIGITS) for _ in range(self.length))
        except (OSError, NotImplementedError) as e:
            logger.error(f"[OTP] Secure random source unavailable: {e}")
            raise CodeGenerationError("Unable to generate verification code") from e


def hash_code(phone_key: str, code: str, secret: str) -> str:
    """
    Digest of a code bound to its phone key.

    The store only ever holds this digest, so a dump of the store does not
    reveal usable codes without the secret.
    """
    message = f"{phone_key}:{code}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def codes_match(expected_hash: str, phone_key: str, supplied: str, secret: str) -> bool:
    """Constant-time comparison of a supplied code against a stored digest"""
    return hmac.compare_digest(expected_hash, hash_code(phone_key, supplied, secret))


def is_well_formed(code: str, length: int) -> bool:
    return isinstance(code, str) and len(code) == length and all(ch in _DIGITS for ch in code)
