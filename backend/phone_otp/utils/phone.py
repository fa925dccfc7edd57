"""
Phone number normalization and validation utilities
"""
import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat
from typing import Optional

from ..core.config import Settings, settings

_DIGITS = "0123456789"
# Separators users type or paste; anything else outside digits is rejected
_FORMATTING_CHARS = frozenset(" \t-.()/")


class InvalidPhoneNumber(ValueError):
    """Raised when raw input does not match any accepted phone number shape"""


class PhoneNormalizer:
    """
    Canonicalizes raw user input into a single E.164 phone key.

    Accepted shapes (with the defaults +91 / 10 digits / leading 6-9):
    - bare national number: 9876543210
    - country code + national number: 919876543210
    - fully qualified international number: +91 98765 43210, +1 555 123 4567

    Numbers in the configured country are checked against the national rules
    (length and leading digit). Other '+' numbers are checked with
    phonenumbers for a plausible length in their region.
    """

    def __init__(
        self,
        country_code: str = "91",
        national_length: int = 10,
        valid_leading_digits: str = "6789",
    ):
        self.country_code = country_code
        self.national_length = national_length
        self.valid_leading_digits = frozenset(valid_leading_digits)

    @classmethod
    def from_settings(cls, config: Settings) -> "PhoneNormalizer":
        return cls(
            country_code=config.PHONE_COUNTRY_CODE,
            national_length=config.PHONE_NATIONAL_LENGTH,
            valid_leading_digits=config.PHONE_VALID_LEADING_DIGITS,
        )

    def normalize(self, raw: Optional[str]) -> str:
        """
        Normalize phone number to E.164 format.

        Args:
            raw: Phone number string as typed by the user

        Returns:
            Canonical phone key (e.g., +919876543210)

        Raises:
            InvalidPhoneNumber: If the input matches none of the accepted shapes
        """
        if raw is None:
            raise InvalidPhoneNumber("Phone number is required")

        text = str(raw).strip()
        has_plus = text.startswith("+")
        body = text[1:] if has_plus else text

        digits = []
        for ch in body:
            if ch in _DIGITS:
                digits.append(ch)
            elif ch in _FORMATTING_CHARS:
                continue
            else:
                raise InvalidPhoneNumber("Phone number contains non-numeric characters")
        number = "".join(digits)

        if not number:
            raise InvalidPhoneNumber("Phone number is empty")

        if has_plus:
            return self._normalize_international(number)

        if len(number) == self.national_length:
            return self._canonical(number)

        # Country calling codes are prefix-free, so a leading match is unambiguous
        if number.startswith(self.country_code) and len(number) == len(self.country_code) + self.national_length:
            return self._canonical(number[len(self.country_code):])

        raise InvalidPhoneNumber(
            f"Expected a {self.national_length}-digit mobile number, "
            f"optionally prefixed with +{self.country_code}"
        )

    def _canonical(self, national: str) -> str:
        if national[0] not in self.valid_leading_digits:
            raise InvalidPhoneNumber(f"Mobile numbers cannot start with {national[0]}")
        return f"+{self.country_code}{national}"

    def _normalize_international(self, number: str) -> str:
        if number.startswith(self.country_code):
            national = number[len(self.country_code):]
            if len(national) != self.national_length:
                raise InvalidPhoneNumber(
                    f"+{self.country_code} numbers must have {self.national_length} digits"
                )
            return self._canonical(national)

        try:
            parsed = phonenumbers.parse(f"+{number}", None)
        except NumberParseException as e:
            raise InvalidPhoneNumber(f"Invalid phone number format: {str(e)}")

        if not phonenumbers.is_possible_number(parsed):
            raise InvalidPhoneNumber("Invalid phone number length for its country")

        return phonenumbers.format_number(parsed, PhoneNumberFormat.E164)

    def is_valid(self, raw: Optional[str]) -> bool:
        try:
            self.normalize(raw)
            return True
        except InvalidPhoneNumber:
            return False


def normalize_phone(phone: str, normalizer: Optional[PhoneNormalizer] = None) -> str:
    """
    Normalize phone number with the configured national rules.

    Raises:
        InvalidPhoneNumber: If phone number is invalid or unsupported
    """
    normalizer = normalizer or PhoneNormalizer.from_settings(settings)
    return normalizer.normalize(phone)


def validate_phone(phone: str, normalizer: Optional[PhoneNormalizer] = None) -> bool:
    """
    Validate phone number without raising exception.

    Returns:
        True if valid, False otherwise
    """
    normalizer = normalizer or PhoneNormalizer.from_settings(settings)
    return normalizer.is_valid(phone)


def get_phone_last4(phone: str) -> str:
    """
    Get last 4 digits of phone number for safe logging.

    Args:
        phone: Phone number (can be in any format)

    Returns:
        Last 4 digits as string, or full phone if less than 4 digits
    """
    # Remove all non-digit characters
    digits = ''.join(ch for ch in phone if ch in _DIGITS)

    if len(digits) >= 4:
        return digits[-4:]
    return digits
