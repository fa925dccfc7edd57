"""
Infrastructure failures of the OTP core.

Wrong codes, expiry, exhausted attempts and rate limits are outcomes, not
exceptions. Only "the system is broken" cases below are raised, so callers can
tell them apart and retry with backoff.
"""


class OTPInfrastructureError(Exception):
    """Base class for failures that are not the user's fault"""


class ChallengeStoreError(OTPInfrastructureError):
    """Challenge store state was not what a locked caller expected"""


class StoreUnavailableError(ChallengeStoreError):
    """Challenge store or rate limiter backend could not be reached"""


class CodeGenerationError(OTPInfrastructureError):
    """Secure random source failed to produce a code"""


class IdentityIssuerError(OTPInfrastructureError):
    """Identity assertion could not be issued for a verified phone"""


class DeliveryError(Exception):
    """SMS gateway rejected or failed a send; never rolls back a challenge"""
