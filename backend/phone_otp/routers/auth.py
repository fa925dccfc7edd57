"""
Phone OTP auth router

/v1/auth/otp/* is the service API. /api/send-otp and /api/verify-otp keep the
mobile client's original contract ({phoneNumber} in, {success, ...} out).
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from ..dependencies import get_client_ip, get_otp_engine, get_request_id
from ..schemas.auth import (
    OTPErrorResponse,
    OTPStartRequest,
    OTPStartResponse,
    OTPVerifyRequest,
    OTPVerifyResponse,
    SendOTPRequest,
    VerifyOTPRequest,
)
from ..services.otp_service import IssuanceResult, OTPStatus, VerificationEngine, VerificationOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auth/otp", tags=["auth"])
legacy_router = APIRouter(prefix="/api", tags=["auth"])

STATUS_CODES = {
    OTPStatus.CODE_SENT: 200,
    OTPStatus.SUCCESS: 200,
    OTPStatus.INVALID_FORMAT: 400,
    OTPStatus.INVALID_CODE: 401,
    OTPStatus.EXPIRED: 400,
    OTPStatus.NO_ACTIVE_CHALLENGE: 400,
    OTPStatus.ATTEMPTS_EXHAUSTED: 429,
    OTPStatus.RATE_LIMITED: 429,
}

MESSAGES = {
    OTPStatus.CODE_SENT: "OTP sent successfully",
    OTPStatus.SUCCESS: "Phone number verified successfully",
    OTPStatus.INVALID_FORMAT: "Please enter a valid phone number and {code_length}-digit code",
    OTPStatus.INVALID_CODE: "Invalid verification code",
    OTPStatus.EXPIRED: "Verification code has expired. Please request a new code.",
    OTPStatus.NO_ACTIVE_CHALLENGE: "No active verification code. Please request a new code.",
    OTPStatus.ATTEMPTS_EXHAUSTED: "Too many incorrect attempts. Please request a new code.",
    OTPStatus.RATE_LIMITED: "Too many OTP requests. Please wait before requesting a new code.",
}


def _retry_headers(result: IssuanceResult):
    if result.status == OTPStatus.RATE_LIMITED and result.retry_after:
        return {"Retry-After": str(result.retry_after)}
    return None


def _message(status: OTPStatus, code_length: int) -> str:
    return MESSAGES[status].format(code_length=code_length)


def _error_response(outcome, code_length: int) -> JSONResponse:
    body = OTPErrorResponse(
        error=outcome.status.value,
        message=outcome.message or _message(outcome.status, code_length),
        remaining_attempts=getattr(outcome, "remaining_attempts", None),
        retry_after_seconds=getattr(outcome, "retry_after", None),
    )
    return JSONResponse(
        status_code=STATUS_CODES[outcome.status],
        content=body.model_dump(exclude_none=True),
        headers=_retry_headers(outcome) if isinstance(outcome, IssuanceResult) else None,
    )


@router.post("/start", response_model=OTPStartResponse)
def otp_start(
    payload: OTPStartRequest,
    request: Request,
    engine: VerificationEngine = Depends(get_otp_engine),
):
    """Issue a code for a phone number"""
    result = engine.request_code(
        payload.phone,
        client_ip=get_client_ip(request),
        request_id=get_request_id(request),
        user_agent=request.headers.get("user-agent"),
    )
    if not result.ok:
        return _error_response(result, engine.code_length)
    return OTPStartResponse(ttl_seconds=result.ttl_seconds)


@router.post("/verify", response_model=OTPVerifyResponse)
def otp_verify(
    payload: OTPVerifyRequest,
    request: Request,
    engine: VerificationEngine = Depends(get_otp_engine),
):
    """Verify a code and exchange it for an identity token"""
    outcome = engine.verify_code(
        payload.phone,
        payload.code,
        client_ip=get_client_ip(request),
        request_id=get_request_id(request),
        user_agent=request.headers.get("user-agent"),
    )
    if not outcome.ok:
        return _error_response(outcome, engine.code_length)
    return OTPVerifyResponse(identity_token=outcome.identity, phone=outcome.phone_key)


def _legacy_error(outcome, code_length: int, **extra) -> JSONResponse:
    content = {
        "success": False,
        "message": _message(outcome.status, code_length),
        "error": outcome.message or _message(outcome.status, code_length),
        "code": outcome.status.value,
        "errorCode": outcome.status.value,
    }
    content.update(extra)
    headers = _retry_headers(outcome) if isinstance(outcome, IssuanceResult) else None
    return JSONResponse(status_code=STATUS_CODES[outcome.status], content=content, headers=headers)


@legacy_router.post("/send-otp")
def send_otp(
    payload: SendOTPRequest,
    request: Request,
    engine: VerificationEngine = Depends(get_otp_engine),
):
    result = engine.request_code(
        payload.phone_number,
        client_ip=get_client_ip(request),
        request_id=get_request_id(request),
        user_agent=request.headers.get("user-agent"),
    )
    if not result.ok:
        if result.retry_after:
            return _legacy_error(result, engine.code_length, retryAfter=result.retry_after)
        return _legacy_error(result, engine.code_length)
    return {"success": True, "message": MESSAGES[OTPStatus.CODE_SENT], "ttlSeconds": result.ttl_seconds}


@legacy_router.post("/verify-otp")
def verify_otp(
    payload: VerifyOTPRequest,
    request: Request,
    engine: VerificationEngine = Depends(get_otp_engine),
):
    outcome: VerificationOutcome = engine.verify_code(
        payload.phone_number,
        payload.code,
        client_ip=get_client_ip(request),
        request_id=get_request_id(request),
        user_agent=request.headers.get("user-agent"),
    )
    if outcome.ok:
        return {
            "success": True,
            "valid": True,
            "message": MESSAGES[OTPStatus.SUCCESS],
            "token": outcome.identity,
        }
    # The mobile client treats a 2xx with valid=false as "wrong code, try again"
    if outcome.status == OTPStatus.INVALID_CODE:
        return {
            "success": True,
            "valid": False,
            "message": MESSAGES[OTPStatus.INVALID_CODE],
            "errorCode": outcome.status.value,
            "remainingAttempts": outcome.remaining_attempts,
        }
    return _legacy_error(outcome, engine.code_length, valid=False)
