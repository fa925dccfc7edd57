from typing import Optional

from pydantic import BaseModel, Field


class OTPStartRequest(BaseModel):
    phone: str


class OTPStartResponse(BaseModel):
    ok: bool = True
    ttl_seconds: int


class OTPVerifyRequest(BaseModel):
    phone: str
    code: str


class OTPVerifyResponse(BaseModel):
    ok: bool = True
    identity_token: str
    token_type: str = "bearer"
    phone: str


class OTPErrorResponse(BaseModel):
    ok: bool = False
    error: str
    message: Optional[str] = None
    remaining_attempts: Optional[int] = None
    retry_after_seconds: Optional[int] = None


# Mobile client contract: camelCase phoneNumber, {success, message} envelope

class SendOTPRequest(BaseModel):
    phone_number: str = Field(..., alias="phoneNumber")


class VerifyOTPRequest(BaseModel):
    phone_number: str = Field(..., alias="phoneNumber")
    code: str


class HealthResponse(BaseModel):
    ok: bool
    message: str
