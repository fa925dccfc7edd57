"""
FastAPI dependencies shared by routers
"""
from typing import Optional

from fastapi import Request

from .services.auth.factory import get_verification_engine
from .services.otp_service import VerificationEngine


def get_otp_engine() -> VerificationEngine:
    """Process-wide engine; tests override this dependency"""
    return get_verification_engine()


def get_client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, else the peer address"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else None


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)
