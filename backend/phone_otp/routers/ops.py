from fastapi import APIRouter

from ..core.config import settings
from ..schemas.auth import HealthResponse

router = APIRouter(tags=["ops"])


@router.get("/healthz")
def healthz():
    """Liveness probe"""
    return {"ok": True}


@router.get("/api/health", response_model=HealthResponse)
def api_health():
    """Connectivity probe the mobile client calls before sending a code"""
    return HealthResponse(ok=True, message=f"{settings.APP_NAME} OTP service is running")
