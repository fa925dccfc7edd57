"""
Exception handlers for the OTP service.

Register these on a FastAPI app instance via `register_exception_handlers(app)`.
"""
import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .core.env import is_local_env
from .services.auth.errors import OTPInfrastructureError

logger = logging.getLogger(__name__)


async def infrastructure_error_handler(request: Request, exc: OTPInfrastructureError):
    """Store, entropy or issuer failures: the client may retry with backoff"""
    logger.error(f"[OTP] Infrastructure failure on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=503,
        content={"ok": False, "error": "ServiceUnavailable", "message": "Service temporarily unavailable. Try again later."},
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies; field values are not echoed back"""
    fields = [".".join(str(part) for part in err.get("loc", ())[1:]) for err in exc.errors()]
    logger.info(f"Invalid request on {request.url.path}: {fields}")
    return JSONResponse(
        status_code=400,
        content={"ok": False, "success": False, "error": "InvalidRequest", "fields": fields},
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""
    logger.error(f"Unhandled exception: {exc}", exc_info=exc)

    # In production, don't leak internal error details to clients
    if is_local_env():
        error_response = {"detail": f"Internal server error: {exc}"}
    else:
        error_response = {"detail": "Internal server error"}

    return JSONResponse(status_code=500, content=error_response)


def register_exception_handlers(app):
    """Register all exception handlers on the given FastAPI app."""
    app.add_exception_handler(OTPInfrastructureError, infrastructure_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
