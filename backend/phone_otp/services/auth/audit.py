"""
Structured audit logging service for authentication events
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


class AuditService:
    """
    Structured audit logging service for OTP events.

    Never logs codes or full phone numbers.
    """

    @staticmethod
    def _log_audit_event(
        event_type: str,
        request_id: Optional[str] = None,
        phone_last4: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        env: Optional[str] = None,
        outcome: Optional[str] = None,
        error: Optional[str] = None,
        **kwargs
    ):
        """
        Log structured audit event.

        Args:
            event_type: Event type (e.g., 'otp_start_requested')
            request_id: Request ID from middleware
            phone_last4: Last 4 digits of phone number
            ip: Client IP address
            user_agent: User agent string
            env: Environment (dev/staging/prod)
            outcome: Outcome (success/fail/rate_limited/invalid)
            error: Error or outcome code (if any)
            **kwargs: Additional event-specific fields
        """
        audit_data = {
            "event_type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "outcome": outcome,
        }

        if request_id:
            audit_data["request_id"] = request_id
        if phone_last4:
            audit_data["phone_last4"] = phone_last4
        if ip:
            audit_data["ip"] = ip
        if user_agent:
            audit_data["user_agent"] = user_agent
        if env:
            audit_data["env"] = env
        if error:
            audit_data["error"] = error

        audit_data.update({k: v for k, v in kwargs.items() if v is not None})

        logger.info(f"[OTP][Audit] {json.dumps(audit_data)}")

    @staticmethod
    def log_otp_start_requested(request_id=None, phone_last4=None, ip=None, user_agent=None, env=None):
        AuditService._log_audit_event(
            "otp_start_requested",
            request_id=request_id,
            phone_last4=phone_last4,
            ip=ip,
            user_agent=user_agent,
            env=env,
            outcome="requested",
        )

    @staticmethod
    def log_otp_start_sent(
        request_id: Optional[str] = None,
        phone_last4: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        env: Optional[str] = None,
        challenge_id: Optional[str] = None,
    ):
        """Log challenge creation and hand-off to delivery"""
        AuditService._log_audit_event(
            "otp_start_sent",
            request_id=request_id,
            phone_last4=phone_last4,
            ip=ip,
            user_agent=user_agent,
            env=env,
            outcome="success",
            challenge_id=challenge_id,
        )

    @staticmethod
    def log_otp_start_rate_limited(
        request_id: Optional[str] = None,
        phone_last4: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        env: Optional[str] = None,
        reason: Optional[str] = None,
        retry_after: Optional[int] = None,
    ):
        """Log OTP start rate limit"""
        AuditService._log_audit_event(
            "otp_start_rate_limited",
            request_id=request_id,
            phone_last4=phone_last4,
            ip=ip,
            user_agent=user_agent,
            env=env,
            outcome="rate_limited",
            error=reason,
            retry_after=retry_after,
        )

    @staticmethod
    def log_otp_start_invalid_phone(request_id=None, ip=None, user_agent=None, env=None, reason=None):
        """Raw input is not logged, it may be a full phone number"""
        AuditService._log_audit_event(
            "otp_start_invalid_phone",
            request_id=request_id,
            ip=ip,
            user_agent=user_agent,
            env=env,
            outcome="invalid",
            error=reason,
        )

    @staticmethod
    def log_otp_verify_success(
        request_id: Optional[str] = None,
        phone_last4: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        env: Optional[str] = None,
        challenge_id: Optional[str] = None,
    ):
        """Log successful OTP verification"""
        AuditService._log_audit_event(
            "otp_verify_success",
            request_id=request_id,
            phone_last4=phone_last4,
            ip=ip,
            user_agent=user_agent,
            env=env,
            outcome="success",
            challenge_id=challenge_id,
        )

    @staticmethod
    def log_otp_verify_fail(
        request_id: Optional[str] = None,
        phone_last4: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        env: Optional[str] = None,
        error: Optional[str] = None,
        remaining_attempts: Optional[int] = None,
    ):
        """Log failed OTP verification"""
        AuditService._log_audit_event(
            "otp_verify_fail",
            request_id=request_id,
            phone_last4=phone_last4,
            ip=ip,
            user_agent=user_agent,
            env=env,
            outcome="fail",
            error=error,
            remaining_attempts=remaining_attempts,
        )

    @staticmethod
    def log_otp_delivery_failed(
        request_id: Optional[str] = None,
        phone_last4: Optional[str] = None,
        env: Optional[str] = None,
        error: Optional[str] = None,
    ):
        AuditService._log_audit_event(
            "otp_delivery_failed",
            request_id=request_id,
            phone_last4=phone_last4,
            env=env,
            outcome="fail",
            error=error,
        )
