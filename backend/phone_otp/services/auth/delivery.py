"""
OTP delivery: SMS gateways and the background worker that drives them

Issuance never waits on a gateway. The engine hands (phone, code) to the
DeliveryWorker and returns; a failed or dropped send leaves the challenge in
place so the user can still request a new code after the cooldown.
"""
import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from ...core.config import Settings
from ...core.env import is_local_name
from ...utils.phone import get_phone_last4
from .audit import AuditService
from .errors import DeliveryError

logger = logging.getLogger(__name__)


class DeliveryGateway(ABC):
    """Abstract interface for sending a code to a phone"""

    @abstractmethod
    def send(self, phone: str, code: str) -> None:
        """
        Send a verification code.

        Args:
            phone: Canonical phone key in E.164 format
            code: Plaintext code, never logged

        Raises:
            DeliveryError: If the gateway rejected or failed the send
        """
        pass


class StubDeliveryGateway(DeliveryGateway):
    """
    Stub gateway for development and tests.

    Logs the code only when explicitly enabled in a local environment.
    """

    def __init__(self, env: str = "dev", log_codes: bool = False):
        self.env = env
        self.log_codes = log_codes and is_local_name(env)
        if log_codes and not self.log_codes:
            logger.warning(f"[OTP][Stub] OTP_LOG_CODES ignored outside local environments (env={env})")
        logger.info(f"[OTP][Stub] Stub delivery enabled for environment: {env}")

    def send(self, phone: str, code: str) -> None:
        if self.log_codes:
            logger.info(f"[OTP][Stub] Code for ...{get_phone_last4(phone)}: {code}")
        else:
            logger.info(f"[OTP][Stub] Code issued for ...{get_phone_last4(phone)} (not sent)")


class TwilioSMSGateway(DeliveryGateway):
    """
    Twilio direct SMS gateway.

    Requires TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and OTP_FROM_NUMBER.
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        app_name: str = "Kisan Market",
        client: Optional[Client] = None,
    ):
        if not account_sid or not auth_token:
            raise ValueError("Twilio credentials not configured")
        if not from_number:
            raise ValueError("OTP_FROM_NUMBER not configured for SMS provider")

        self.client = client or Client(account_sid, auth_token)
        self.from_number = from_number
        self.app_name = app_name

    @classmethod
    def from_settings(cls, config: Settings) -> "TwilioSMSGateway":
        return cls(
            account_sid=config.TWILIO_ACCOUNT_SID,
            auth_token=config.TWILIO_AUTH_TOKEN,
            from_number=config.OTP_FROM_NUMBER,
            app_name=config.APP_NAME,
        )

    def send(self, phone: str, code: str) -> None:
        try:
            message = self.client.messages.create(
                body=f"Your {self.app_name} verification code is: {code}",
                from_=self.from_number,
                to=phone,
            )
        except TwilioException as e:
            logger.error(f"[OTP][TwilioSMS] Failed to send SMS to ...{get_phone_last4(phone)}: {e}")
            raise DeliveryError(str(e)) from e

        logger.info(f"[OTP][TwilioSMS] SMS sent to ...{get_phone_last4(phone)}, SID: {message.sid}")


@dataclass(frozen=True)
class DeliveryJob:
    phone: str
    code: str
    request_id: Optional[str] = None


class DeliveryWorker:
    """
    Background thread draining a bounded queue of delivery jobs.

    submit() never blocks: when the queue is full the job is dropped and
    audited like any other delivery failure.
    """

    POLL_SECONDS = 0.5

    def __init__(self, gateway: DeliveryGateway, queue_size: int = 1000, env: Optional[str] = None):
        self.gateway = gateway
        self.env = env
        self._queue: "queue.Queue[DeliveryJob]" = queue.Queue(maxsize=queue_size)
        self._processing = False
        self._thread: Optional[threading.Thread] = None
        self._state_lock = threading.Lock()
        self._idle = threading.Condition()
        self._pending = 0

    @property
    def running(self) -> bool:
        return self._processing and self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the background worker"""
        with self._state_lock:
            if self.running:
                return
            self._processing = True
            self._thread = threading.Thread(target=self._process_jobs, name="otp-delivery", daemon=True)
            self._thread.start()
        logger.info("[OTP][Delivery] Worker started")

    def stop(self, timeout: float = 5.0):
        """Stop the worker after draining queued jobs"""
        with self._state_lock:
            self._processing = False
            thread = self._thread
            self._thread = None
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"[OTP][Delivery] Worker did not stop within {timeout}s")
            else:
                logger.info("[OTP][Delivery] Worker stopped")

    def submit(self, phone: str, code: str, request_id: Optional[str] = None) -> bool:
        """Queue a delivery job. Returns False if the job was dropped."""
        if not self.running:
            self.start()

        with self._idle:
            self._pending += 1
        try:
            self._queue.put_nowait(DeliveryJob(phone, code, request_id))
        except queue.Full:
            self._job_done()
            logger.error(f"[OTP][Delivery] Queue full, dropping delivery for ...{get_phone_last4(phone)}")
            AuditService.log_otp_delivery_failed(
                request_id=request_id,
                phone_last4=get_phone_last4(phone),
                env=self.env,
                error="queue_full",
            )
            return False
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted job has been attempted"""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def _job_done(self):
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def _process_jobs(self):
        while self._processing or not self._queue.empty():
            try:
                job = self._queue.get(timeout=self.POLL_SECONDS)
            except queue.Empty:
                continue
            try:
                self._deliver(job)
            finally:
                self._queue.task_done()
                self._job_done()

    def _deliver(self, job: DeliveryJob):
        try:
            self.gateway.send(job.phone, job.code)
        except DeliveryError as e:
            AuditService.log_otp_delivery_failed(
                request_id=job.request_id,
                phone_last4=get_phone_last4(job.phone),
                env=self.env,
                error=str(e),
            )
        except Exception as e:
            # The worker thread must outlive a misbehaving gateway
            logger.exception(f"[OTP][Delivery] Unexpected gateway error for ...{get_phone_last4(job.phone)}")
            AuditService.log_otp_delivery_failed(
                request_id=job.request_id,
                phone_last4=get_phone_last4(job.phone),
                env=self.env,
                error=type(e).__name__,
            )
