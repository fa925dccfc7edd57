"""
HTTP tests for the OTP endpoints and the mobile client aliases
"""
from unittest.mock import patch

from fastapi.testclient import TestClient

from phone_otp.services.auth.errors import StoreUnavailableError
from tests.helpers.fakes import FixedCodeGenerator

PHONE = "+15551234567"


def start(client, phone=PHONE, **kwargs):
    return client.post("/v1/auth/otp/start", json={"phone": phone}, **kwargs)


def verify(client, code, phone=PHONE):
    return client.post("/v1/auth/otp/verify", json={"phone": phone, "code": code})


class TestOTPStart:
    def test_start_returns_ttl(self, client, dispatcher):
        response = start(client)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "ttl_seconds": 300}
        code = dispatcher.last_code_for(PHONE)
        assert code not in response.text

    def test_invalid_phone(self, client):
        response = start(client, phone="12ab")

        assert response.status_code == 400
        data = response.json()
        assert data["ok"] is False
        assert data["error"] == "InvalidFormat"

    def test_missing_phone_is_invalid_request(self, client):
        response = client.post("/v1/auth/otp/start", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidRequest"

    def test_rate_limited_sets_retry_after(self, client, clock):
        start(client)
        clock.advance(15)

        response = start(client)

        assert response.status_code == 429
        data = response.json()
        assert data["error"] == "RateLimited"
        assert data["retry_after_seconds"] == 45
        assert response.headers["Retry-After"] == "45"

    def test_forwarded_for_feeds_ip_limit(self, client, limiter):
        from phone_otp.services.auth.rate_limit import RateRule

        limiter.rules[2] = RateRule("ip_window", 1, 900, subject="ip")
        headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}

        assert start(client, phone="9000000001", headers=headers).status_code == 200
        response = start(client, phone="9000000002", headers=headers)
        assert response.status_code == 429
        assert start(client, phone="9000000002", headers={"X-Forwarded-For": "203.0.113.8"}).status_code == 200

    def test_request_id_is_echoed(self, client):
        response = start(client, headers={"X-Request-ID": "req-abc"})
        assert response.headers["X-Request-ID"] == "req-abc"


class TestOTPVerify:
    def test_success_returns_identity_token(self, client, dispatcher, issuer):
        start(client)
        response = verify(client, dispatcher.last_code_for(PHONE))

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["token_type"] == "bearer"
        assert data["phone"] == PHONE
        assert data["identity_token"] == f"identity-1-{PHONE}"

    def test_invalid_code_reports_remaining_attempts(self, client, dispatcher):
        start(client)
        wrong = "000000" if dispatcher.last_code_for(PHONE) != "000000" else "111111"

        response = verify(client, wrong)

        assert response.status_code == 401
        assert response.json()["error"] == "InvalidCode"
        assert response.json()["remaining_attempts"] == 2

    def test_attempts_exhausted(self, client, dispatcher):
        start(client)
        code = dispatcher.last_code_for(PHONE)
        wrong = "000000" if code != "000000" else "111111"

        statuses = [verify(client, wrong).status_code for _ in range(3)]

        assert statuses == [401, 401, 429]
        response = verify(client, code)
        assert response.status_code == 400
        assert response.json()["error"] == "NoActiveChallenge"

    def test_expired(self, client, dispatcher, clock):
        start(client)
        clock.advance(301)

        response = verify(client, dispatcher.last_code_for(PHONE))

        assert response.status_code == 400
        assert response.json()["error"] == "Expired"

    def test_malformed_code(self, client):
        start(client)
        response = verify(client, "12")
        assert response.status_code == 400
        assert response.json()["error"] == "InvalidFormat"

    def test_no_active_challenge(self, client):
        response = verify(client, "123456")
        assert response.status_code == 400
        assert response.json()["error"] == "NoActiveChallenge"


class TestInfrastructureErrors:
    def test_store_outage_is_503(self, client, store):
        with patch.object(store, "try_consume", side_effect=StoreUnavailableError("down")):
            response = verify(client, "123456")

        assert response.status_code == 503
        assert response.json()["error"] == "ServiceUnavailable"

    def test_unexpected_errors_are_500(self, engine):
        from phone_otp.dependencies import get_otp_engine
        from phone_otp.main import app

        app.dependency_overrides[get_otp_engine] = lambda: engine
        try:
            client = TestClient(app, raise_server_exceptions=False)
            with patch.object(engine, "request_code", side_effect=RuntimeError("boom")):
                response = start(client)
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert "detail" in response.json()


class TestMobileClientAliases:
    def test_send_and_verify(self, client, dispatcher):
        response = client.post("/api/send-otp", json={"phoneNumber": "+919876543210"})

        assert response.status_code == 200
        assert response.json()["success"] is True

        code = dispatcher.last_code_for("+919876543210")
        response = client.post("/api/verify-otp", json={"phoneNumber": "+919876543210", "code": code})

        data = response.json()
        assert response.status_code == 200
        assert data["success"] is True
        assert data["valid"] is True
        assert data["token"]

    def test_wrong_code_is_valid_false(self, client, dispatcher):
        client.post("/api/send-otp", json={"phoneNumber": "9876543210"})
        code = dispatcher.last_code_for("+919876543210")
        wrong = "000000" if code != "000000" else "111111"

        response = client.post("/api/verify-otp", json={"phoneNumber": "9876543210", "code": wrong})

        data = response.json()
        assert response.status_code == 200
        assert data["valid"] is False
        assert data["remainingAttempts"] == 2

    def test_send_errors_use_client_error_shape(self, client, clock):
        client.post("/api/send-otp", json={"phoneNumber": "9876543210"})
        clock.advance(1)

        response = client.post("/api/send-otp", json={"phoneNumber": "9876543210"})

        assert response.status_code == 429
        data = response.json()
        assert data["success"] is False
        assert data["code"] == "RateLimited"
        assert data["error"]
        assert data["retryAfter"] == 59
        assert response.headers["Retry-After"] == "59"

    def test_verify_without_challenge(self, client):
        response = client.post("/api/verify-otp", json={"phoneNumber": "9876543210", "code": "123456"})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["valid"] is False
        assert data["errorCode"] == "NoActiveChallenge"

    def test_format_message_follows_code_length(self, client, engine):
        engine.generator = FixedCodeGenerator(length=4)

        response = client.post("/api/verify-otp", json={"phoneNumber": "9876543210", "code": "12"})

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "InvalidFormat"
        assert "4-digit" in data["message"]
        assert data["error"] == "Code must be 4 digits"
