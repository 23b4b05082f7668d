"""Tests for the device authorization polling flow."""

from __future__ import annotations

import base64
import hashlib
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest

from turnforge.device_auth import (
    Credential,
    DeviceAuthController,
    DeviceAuthState,
    credential_status,
    generate_code_challenge,
    generate_code_verifier,
    open_verification_url,
)
from turnforge.errors import (
    AuthorizationCancelled,
    AuthorizationDenied,
    AuthorizationError,
    AuthorizationExpired,
    InvalidTransition,
)
from turnforge.security import AuditEventType, SecurityAuditor

PENDING = (400, {"error": "authorization_pending", "error_description": "waiting"})
SLOW_DOWN = (400, {"error": "slow_down"})
DENIED = (400, {"error": "access_denied", "error_description": "User said no"})
EXPIRED = (400, {"error": "expired_token"})
GRANTED = (200, {
    "access_token": "at-1",
    "refresh_token": "rt-1",
    "token_type": "Bearer",
    "expires_in": 3600,
    "scope": "openid model.completion",
})


class TestPkce:
    """Proof-key helpers."""

    def test_verifier_shape(self) -> None:
        verifier = generate_code_verifier()
        assert len(verifier) == 43
        assert "=" not in verifier and "+" not in verifier and "/" not in verifier
        assert generate_code_verifier() != verifier

    def test_challenge_is_s256(self) -> None:
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        # RFC 7636 appendix B
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_challenge_matches_manual_computation(self) -> None:
        verifier = generate_code_verifier()
        digest = hashlib.sha256(verifier.encode()).digest()
        assert generate_code_challenge(verifier) == base64.urlsafe_b64encode(digest).decode().rstrip("=")


class TestStart:
    """Requesting a device code."""

    def test_start_sends_challenge(self, auth_controller: DeviceAuthController, auth_server) -> None:
        session = auth_controller.start()

        form = auth_server.form(0)
        assert form["code_challenge_method"] == "S256"
        assert form["code_challenge"] == generate_code_challenge(session.code_verifier)
        assert form["client_id"] == auth_controller.config.client_id
        assert form["scope"] == "openid profile email model.completion"
        assert session.user_code == "ABCD-EFGH"
        assert session.verification_url.endswith("user_code=ABCD-EFGH")
        assert session.poll_interval_seconds == 5
        assert auth_controller.state is DeviceAuthState.AWAITING_USER_ACTION

    def test_session_repr_hides_secrets(self, auth_controller: DeviceAuthController) -> None:
        session = auth_controller.start()
        assert session.code_verifier not in repr(session)
        assert session.device_code not in repr(session)

    def test_default_interval(self, auth_controller: DeviceAuthController, auth_server) -> None:
        del auth_server.device_reply[1]["interval"]
        assert auth_controller.start().poll_interval_seconds == 5

    def test_device_code_failure(self, auth_controller: DeviceAuthController, auth_server) -> None:
        auth_server.device_reply = (500, {"error": "server_error"})
        with pytest.raises(AuthorizationError):
            auth_controller.start()
        assert auth_controller.state is DeviceAuthState.ERROR

    def test_poll_before_start(self, auth_controller: DeviceAuthController) -> None:
        with pytest.raises(InvalidTransition):
            auth_controller.poll_once()


class TestPolling:
    """The polling state machine."""

    def test_first_poll_waits_initial_delay(self, auth_controller: DeviceAuthController, clock) -> None:
        auth_controller.start()
        auth_controller.begin_polling()
        assert auth_controller.next_poll_at == clock.now() + timedelta(seconds=3)

    def test_pending_then_granted(self, auth_controller: DeviceAuthController, auth_server, clock) -> None:
        auth_server.token_replies = [PENDING, PENDING, GRANTED]
        started = clock.now()

        credential = auth_controller.authorize()

        assert credential.access_token == "at-1"
        assert credential.refresh_token == "rt-1"
        assert credential.resource_url == "https://dashscope.aliyuncs.com/api/v1/"
        assert credential.expires_at == clock.now() + timedelta(seconds=3600)
        assert clock.sleeps == [3, 5, 5]
        assert clock.now() - started == timedelta(seconds=13)

        form = auth_server.form(1)
        assert form["grant_type"] == "urn:ietf:params:oauth:grant-type:device_code"
        assert form["device_code"] == "dev-123"
        assert "code_verifier" in form

    def test_five_pending_then_denied(
        self, auth_controller: DeviceAuthController, auth_server, auditor: SecurityAuditor
    ) -> None:
        auth_server.token_replies = [PENDING] * 5 + [DENIED]

        with pytest.raises(AuthorizationDenied) as exc:
            auth_controller.authorize()

        assert "User said no" in str(exc.value)
        assert auth_controller.state is DeviceAuthState.DENIED
        assert len(auth_server.token_requests) == 6
        assert auth_controller.session is None
        assert auditor.get_recent_events(event_type=AuditEventType.AUTH_DENIED)

    def test_slow_down_increases_interval(self, auth_controller: DeviceAuthController, auth_server, clock) -> None:
        auth_server.token_replies = [SLOW_DOWN, PENDING, SLOW_DOWN, GRANTED]

        auth_controller.authorize()

        assert clock.sleeps == [3, 10, 10, 15]

    def test_expired_token_reply(self, auth_controller: DeviceAuthController, auth_server) -> None:
        auth_server.token_replies = [PENDING, EXPIRED]
        with pytest.raises(AuthorizationExpired):
            auth_controller.authorize()
        assert auth_controller.state is DeviceAuthState.EXPIRED

    def test_wall_clock_expiry(self, auth_controller: DeviceAuthController, auth_server, clock) -> None:
        """Expiry wins even if the server keeps saying pending."""
        auth_server.device_reply[1]["expires_in"] = 20
        auth_server.token_replies = [PENDING]

        with pytest.raises(AuthorizationExpired):
            auth_controller.authorize()

        assert clock.now() == datetime(2026, 1, 1, 12, 0, 20, tzinfo=timezone.utc)
        assert len(auth_server.token_requests) == 4  # at 3s, 8s, 13s, 18s

    def test_network_errors_are_retried(self, auth_controller: DeviceAuthController, auth_server, clock) -> None:
        auth_server.token_replies = [
            httpx.ConnectError("connection refused"),
            (503, "upstream unavailable"),
            GRANTED,
        ]

        credential = auth_controller.authorize()

        assert credential.access_token == "at-1"
        assert clock.sleeps == [3, 5, 5]

    def test_unknown_error_is_terminal(self, auth_controller: DeviceAuthController, auth_server) -> None:
        auth_server.token_replies = [(400, {"error": "invalid_client", "error_description": "bad id"})]
        with pytest.raises(AuthorizationError) as exc:
            auth_controller.authorize()
        assert "invalid_client" in str(exc.value)

    def test_non_json_client_error(self, auth_controller: DeviceAuthController, auth_server) -> None:
        auth_server.token_replies = [(403, "forbidden")]
        with pytest.raises(AuthorizationError) as exc:
            auth_controller.authorize()
        assert "http_403" in str(exc.value)

    def test_restart_after_terminal(self, auth_controller: DeviceAuthController, auth_server) -> None:
        auth_server.token_replies = [DENIED]
        with pytest.raises(AuthorizationDenied):
            auth_controller.authorize()

        auth_server.token_replies = [GRANTED]
        auth_server.requests.clear()
        assert auth_controller.authorize().access_token == "at-1"


class TestCancellation:
    """Cancelling the polling loop."""

    def test_cancel_event_during_wait(self, auth_controller: DeviceAuthController, auth_server, clock) -> None:
        auth_server.token_replies = [PENDING]
        cancel = threading.Event()
        clock.on_sleep = lambda n: cancel.set() if n == 3 else None

        with pytest.raises(AuthorizationCancelled):
            auth_controller.authorize(cancel_event=cancel)

        assert auth_controller.state is DeviceAuthState.CANCELLED
        assert auth_controller.session is None
        assert len(auth_server.token_requests) == 2

    def test_cancel_before_polling(self, auth_controller: DeviceAuthController) -> None:
        auth_controller.start()
        assert auth_controller.cancel() is DeviceAuthState.CANCELLED
        assert auth_controller.session is None
        assert auth_controller.cancel() is DeviceAuthState.CANCELLED

    def test_on_session_callback(self, auth_controller: DeviceAuthController, auth_server) -> None:
        auth_server.token_replies = [GRANTED]
        seen = []
        auth_controller.authorize(on_session=lambda s: seen.append(s.user_code))
        assert seen == ["ABCD-EFGH"]


class TestCredentialStatus:
    """Status summary for a stored credential."""

    NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _credential(self, expires_at: datetime) -> Credential:
        return Credential(access_token="x", token_type="Bearer", expires_at=expires_at)

    def test_missing(self) -> None:
        status = credential_status(None, self.NOW)
        assert (status.is_setup, status.is_expired, status.expires_in_days) == (False, False, None)

    def test_expired(self) -> None:
        status = credential_status(self._credential(self.NOW - timedelta(seconds=1)), self.NOW)
        assert (status.is_setup, status.is_expired, status.expires_in_days) == (False, True, None)

    def test_days_round_up(self) -> None:
        status = credential_status(self._credential(self.NOW + timedelta(days=1, hours=1)), self.NOW)
        assert (status.is_setup, status.is_expired, status.expires_in_days) == (True, False, 2)

    def test_round_trip_dict(self) -> None:
        credential = Credential(
            access_token="secret-token",
            token_type="Bearer",
            expires_at=self.NOW,
            refresh_token="r",
            resource_url="https://example.test/",
        )
        assert Credential.from_dict(credential.to_dict()) == credential
        assert "secret-token" not in repr(credential)


class TestOpenVerificationUrl:
    """Only web URLs are handed to the browser."""

    @pytest.mark.parametrize("url", ["file:///etc/passwd", "javascript:alert(1)", "ftp://x/y"])
    def test_refuses_non_http(self, url: str) -> None:
        with patch("webbrowser.open") as opener:
            assert open_verification_url(url) is False
        opener.assert_not_called()

    def test_opens_https(self) -> None:
        with patch("webbrowser.open", return_value=True) as opener:
            assert open_verification_url("https://chat.example.test/authorize") is True
        opener.assert_called_once_with("https://chat.example.test/authorize")
