"""Device authorization flow (OAuth 2.0 device grant with PKCE).

The user finishes the login in a browser while we poll the token endpoint:

    init -> awaiting_user_action -> polling -> authorized
                                            -> denied | expired | error | cancelled

Polling is an explicit state machine. next_poll_at says when the next token
request is due; the provider can push it out with slow_down. Time comes from
an injected Clock so the loop can be driven without real waiting.

Credentials are returned to the caller and never persisted here.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import math
import secrets
import threading
import time
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ValidationError

from turnforge.config import AuthConfig, get_config
from turnforge.errors import (
    AuthorizationCancelled,
    AuthorizationDenied,
    AuthorizationError,
    AuthorizationExpired,
    DeviceAuthError,
    InvalidTransition,
)
from turnforge.security import AuditEventType, SecurityAuditor, get_auditor

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"


# =============================================================================
# PKCE
# =============================================================================


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """32 random bytes, base64url without padding (43 characters)."""
    return _b64url(secrets.token_bytes(32))


def generate_code_challenge(verifier: str) -> str:
    """S256 challenge for a verifier."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


# =============================================================================
# Wire models
# =============================================================================


class DeviceCodeResponse(BaseModel):
    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str | None = None
    expires_in: int
    interval: int | None = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int
    scope: str | None = None
    resource_url: str | None = None


class TokenErrorResponse(BaseModel):
    error: str
    error_description: str | None = None


class TransientNetworkError(DeviceAuthError):
    """A token request that should simply be retried (network trouble, 5xx)."""


class DeviceAuthTransport:
    """Form-encoded HTTP calls to the authorization server."""

    def __init__(self, config: AuthConfig, *, client: httpx.Client | None = None) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=config.request_timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def request_device_code(self, code_challenge: str) -> DeviceCodeResponse:
        """Ask for a device code.

        Raises:
            AuthorizationError: On any network, HTTP or payload problem
        """
        try:
            res = self._client.post(
                self.config.device_code_url,
                data={
                    "client_id": self.config.client_id,
                    "scope": self.config.scope,
                    "code_challenge": code_challenge,
                    "code_challenge_method": "S256",
                },
                headers={"Accept": "application/json"},
            )
            res.raise_for_status()
            return DeviceCodeResponse.model_validate(res.json())
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            raise AuthorizationError(f"Device code request failed: {e}") from e

    def request_token(self, device_code: str, code_verifier: str) -> TokenResponse | TokenErrorResponse:
        """Poll the token endpoint once.

        Raises:
            TransientNetworkError: On transport errors and 5xx responses
        """
        try:
            res = self._client.post(
                self.config.token_url,
                data={
                    "grant_type": DEVICE_CODE_GRANT,
                    "client_id": self.config.client_id,
                    "device_code": device_code,
                    "code_verifier": code_verifier,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Token request failed: {e}") from e

        if res.status_code >= 500:
            raise TransientNetworkError(f"Token endpoint returned {res.status_code}")

        try:
            data: Any = res.json()
        except ValueError:
            data = None

        if res.status_code == 200:
            try:
                return TokenResponse.model_validate(data)
            except ValidationError as e:
                return TokenErrorResponse(error="invalid_response", error_description=str(e))

        try:
            return TokenErrorResponse.model_validate(data)
        except ValidationError:
            return TokenErrorResponse(
                error=f"http_{res.status_code}",
                error_description=res.text[:200] or None,
            )


# =============================================================================
# Clock
# =============================================================================


class Clock(Protocol):
    def now(self) -> datetime: ...

    def sleep(self, seconds: float, cancel_event: threading.Event | None = None) -> bool:
        """Wait up to `seconds`; return True if cancel_event fired."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float, cancel_event: threading.Event | None = None) -> bool:
        seconds = max(0.0, seconds)
        if cancel_event is not None:
            return cancel_event.wait(seconds)
        time.sleep(seconds)
        return False


# =============================================================================
# Session and credential
# =============================================================================


class DeviceAuthState(Enum):
    INIT = "init"
    AWAITING_USER_ACTION = "awaiting_user_action"
    POLLING = "polling"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    EXPIRED = "expired"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({
    DeviceAuthState.AUTHORIZED,
    DeviceAuthState.DENIED,
    DeviceAuthState.EXPIRED,
    DeviceAuthState.ERROR,
    DeviceAuthState.CANCELLED,
})


@dataclass
class DeviceAuthSession:
    """One in-flight authorization. Holds the PKCE verifier; never persisted."""

    device_code: str
    code_verifier: str
    user_code: str
    verification_url: str
    expires_at: datetime
    poll_interval_seconds: int

    def __repr__(self) -> str:
        # Keep the verifier and device code out of logs.
        return (
            f"DeviceAuthSession(user_code={self.user_code!r}, "
            f"verification_url={self.verification_url!r}, expires_at={self.expires_at.isoformat()}, "
            f"poll_interval_seconds={self.poll_interval_seconds})"
        )


@dataclass(frozen=True)
class Credential:
    access_token: str
    token_type: str
    expires_at: datetime
    refresh_token: str | None = None
    scope: str | None = None
    resource_url: str | None = None

    @classmethod
    def from_token_response(
        cls, token: TokenResponse, *, now: datetime, default_resource_url: str
    ) -> "Credential":
        return cls(
            access_token=token.access_token,
            token_type=token.token_type,
            expires_at=now + timedelta(seconds=token.expires_in),
            refresh_token=token.refresh_token,
            scope=token.scope,
            resource_url=token.resource_url or default_resource_url,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_at": self.expires_at.isoformat(),
            "refresh_token": self.refresh_token,
            "scope": self.scope,
            "resource_url": self.resource_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            expires_at=datetime.fromisoformat(data["expires_at"]),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope"),
            resource_url=data.get("resource_url"),
        )

    def __repr__(self) -> str:
        return f"Credential(token_type={self.token_type!r}, expires_at={self.expires_at.isoformat()})"


@dataclass(frozen=True)
class CredentialStatus:
    is_setup: bool
    is_expired: bool
    expires_in_days: int | None


def credential_status(credential: Credential | None, now: datetime) -> CredentialStatus:
    """Summarise a stored credential for status displays."""
    if credential is None:
        return CredentialStatus(is_setup=False, is_expired=False, expires_in_days=None)
    remaining = (credential.expires_at - now).total_seconds()
    if remaining <= 0:
        return CredentialStatus(is_setup=False, is_expired=True, expires_in_days=None)
    return CredentialStatus(is_setup=True, is_expired=False, expires_in_days=math.ceil(remaining / 86400))


def open_verification_url(url: str) -> bool:
    """Open the verification page in a browser. Only http(s) URLs are opened."""
    scheme = urlparse(url).scheme.lower()
    if scheme not in ("http", "https"):
        logger.warning("Refusing to open verification URL with scheme %r", scheme)
        return False
    try:
        return webbrowser.open(url)
    except webbrowser.Error as e:
        logger.debug("Could not open browser: %s", e)
        return False


# =============================================================================
# Controller
# =============================================================================


class DeviceAuthController:
    """Runs one device authorization at a time."""

    def __init__(
        self,
        config: AuthConfig | None = None,
        *,
        transport: DeviceAuthTransport | None = None,
        clock: Clock | None = None,
        auditor: SecurityAuditor | None = None,
    ) -> None:
        self.config = config or get_config().auth
        self.transport = transport or DeviceAuthTransport(self.config)
        self.clock: Clock = clock or SystemClock()
        self._auditor = auditor or get_auditor()

        self.state = DeviceAuthState.INIT
        self.session: DeviceAuthSession | None = None
        self.next_poll_at: datetime | None = None
        self.credential: Credential | None = None
        self.error: str | None = None
        self.polls = 0

    def _require(self, *states: DeviceAuthState) -> None:
        if self.state not in states:
            raise InvalidTransition(self.state.value, "/".join(s.value for s in states))

    def _terminate(self, state: DeviceAuthState, reason: str | None = None) -> DeviceAuthState:
        """Enter a terminal state and drop the session (and its verifier)."""
        logger.info("Device authorization %s%s", state.value, f": {reason}" if reason else "")
        self.state = state
        self.error = reason if state is not DeviceAuthState.AUTHORIZED else None
        self.session = None
        self.next_poll_at = None

        event = {
            DeviceAuthState.AUTHORIZED: AuditEventType.AUTH_GRANTED,
            DeviceAuthState.DENIED: AuditEventType.AUTH_DENIED,
            DeviceAuthState.EXPIRED: AuditEventType.AUTH_EXPIRED,
        }.get(state, AuditEventType.AUTH_FAILED)
        self._auditor.log(
            event,
            {"state": state.value, "reason": reason, "polls": self.polls},
            success=state is DeviceAuthState.AUTHORIZED,
        )
        return state

    def start(self) -> DeviceAuthSession:
        """Request a device code and open a session.

        A controller in a terminal state may be started again.

        Raises:
            AuthorizationError: If the device code request fails
        """
        if self.state.is_terminal:
            self.state = DeviceAuthState.INIT
            self.credential = None
            self.error = None
            self.polls = 0
        self._require(DeviceAuthState.INIT)

        verifier = generate_code_verifier()
        try:
            response = self.transport.request_device_code(generate_code_challenge(verifier))
        except AuthorizationError as e:
            self._terminate(DeviceAuthState.ERROR, str(e))
            raise

        now = self.clock.now()
        self.session = DeviceAuthSession(
            device_code=response.device_code,
            code_verifier=verifier,
            user_code=response.user_code,
            verification_url=response.verification_uri_complete or response.verification_uri,
            expires_at=now + timedelta(seconds=response.expires_in),
            poll_interval_seconds=response.interval or self.config.default_interval_seconds,
        )
        self.state = DeviceAuthState.AWAITING_USER_ACTION
        self._auditor.log(AuditEventType.AUTH_STARTED, {"expires_in": response.expires_in})
        logger.info("Device code issued; user code %s", response.user_code)
        return self.session

    def begin_polling(self) -> None:
        """Start polling after the initial grace delay."""
        self._require(DeviceAuthState.AWAITING_USER_ACTION)
        self.state = DeviceAuthState.POLLING
        self.next_poll_at = self.clock.now() + timedelta(seconds=self.config.initial_delay_seconds)

    def _check_expiry(self) -> bool:
        assert self.session is not None
        if self.clock.now() >= self.session.expires_at:
            self._terminate(DeviceAuthState.EXPIRED, "device code expired")
            return True
        return False

    def poll_once(self) -> DeviceAuthState:
        """Perform one token request and apply the provider's answer."""
        self._require(DeviceAuthState.POLLING)
        assert self.session is not None
        if self._check_expiry():
            return self.state

        session = self.session
        self.polls += 1
        try:
            result = self.transport.request_token(session.device_code, session.code_verifier)
        except TransientNetworkError as e:
            logger.debug("Transient token polling error, retrying: %s", e)
            result = None

        now = self.clock.now()
        if isinstance(result, TokenResponse):
            self.credential = Credential.from_token_response(
                result, now=now, default_resource_url=self.config.default_resource_url
            )
            return self._terminate(DeviceAuthState.AUTHORIZED)

        if isinstance(result, TokenErrorResponse):
            if result.error == "slow_down":
                session.poll_interval_seconds += self.config.slow_down_increment_seconds
                logger.info("Provider asked to slow down; interval now %ds", session.poll_interval_seconds)
            elif result.error == "access_denied":
                return self._terminate(DeviceAuthState.DENIED, result.error_description or result.error)
            elif result.error == "expired_token":
                return self._terminate(DeviceAuthState.EXPIRED, result.error_description or result.error)
            elif result.error != "authorization_pending":
                reason = result.error
                if result.error_description:
                    reason += f": {result.error_description}"
                return self._terminate(DeviceAuthState.ERROR, reason)

        self.next_poll_at = now + timedelta(seconds=session.poll_interval_seconds)
        return self.state

    def cancel(self) -> DeviceAuthState:
        """Tear down the session. No-op once terminal."""
        if self.state.is_terminal:
            return self.state
        return self._terminate(DeviceAuthState.CANCELLED, "cancelled by caller")

    def run(self, cancel_event: threading.Event | None = None) -> DeviceAuthState:
        """Poll until a terminal state, sleeping on the clock between requests."""
        if self.state is DeviceAuthState.AWAITING_USER_ACTION:
            self.begin_polling()
        self._require(DeviceAuthState.POLLING)

        while not self.state.is_terminal:
            if cancel_event is not None and cancel_event.is_set():
                return self.cancel()
            if self._check_expiry():
                break
            assert self.session is not None and self.next_poll_at is not None
            now = self.clock.now()
            wake = min(self.next_poll_at, self.session.expires_at)
            if wake > now:
                if self.clock.sleep((wake - now).total_seconds(), cancel_event):
                    return self.cancel()
                continue
            self.poll_once()
        return self.state

    def authorize(
        self,
        *,
        cancel_event: threading.Event | None = None,
        on_session: Callable[[DeviceAuthSession], None] | None = None,
    ) -> Credential:
        """Run the whole flow and return the credential.

        Args:
            cancel_event: Set it from another thread to abandon the flow
            on_session: Called once the user code is known, e.g. to show it

        Raises:
            AuthorizationDenied, AuthorizationExpired, AuthorizationError,
            AuthorizationCancelled
        """
        session = self.start()
        if on_session is not None:
            on_session(session)
        state = self.run(cancel_event)

        if state is DeviceAuthState.AUTHORIZED and self.credential is not None:
            return self.credential
        message = self.error or state.value
        if state is DeviceAuthState.DENIED:
            raise AuthorizationDenied(message)
        if state is DeviceAuthState.EXPIRED:
            raise AuthorizationExpired(message)
        if state is DeviceAuthState.CANCELLED:
            raise AuthorizationCancelled(message)
        raise AuthorizationError(message)
