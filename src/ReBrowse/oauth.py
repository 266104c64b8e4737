"""GitHub OAuth device flow and token refresh.

The device flow needs no client secret and no local callback server: the
user enters a short code at github.com while the app polls for the token.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

import requests

from ReBrowse.errors import AuthFailedError, NetworkError, RequestTimeoutError
from ReBrowse.models import Record

logger = logging.getLogger(__name__)

DEVICE_CODE_URL = "https://github.com/login/device/code"
ACCESS_TOKEN_URL = "https://github.com/login/oauth/access_token"
DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_SCOPES = ("repo", "user:email")
SLOW_DOWN_STEP_SECONDS = 5


@dataclass
class TokenBundle:
    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    expires_at: float | None = None
    scopes: list[str] = field(default_factory=list)


@dataclass
class DeviceFlowSession(Record):
    """A pending device authorization. ``device_code`` never leaves the process."""

    session_id: str
    user_code: str
    verification_uri: str
    expires_at: float
    interval: int
    device_code: str = field(repr=False, default="")
    scopes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.pop("deviceCode", None)
        return data


class DeviceFlowState(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    EXPIRED = "expired"
    DENIED = "denied"


@dataclass
class DeviceFlowStatus(Record):
    state: DeviceFlowState
    interval: int
    error: str | None = None
    token: TokenBundle | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.pop("token", None)
        return data


class DeviceFlow:
    """Client for GitHub's OAuth device authorization grant."""

    def __init__(
        self,
        client_id: str,
        session: requests.Session | None = None,
        timeout: float = 30,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.session = session or requests.Session()
        self.session.headers["Accept"] = "application/json"
        self.session.headers["User-Agent"] = "ReBrowse/1.0"
        self.timeout = timeout
        self.clock = clock

    def _post(self, url: str, data: dict[str, str]) -> dict:
        try:
            resp = self.session.post(url, data=data, timeout=self.timeout)
        except requests.Timeout as exc:
            raise RequestTimeoutError() from exc
        except requests.RequestException as exc:
            raise NetworkError() from exc

        if resp.status_code >= 500:
            raise NetworkError("GitHub sign-in is temporarily unavailable.")
        if resp.status_code >= 400:
            raise AuthFailedError(
                "GitHub rejected the sign-in request.", status_code=resp.status_code
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise AuthFailedError("Unexpected response from GitHub sign-in.") from exc

    def start(self, scopes: Iterable[str] = DEFAULT_SCOPES) -> DeviceFlowSession:
        """Request a device and user code."""
        scope_list = list(scopes)
        data = self._post(
            DEVICE_CODE_URL,
            {"client_id": self.client_id, "scope": " ".join(scope_list)},
        )
        if "device_code" not in data:
            raise AuthFailedError("GitHub did not issue a device code.")

        logger.info("Started GitHub device flow")
        return DeviceFlowSession(
            session_id=str(uuid.uuid4()),
            user_code=data["user_code"],
            verification_uri=data["verification_uri"],
            expires_at=self.clock() + int(data.get("expires_in", 900)),
            interval=int(data.get("interval") or 5),
            device_code=data["device_code"],
            scopes=scope_list,
        )

    def poll(self, session: DeviceFlowSession) -> DeviceFlowStatus:
        """Poll once for the access token.

        ``slow_down`` raises the session's polling interval by five seconds;
        callers should wait ``status.interval`` seconds before the next poll.
        """
        if self.clock() >= session.expires_at:
            return DeviceFlowStatus(DeviceFlowState.EXPIRED, session.interval)

        data = self._post(
            ACCESS_TOKEN_URL,
            {
                "client_id": self.client_id,
                "device_code": session.device_code,
                "grant_type": DEVICE_GRANT_TYPE,
            },
        )

        error = data.get("error")
        if error == "authorization_pending":
            return DeviceFlowStatus(DeviceFlowState.PENDING, session.interval)
        if error == "slow_down":
            session.interval += SLOW_DOWN_STEP_SECONDS
            logger.info("Device flow polling too fast; interval now %ds", session.interval)
            return DeviceFlowStatus(DeviceFlowState.PENDING, session.interval)
        if error == "expired_token":
            return DeviceFlowStatus(
                DeviceFlowState.EXPIRED,
                session.interval,
                error="The sign-in code expired. Please start again.",
            )
        if error == "access_denied":
            return DeviceFlowStatus(
                DeviceFlowState.DENIED,
                session.interval,
                error="Sign-in was cancelled.",
            )
        if error:
            raise AuthFailedError(data.get("error_description") or "GitHub sign-in failed.")

        logger.info("GitHub device flow authorized")
        return DeviceFlowStatus(
            DeviceFlowState.AUTHORIZED,
            session.interval,
            token=self._bundle(data, session.scopes),
        )

    def refresh_access_token(self, refresh_token: str) -> TokenBundle:
        """Exchange a refresh token for a new access token.

        Raises:
            AuthFailedError: GitHub rejected the refresh token.
        """
        data = self._post(
            ACCESS_TOKEN_URL,
            {
                "client_id": self.client_id,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        if data.get("error") or "access_token" not in data:
            raise AuthFailedError("The OAuth refresh token was rejected.")
        return self._bundle(data, [])

    def _bundle(self, data: dict, fallback_scopes: list[str]) -> TokenBundle:
        expires_in = data.get("expires_in")
        scope = data.get("scope") or ""
        scopes = [s for s in scope.replace(" ", ",").split(",") if s]
        return TokenBundle(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=self.clock() + int(expires_in) if expires_in else None,
            scopes=scopes or list(fallback_scopes),
        )
