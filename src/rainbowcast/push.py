"""
Push transports behind one interface: send(token, title, body, data).

FcmSender talks to the FCM HTTP v1 API, ApnsSender to APNs over HTTP/2. Both
get their bearer token from a token source that caches it and mints a new one
shortly before it expires: an OAuth2 access token from a Google service account
for FCM, an ES256 provider JWT signed with the .p8 key for APNs.

A platform without credentials gets no sender at all, so its devices are
reported as failed instead of silently counted as delivered.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

import google.auth.exceptions
import httpx
import jwt
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from .config import Settings
from .errors import ConfigurationError
from .timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

FCM_ENDPOINT = "https://fcm.googleapis.com/v1/projects/{project}/messages:send"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
APNS_HOST = "https://api.push.apple.com"
APNS_SANDBOX_HOST = "https://api.sandbox.push.apple.com"
DEFAULT_TIMEOUT = 10.0

TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
# APNs rejects provider tokens older than one hour
APNS_TOKEN_LIFETIME = timedelta(minutes=50)

# the provider no longer accepts our bearer token
AUTH_REJECTED = (401, 403)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class SendResult:
    token: str
    success: bool
    error: Optional[str] = None
    platform: Optional[str] = None


class PushSender(Protocol):
    def send(self, token: str, title: str, body: str, data: dict[str, Any]) -> SendResult: ...


class TokenSource(Protocol):
    def token(self) -> str: ...

    def invalidate(self) -> None: ...


def _stringify(data: dict[str, Any]) -> dict[str, str]:
    """FCM data payloads only carry string values."""
    out = {}
    for key, value in data.items():
        if value is None:
            continue
        out[str(key)] = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
    return out


# ----------------------------------------------------------------------
# Token sources
# ----------------------------------------------------------------------

class FcmTokenSource:
    """
    OAuth2 access tokens for FCM, refreshed from service-account credentials.

    google-auth stores the expiry as a naive UTC datetime on the credentials;
    the token is refreshed once it is within refresh_margin of that expiry.
    """

    def __init__(
        self,
        credentials,
        request_factory: Callable[[], Any] = GoogleAuthRequest,
        clock: Clock = utcnow,
        refresh_margin: timedelta = TOKEN_REFRESH_MARGIN,
    ) -> None:
        self.credentials = credentials
        self.refresh_margin = refresh_margin
        self._request_factory = request_factory
        self._clock = clock
        self._invalid = False
        self._lock = threading.Lock()

    @classmethod
    def from_service_account_file(cls, path: str, **kwargs) -> "FcmTokenSource":
        credentials = service_account.Credentials.from_service_account_file(path, scopes=[FCM_SCOPE])
        return cls(credentials, **kwargs)

    def _needs_refresh(self) -> bool:
        if self._invalid or not self.credentials.token:
            return True
        expiry = self.credentials.expiry
        if expiry is None:
            return False
        return as_utc(expiry) - self.refresh_margin <= self._clock()

    def token(self) -> str:
        with self._lock:
            if self._needs_refresh():
                logger.info("[Push:android] refreshing FCM access token")
                self.credentials.refresh(self._request_factory())
                self._invalid = False
            return self.credentials.token

    def invalidate(self) -> None:
        with self._lock:
            self._invalid = True


class ApnsTokenSource:
    """ES256 provider tokens for APNs, re-signed every `lifetime`."""

    def __init__(
        self,
        private_key,
        key_id: str,
        team_id: str,
        clock: Clock = utcnow,
        lifetime: timedelta = APNS_TOKEN_LIFETIME,
    ) -> None:
        self.private_key = private_key
        self.key_id = key_id
        self.team_id = team_id
        self.lifetime = lifetime
        self._clock = clock
        self._token: Optional[str] = None
        self._issued_at: Optional[datetime] = None
        self._lock = threading.Lock()

    @classmethod
    def from_key_file(cls, path: str, key_id: str, team_id: str, **kwargs) -> "ApnsTokenSource":
        with open(path, encoding="utf-8") as fh:
            return cls(fh.read(), key_id, team_id, **kwargs)

    def token(self) -> str:
        with self._lock:
            now = self._clock()
            if self._token is None or now >= self._issued_at + self.lifetime:
                logger.info("[Push:ios] signing new APNs provider token")
                self._token = jwt.encode(
                    {"iss": self.team_id, "iat": int(now.timestamp())},
                    self.private_key,
                    algorithm="ES256",
                    headers={"kid": self.key_id},
                )
                self._issued_at = now
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None


# ----------------------------------------------------------------------
# Senders
# ----------------------------------------------------------------------

class FcmSender:
    platform = "android"

    def __init__(self, project_id: str, token_source: TokenSource, client: Optional[httpx.Client] = None) -> None:
        self.url = FCM_ENDPOINT.format(project=project_id)
        self.token_source = token_source
        self._client = client or httpx.Client(timeout=DEFAULT_TIMEOUT)

    def send(self, token: str, title: str, body: str, data: dict[str, Any]) -> SendResult:
        message = {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                "data": _stringify(data),
            }
        }
        try:
            headers = {"Authorization": f"Bearer {self.token_source.token()}"}
        except google.auth.exceptions.GoogleAuthError as exc:
            logger.error("[Push:android] could not obtain access token: %s", exc)
            return SendResult(token, False, f"auth: {exc}", self.platform)
        try:
            resp = self._client.post(self.url, json=message, headers=headers)
        except httpx.HTTPError as exc:
            return SendResult(token, False, f"transport: {exc}", self.platform)
        if resp.status_code == 200:
            return SendResult(token, True, platform=self.platform)
        if resp.status_code in AUTH_REJECTED:
            self.token_source.invalidate()
        return SendResult(token, False, f"HTTP {resp.status_code}: {resp.text[:200]}", self.platform)


class ApnsSender:
    platform = "ios"

    def __init__(
        self,
        token_source: TokenSource,
        topic: str,
        use_sandbox: bool = False,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.host = APNS_SANDBOX_HOST if use_sandbox else APNS_HOST
        self.token_source = token_source
        self.topic = topic
        self._client = client or httpx.Client(http2=True, timeout=DEFAULT_TIMEOUT)

    def send(self, token: str, title: str, body: str, data: dict[str, Any]) -> SendResult:
        payload = {"aps": {"alert": {"title": title, "body": body}, "sound": "default"}}
        payload.update({k: v for k, v in data.items() if k != "aps"})
        try:
            auth = self.token_source.token()
        except (jwt.PyJWTError, ValueError) as exc:
            logger.error("[Push:ios] could not sign provider token: %s", exc)
            return SendResult(token, False, f"auth: {exc}", self.platform)
        headers = {
            "authorization": f"bearer {auth}",
            "apns-topic": self.topic,
            "apns-push-type": "alert",
        }
        try:
            resp = self._client.post(f"{self.host}/3/device/{token}", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            return SendResult(token, False, f"transport: {exc}", self.platform)
        if resp.status_code == 200:
            return SendResult(token, True, platform=self.platform)
        if resp.status_code in AUTH_REJECTED:
            self.token_source.invalidate()
        return SendResult(token, False, f"HTTP {resp.status_code}: {resp.text[:200]}", self.platform)


def build_senders(settings: Settings) -> dict[str, PushSender]:
    """One sender per configured platform tag; unconfigured platforms are left out."""
    senders: dict[str, PushSender] = {}
    if settings.fcm_configured:
        try:
            source = FcmTokenSource.from_service_account_file(settings.fcm_credentials_path)
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"FCM credentials unreadable: {exc}") from exc
        senders["android"] = FcmSender(settings.fcm_project_id, source)
    else:
        logger.warning("[Push] FCM not configured; android devices will not receive pushes")
    if settings.apns_configured:
        try:
            source = ApnsTokenSource.from_key_file(settings.apns_key_path, settings.apns_key_id, settings.apns_team_id)
        except OSError as exc:
            raise ConfigurationError(f"APNs key unreadable: {exc}") from exc
        senders["ios"] = ApnsSender(source, settings.apns_topic, settings.apns_use_sandbox)
    else:
        logger.warning("[Push] APNs not configured; ios devices will not receive pushes")
    return senders
