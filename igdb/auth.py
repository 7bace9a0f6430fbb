"""Twitch client-credentials token handling for the IGDB API."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping
from urllib.error import URLError
from urllib.parse import urlencode

from http_utils import Opener, RequestFactory, build_request, send_request

logger = logging.getLogger(__name__)


TOKEN_URL = "https://id.twitch.tv/oauth2/token"
VALIDATE_URL = "https://id.twitch.tv/oauth2/validate"
TOKEN_EXPIRY_BUFFER_SECONDS = 300


class AuthError(RuntimeError):
    """Raised when a Twitch access token cannot be obtained."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


@dataclass(frozen=True)
class AccessToken:
    value: str
    token_type: str
    expires_in: int
    issued_at: float

    def is_expired(
        self, now: float, *, buffer: float = TOKEN_EXPIRY_BUFFER_SECONDS
    ) -> bool:
        return now >= self.issued_at + self.expires_in - buffer

    @property
    def authorization(self) -> str:
        return f"Bearer {self.value}"


class TwitchTokenProvider:
    """Cache a Twitch app access token and refresh it at most once at a time.

    Concurrent callers that find the cached token stale serialize on an
    internal lock; the first one performs the exchange and the others pick
    up its result after re-checking the cache.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        token_url: str = TOKEN_URL,
        validate_url: str = VALIDATE_URL,
        timeout: float = 8.0,
        request_factory: RequestFactory | None = None,
        opener: Opener | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._client_id = (client_id or "").strip()
        self._client_secret = (client_secret or "").strip()
        self._token_url = token_url
        self._validate_url = validate_url
        self._timeout = timeout
        self._request_factory = request_factory
        self._opener = opener
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._token: AccessToken | None = None

    @property
    def client_id(self) -> str:
        return self._client_id

    def get_access_token(self) -> AccessToken:
        """Return a valid token, exchanging credentials when the cache is stale."""

        token = self._token
        if token is not None and not token.is_expired(self._clock()):
            return token

        with self._lock:
            token = self._token
            if token is not None and not token.is_expired(self._clock()):
                return token
            self._token = None
            token = self._exchange_credentials()
            self._token = token
            return token

    def invalidate(self) -> None:
        """Forget the cached token so the next call performs an exchange."""

        with self._lock:
            self._token = None

    def validate_token(self, token: str | AccessToken) -> bool:
        """Return ``True`` when Twitch accepts ``token``; never raises."""

        value = token.value if isinstance(token, AccessToken) else str(token or "")
        if not value.strip():
            return False
        try:
            request = build_request(
                self._validate_url,
                method="GET",
                headers={"Authorization": f"OAuth {value.strip()}"},
                request_factory=self._request_factory,
            )
            response = send_request(request, opener=self._opener, timeout=self._timeout)
        except Exception:
            logger.exception("Error validating Twitch token")
            return False
        return response.ok

    def _exchange_credentials(self) -> AccessToken:
        if not self._client_id or not self._client_secret:
            raise AuthError("missing twitch client credentials")

        payload = urlencode(
            {
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "grant_type": "client_credentials",
            }
        ).encode("utf-8")
        request = build_request(
            self._token_url,
            method="POST",
            data=payload,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            request_factory=self._request_factory,
        )

        issued_at = self._clock()
        try:
            response = send_request(request, opener=self._opener, timeout=self._timeout)
        except (URLError, OSError) as exc:
            logger.error("Twitch token request failed: %s", exc)
            raise AuthError(f"failed to obtain twitch token: {exc}") from exc

        if not response.ok:
            logger.error(
                "Twitch token request failed. Status: %s, Response: %s",
                response.status,
                response.body,
            )
            raise AuthError(
                f"failed to obtain twitch token: {response.status}",
                status_code=response.status,
                response_body=response.body,
            )

        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise AuthError(
                "invalid JSON in twitch token response",
                status_code=response.status,
                response_body=response.body,
            ) from exc

        token = _token_from_payload(data, issued_at)
        if token is None:
            raise AuthError(
                "missing access token in twitch response",
                status_code=response.status,
                response_body=response.body,
            )
        logger.info("Obtained Twitch access token valid for %s seconds", token.expires_in)
        return token


def _token_from_payload(data: Any, issued_at: float) -> AccessToken | None:
    if not isinstance(data, Mapping):
        return None
    value = data.get("access_token")
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        expires_in = int(data.get("expires_in") or 0)
    except (TypeError, ValueError):
        expires_in = 0
    token_type = data.get("token_type")
    return AccessToken(
        value=value.strip(),
        token_type=str(token_type or "bearer"),
        expires_in=max(expires_in, 0),
        issued_at=issued_at,
    )


__all__ = [
    "AccessToken",
    "AuthError",
    "TOKEN_EXPIRY_BUFFER_SECONDS",
    "TOKEN_URL",
    "TwitchTokenProvider",
    "VALIDATE_URL",
]
