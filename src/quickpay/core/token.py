"""
OAuth 2.0 client-credentials token exchange with a single-flight cache.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Optional

import requests

from .config import QuickPayConfig
from .errors import AuthError, TransientError
from .signing import AssertionSigner

__all__ = ["AccessToken", "TokenClient"]

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


@dataclass(frozen=True)
class AccessToken:
    value: str = field(repr=False)
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def is_fresh(self, now: float, margin: float) -> bool:
        return now < self.expires_at - margin


class TokenClient:
    """
    Read-through cache in front of the provider's token endpoint.

    All access goes through :meth:`get_token`. A lock is held for the whole
    refresh, so concurrent callers wait for the in-flight request and then
    observe the token it produced instead of issuing their own.
    """

    def __init__(
        self,
        config: QuickPayConfig,
        *,
        session: Optional[requests.Session] = None,
        signer: Optional[AssertionSigner] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.signer = signer or AssertionSigner(clock=clock)
        self._clock = clock
        self._lock = Lock()
        self._token: Optional[AccessToken] = None

    def get_token(self, *, timeout: Optional[float] = None) -> AccessToken:
        """
        Return a token that stays valid past the safety margin, refreshing it
        first when needed. ``timeout`` caps the refresh request.
        """
        margin = self.config.token_safety_margin_seconds
        with self._lock:
            token = self._token
            if token is not None and token.is_fresh(self._clock(), margin):
                return token
            token = self._request_token(timeout)
            self._token = token
            return token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None

    def _form(self) -> dict[str, str]:
        identity = self.config.identity
        form = {
            "grant_type": "client_credentials",
            "client_id": identity.client_id,
            "scope": "payments",
        }
        if self.config.token_auth_method == "client_secret":
            form["client_secret"] = identity.client_secret
        else:
            assertion = self.signer.sign(identity, self.config.token_url)
            form["client_assertion_type"] = CLIENT_ASSERTION_TYPE
            form["client_assertion"] = assertion.token
        return form

    def _request_token(self, timeout: Optional[float] = None) -> AccessToken:
        url = self.config.token_url
        logging.debug("Requesting access token from %s", url)
        # Lifetime counts from before the request.
        issued_at = self._clock()
        try:
            response = self.session.post(
                url,
                data=self._form(),
                timeout=timeout or self.config.request_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise TransientError(f"Token endpoint {url} unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise AuthError(
                f"Token endpoint responded with {response.status_code}: {response.text}",
                status_code=response.status_code,
                retryable=True,
            )
        if response.status_code >= 400:
            raise AuthError(
                f"Token request rejected with {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            value = data["access_token"]
            lifetime = int(data.get("expires_in", 3600))
        except (json.JSONDecodeError, ValueError, KeyError, TypeError) as exc:
            raise AuthError(
                f"Failed to parse token response from {url}: {response.text}",
                status_code=response.status_code,
            ) from exc

        logging.debug("Access token refreshed (expires in %ds)", lifetime)
        return AccessToken(value=value, expires_at=issued_at + lifetime)
