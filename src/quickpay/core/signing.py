"""
Client-assertion and request signing.

Both tokens are produced with PyJWT using the private key and algorithm from
the :class:`~quickpay.core.config.ClientIdentity`.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

import jwt

from .config import ClientIdentity
from .errors import SigningError

__all__ = [
    "ASSERTION_LIFETIME_SECONDS",
    "SUPPORTED_ALGORITHMS",
    "AssertionSigner",
    "SignedAssertion",
]

ASSERTION_LIFETIME_SECONDS = 300

SUPPORTED_ALGORITHMS = frozenset(
    {
        "ES256",
        "ES384",
        "ES512",
        "RS256",
        "RS384",
        "RS512",
        "PS256",
        "PS384",
        "PS512",
        "EdDSA",
    }
)


@dataclass(frozen=True)
class SignedAssertion:
    token: str
    jti: str
    expires_at: int


class AssertionSigner:
    """
    Builds short-lived signed JWTs identifying the client application.

    Examples
    --------
    >>> signer = AssertionSigner()
    >>> assertion = signer.sign(identity, "https://auth.example.com/connect/token")
    >>> assertion.token  # compact JWS
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def sign(
        self,
        identity: ClientIdentity,
        audience: str,
        expiry: int = ASSERTION_LIFETIME_SECONDS,
    ) -> SignedAssertion:
        """
        Sign a client assertion for ``audience``.

        Parameters
        ----------
        identity
            Client credentials and key material.
        audience
            The token endpoint the assertion will be presented to.
        expiry
            Lifetime in seconds.

        Raises
        ------
        SigningError
            If the key is malformed or the algorithm is unsupported.
        """
        now = int(self._clock())
        jti = uuid.uuid4().hex
        claims = {
            "iss": identity.client_id,
            "sub": identity.client_id,
            "aud": audience,
            "jti": jti,
            "iat": now,
            "exp": now + expiry,
        }
        token = self._encode(identity, claims)
        return SignedAssertion(token=token, jti=jti, expires_at=now + expiry)

    def sign_request(
        self,
        identity: ClientIdentity,
        method: str,
        path: str,
        body: bytes,
        headers: Optional[Mapping[str, str]] = None,
    ) -> str:
        """
        Produce a detached JWS over an outgoing request for the Tl-Signature header.

        The signed content is the request line, the listed headers in order,
        then the raw body.
        """
        headers = dict(headers or {})
        lines = [f"{method.upper()} {path}"]
        lines.extend(f"{name}: {value}" for name, value in headers.items())
        signed_content = ("\n".join(lines) + "\n").encode("utf-8") + body
        jws_headers = {
            "kid": identity.key_id,
            "tl_version": "2",
            "tl_headers": ",".join(headers),
        }
        self._check_algorithm(identity.signing_algorithm)
        try:
            compact = jwt.api_jws.encode(
                signed_content,
                identity.private_key,
                algorithm=identity.signing_algorithm,
                headers=jws_headers,
            )
        except (jwt.PyJWTError, ValueError, TypeError, NotImplementedError) as exc:
            raise SigningError(f"Could not sign request: {exc}") from exc
        protected, _, signature = compact.split(".")
        return f"{protected}..{signature}"

    def _encode(self, identity: ClientIdentity, claims: dict) -> str:
        self._check_algorithm(identity.signing_algorithm)
        try:
            return jwt.encode(
                claims,
                identity.private_key,
                algorithm=identity.signing_algorithm,
                headers={"kid": identity.key_id},
            )
        except (jwt.PyJWTError, ValueError, TypeError, NotImplementedError) as exc:
            raise SigningError(f"Could not sign client assertion: {exc}") from exc

    @staticmethod
    def _check_algorithm(algorithm: str) -> None:
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise SigningError(
                f"Signing algorithm {algorithm!r} is not supported; "
                f"use one of {sorted(SUPPORTED_ALGORITHMS)}"
            )
