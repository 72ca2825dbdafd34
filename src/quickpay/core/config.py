"""
Configuration objects and helpers for quickpay.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional, TypeVar
from urllib.parse import urlsplit

from .environment import DEFAULT_CONFIG_FILE, build_environment
from .errors import ConfigError

__all__ = [
    "ClientIdentity",
    "ConfigError",
    "ENVIRONMENTS",
    "QuickPayConfig",
    "RetryPolicy",
    "load_config",
]

ENVIRONMENTS = {
    "sandbox": {
        "auth_url": "https://auth.truelayer-sandbox.com",
        "api_url": "https://api.truelayer-sandbox.com",
        "hpp_url": "https://payment.truelayer-sandbox.com",
    },
    "production": {
        "auth_url": "https://auth.truelayer.com",
        "api_url": "https://api.truelayer.com",
        "hpp_url": "https://payment.truelayer.com",
    },
}

TOKEN_AUTH_METHODS = ("private_key_jwt", "client_secret")

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}

T = TypeVar("T")


@dataclass(frozen=True)
class ClientIdentity:
    """
    Credentials proving the caller's identity to the authorization server.

    ``signing_algorithm`` is fixed configuration; it is never inferred from
    the key.
    """

    client_id: str
    client_secret: str
    key_id: str
    private_key: str = field(repr=False)
    signing_algorithm: str = "ES512"


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    jitter: float = 0.1

    def delay(self, attempt: int, rand: float) -> float:
        """Backoff before retry number ``attempt`` (0-based); ``rand`` is in [0, 1]."""
        capped = min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** attempt))
        return capped * (1 + rand * self.jitter)


def _required(values: Mapping[str, str], key: str) -> str:
    value = values.get(key)
    if value is None or not value.strip():
        raise ConfigError(f"{key} must be provided")
    return value.strip()


def _parse(values: Mapping[str, str], key: str, default: T, convert: Callable[[str], T]) -> T:
    raw = values.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return convert(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{key} has an invalid value {raw!r}") from exc


def _to_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(raw)


def _non_negative(convert: Callable[[str], T]) -> Callable[[str], T]:
    def wrapper(raw: str) -> T:
        value = convert(raw)
        if value < 0:  # type: ignore[operator]
            raise ValueError(raw)
        return value

    return wrapper


def _positive(convert: Callable[[str], T]) -> Callable[[str], T]:
    def wrapper(raw: str) -> T:
        value = convert(raw)
        if value <= 0:  # type: ignore[operator]
            raise ValueError(raw)
        return value

    return wrapper


def _normalize_private_key(raw_key: str) -> str:
    key = raw_key.replace("\\n", "\n").strip()
    if "-----BEGIN" not in key:
        raise ConfigError("QUICKPAY_CLIENT_PRIVATE_KEY must be a PEM encoded private key")
    return key + "\n"


def _normalize_redirect_uri(raw_uri: str) -> str:
    parts = urlsplit(raw_uri)
    if parts.scheme not in {"http", "https"} or not parts.hostname:
        raise ConfigError(f"QUICKPAY_REDIRECT_URI is not an absolute http(s) URI: {raw_uri!r}")
    return raw_uri


@dataclass(frozen=True)
class QuickPayConfig:
    identity: ClientIdentity
    redirect_uri: str
    auth_url: str
    api_url: str
    hpp_url: str
    environment: str = "sandbox"
    token_auth_method: str = "private_key_jwt"
    request_timeout_seconds: float = 15.0
    poll_interval_seconds: float = 2.0
    poll_timeout_seconds: float = 300.0
    authorization_timeout_seconds: float = 300.0
    token_safety_margin_seconds: float = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    callback_listener: bool = True
    open_browser: bool = False
    drive_authorization: bool = True

    @property
    def token_url(self) -> str:
        return f"{self.auth_url}/connect/token"

    @property
    def payments_url(self) -> str:
        return f"{self.api_url}/v3/payments"

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "QuickPayConfig":
        identity = ClientIdentity(
            client_id=_required(values, "QUICKPAY_CLIENT_ID"),
            client_secret=_required(values, "QUICKPAY_CLIENT_SECRET"),
            key_id=_required(values, "QUICKPAY_CLIENT_KID"),
            private_key=_normalize_private_key(
                _required(values, "QUICKPAY_CLIENT_PRIVATE_KEY")
            ),
            signing_algorithm=values.get("QUICKPAY_SIGNING_ALGORITHM", "ES512").strip(),
        )
        redirect_uri = _normalize_redirect_uri(_required(values, "QUICKPAY_REDIRECT_URI"))

        environment = values.get("QUICKPAY_ENVIRONMENT", "sandbox").strip().lower()
        if environment not in ENVIRONMENTS:
            raise ConfigError(
                f"QUICKPAY_ENVIRONMENT must be one of {sorted(ENVIRONMENTS)}, got {environment!r}"
            )
        urls = ENVIRONMENTS[environment]

        token_auth_method = values.get("QUICKPAY_TOKEN_AUTH_METHOD", "private_key_jwt").strip()
        if token_auth_method not in TOKEN_AUTH_METHODS:
            raise ConfigError(
                f"QUICKPAY_TOKEN_AUTH_METHOD must be one of {TOKEN_AUTH_METHODS}, "
                f"got {token_auth_method!r}"
            )

        seconds = _positive(float)
        optional_seconds = _non_negative(float)
        retry = RetryPolicy(
            max_retries=_parse(values, "QUICKPAY_MAX_RETRIES", 3, _non_negative(int)),
            backoff_base_seconds=_parse(
                values, "QUICKPAY_BACKOFF_BASE_SECONDS", 0.5, optional_seconds
            ),
            backoff_max_seconds=_parse(
                values, "QUICKPAY_BACKOFF_MAX_SECONDS", 8.0, optional_seconds
            ),
            jitter=_parse(values, "QUICKPAY_BACKOFF_JITTER", 0.1, optional_seconds),
        )

        return cls(
            identity=identity,
            redirect_uri=redirect_uri,
            auth_url=values.get("QUICKPAY_AUTH_URL", urls["auth_url"]).rstrip("/"),
            api_url=values.get("QUICKPAY_API_URL", urls["api_url"]).rstrip("/"),
            hpp_url=values.get("QUICKPAY_HPP_URL", urls["hpp_url"]).rstrip("/"),
            environment=environment,
            token_auth_method=token_auth_method,
            request_timeout_seconds=_parse(
                values, "QUICKPAY_REQUEST_TIMEOUT_SECONDS", 15.0, seconds
            ),
            poll_interval_seconds=_parse(values, "QUICKPAY_POLL_INTERVAL_SECONDS", 2.0, seconds),
            poll_timeout_seconds=_parse(values, "QUICKPAY_POLL_TIMEOUT_SECONDS", 300.0, seconds),
            authorization_timeout_seconds=_parse(
                values, "QUICKPAY_AUTHORIZATION_TIMEOUT_SECONDS", 300.0, seconds
            ),
            token_safety_margin_seconds=_parse(
                values, "QUICKPAY_TOKEN_SAFETY_MARGIN_SECONDS", 30.0, optional_seconds
            ),
            retry=retry,
            callback_listener=_parse(values, "QUICKPAY_CALLBACK_LISTENER", True, _to_bool),
            open_browser=_parse(values, "QUICKPAY_OPEN_BROWSER", False, _to_bool),
            drive_authorization=_parse(
                values, "QUICKPAY_DRIVE_AUTHORIZATION", True, _to_bool
            ),
        )

    @classmethod
    def from_env(
        cls,
        *,
        config_file: Optional[str | Path] = DEFAULT_CONFIG_FILE,
        overrides: Optional[Mapping[str, str]] = None,
        base: Optional[Mapping[str, str]] = None,
    ) -> "QuickPayConfig":
        environment = build_environment(
            config_file=config_file,
            base=base,
            overrides=overrides,
        )
        return cls.from_mapping(environment.variables)


def load_config(
    *,
    config_file: Optional[str | Path] = DEFAULT_CONFIG_FILE,
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
) -> QuickPayConfig:
    """
    Convenience wrapper that mirrors :meth:`QuickPayConfig.from_env`.

    Values can come from ``~/.config/quickpay``, ``QUICKPAY_*`` environment
    variables (which win over the file), explicit overrides, or any mix.
    """
    return QuickPayConfig.from_env(config_file=config_file, overrides=overrides, base=base)
