"""
Exception hierarchy shared by every quickpay component.

Each error carries a ``retryable`` flag. The state machine is the only caller
that acts on it; everything else simply raises.
"""

from __future__ import annotations

from typing import Any, Optional

__all__ = [
    "AuthError",
    "AuthorizationDenied",
    "AuthorizationTimeout",
    "ConfigError",
    "InconsistentStateError",
    "InvalidTransitionError",
    "PaymentCreationError",
    "PollTimeout",
    "QuickPayError",
    "SigningError",
    "TransientError",
    "UnknownStatusError",
    "UnsupportedActionError",
    "ValidationError",
]


class QuickPayError(Exception):
    """Base class for all quickpay failures."""

    retryable = False


class ConfigError(QuickPayError):
    """Raised when the supplied configuration is invalid."""


class ValidationError(QuickPayError):
    """Raised when payment inputs fail validation. No network call is made."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class SigningError(QuickPayError):
    """Raised when key material or the signing algorithm cannot be used."""


class AuthError(QuickPayError):
    """
    Raised when the token endpoint refuses to issue an access token.

    4xx responses are credential or configuration problems and are final;
    5xx responses are flagged retryable.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class TransientError(QuickPayError):
    """Network failure or provider-side 5xx."""

    retryable = True

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PaymentCreationError(QuickPayError):
    """The provider rejected the request payload."""

    def __init__(self, message: str, *, status_code: int, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class InconsistentStateError(QuickPayError):
    """The provider no longer knows a payment id it previously issued."""

    def __init__(self, payment_id: str) -> None:
        super().__init__(f"Provider returned 404 for known payment {payment_id}")
        self.payment_id = payment_id


class UnknownStatusError(QuickPayError):
    """The provider reported a status outside the known vocabulary."""

    def __init__(self, raw_status: Any) -> None:
        super().__init__(f"Unrecognised provider payment status {raw_status!r}")
        self.raw_status = raw_status


class UnsupportedActionError(QuickPayError):
    """The provider asked for an authorization step quickpay cannot perform."""

    def __init__(self, action: Any) -> None:
        super().__init__(f"Unsupported authorization action {action!r}")
        self.action = action


class AuthorizationTimeout(QuickPayError):
    """No authorization redirect arrived before the deadline."""


class AuthorizationDenied(QuickPayError):
    """The end user or their bank declined the authorization."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Authorization denied: {reason}")
        self.reason = reason


class PollTimeout(QuickPayError):
    """The payment was still pending when the polling deadline passed."""


class InvalidTransitionError(QuickPayError):
    """The state machine was asked to make a transition it does not allow."""
