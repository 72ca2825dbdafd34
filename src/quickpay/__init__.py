"""
Public facade for the quickpay package.

The most useful pieces are re-exported so integrators can
``from quickpay import ...`` without navigating the package.
"""

from .api import build_payment_request, create_state_machine, send_payment
from .core import (
    AccessToken,
    AssertionSigner,
    AuthError,
    AuthorizationDenied,
    AuthorizationFlow,
    AuthorizationTimeout,
    ClientIdentity,
    ConfigError,
    InconsistentStateError,
    Payment,
    PaymentClient,
    PaymentCreationError,
    PaymentRequest,
    PaymentRequestBuilder,
    PaymentResult,
    PaymentState,
    PaymentStateMachine,
    PaymentStatus,
    PollTimeout,
    QuickPayConfig,
    QuickPayError,
    SigningError,
    TokenClient,
    TransientError,
    UnknownStatusError,
    UnsupportedActionError,
    ValidationError,
    load_config,
)

__all__ = (
    "AccessToken",
    "AssertionSigner",
    "AuthError",
    "AuthorizationDenied",
    "AuthorizationFlow",
    "AuthorizationTimeout",
    "ClientIdentity",
    "ConfigError",
    "InconsistentStateError",
    "Payment",
    "PaymentClient",
    "PaymentCreationError",
    "PaymentRequest",
    "PaymentRequestBuilder",
    "PaymentResult",
    "PaymentState",
    "PaymentStateMachine",
    "PaymentStatus",
    "PollTimeout",
    "QuickPayConfig",
    "QuickPayError",
    "SigningError",
    "TokenClient",
    "TransientError",
    "UnknownStatusError",
    "UnsupportedActionError",
    "ValidationError",
    "build_payment_request",
    "create_state_machine",
    "load_config",
    "send_payment",
)
