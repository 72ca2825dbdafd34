"""
Core primitives that implement the quickpay payment lifecycle.
"""

from .authorization import AuthorizationFlow, AuthorizationOutcome, OutcomeKind
from .client import (
    ActionKind,
    NextAction,
    Payment,
    PaymentClient,
    PaymentStatus,
    Provider,
    parse_status,
)
from .config import ClientIdentity, QuickPayConfig, RetryPolicy, load_config
from .environment import QuickPayEnvironment, build_environment
from .errors import (
    AuthError,
    AuthorizationDenied,
    AuthorizationTimeout,
    ConfigError,
    InconsistentStateError,
    InvalidTransitionError,
    PaymentCreationError,
    PollTimeout,
    QuickPayError,
    SigningError,
    TransientError,
    UnknownStatusError,
    UnsupportedActionError,
    ValidationError,
)
from .payloads import PaymentRequest, PaymentRequestBuilder, iban_is_valid
from .signing import AssertionSigner, SignedAssertion
from .state_machine import PaymentResult, PaymentState, PaymentStateMachine
from .token import AccessToken, TokenClient

__all__ = [
    "AccessToken",
    "ActionKind",
    "AssertionSigner",
    "AuthError",
    "AuthorizationDenied",
    "AuthorizationFlow",
    "AuthorizationOutcome",
    "AuthorizationTimeout",
    "ClientIdentity",
    "ConfigError",
    "InconsistentStateError",
    "InvalidTransitionError",
    "NextAction",
    "OutcomeKind",
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
    "Provider",
    "QuickPayConfig",
    "QuickPayEnvironment",
    "QuickPayError",
    "RetryPolicy",
    "SignedAssertion",
    "SigningError",
    "TokenClient",
    "TransientError",
    "UnknownStatusError",
    "UnsupportedActionError",
    "ValidationError",
    "build_environment",
    "iban_is_valid",
    "load_config",
    "parse_status",
]
