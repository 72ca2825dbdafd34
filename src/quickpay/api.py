"""
Public, high-level helpers for running a payment end to end.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

import requests

from .core.authorization import AuthorizationFlow
from .core.client import PaymentClient
from .core.config import ConfigError, QuickPayConfig, load_config
from .core.payloads import PaymentRequest, PaymentRequestBuilder
from .core.signing import AssertionSigner
from .core.state_machine import PaymentResult, PaymentStateMachine
from .core.token import TokenClient

__all__ = [
    "ConfigError",
    "PaymentResult",
    "QuickPayConfig",
    "build_payment_request",
    "create_state_machine",
    "load_config",
    "send_payment",
]


def build_payment_request(raw_inputs: Mapping[str, Any]) -> PaymentRequest:
    """Validate operator input; raises :class:`ValidationError` on the first bad field."""
    return PaymentRequestBuilder().build(raw_inputs)


def create_state_machine(
    config: QuickPayConfig,
    *,
    session: Optional[requests.Session] = None,
    authorization_flow: Optional[AuthorizationFlow] = None,
) -> PaymentStateMachine:
    """
    Wire the signer, token client, payment client and authorization flow
    around one shared :class:`requests.Session`.
    """
    session = session or requests.Session()
    signer = AssertionSigner()
    return PaymentStateMachine(
        config,
        token_client=TokenClient(config, session=session, signer=signer),
        payment_client=PaymentClient(config, session=session, signer=signer),
        authorization_flow=authorization_flow or AuthorizationFlow(config),
    )


def send_payment(
    raw_inputs: Mapping[str, Any],
    *,
    config: Optional[QuickPayConfig] = None,
    session: Optional[requests.Session] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> PaymentResult:
    """
    Validate ``raw_inputs``, then create and follow the payment to a terminal
    state. Input is validated before configuration is loaded so bad input
    never costs a network call.
    """
    request = build_payment_request(raw_inputs)
    if config is None:
        config = load_config(overrides=overrides)
    return create_state_machine(config, session=session).run(request)
