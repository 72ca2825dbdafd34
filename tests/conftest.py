"""
Shared fixtures: real EC key material, a fast test configuration, a fake
clock, and canned HTTP responses.
"""

from __future__ import annotations

import json
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from quickpay.core.config import ClientIdentity, QuickPayConfig, RetryPolicy


class FakeClock:
    """Deterministic stand-in for both ``time.time`` and ``time.sleep``."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_response(status_code: int, body: Optional[Any] = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = json.dumps(body) if body is not None else ""
    if body is None:
        response.json.side_effect = ValueError("no body")
    else:
        response.json.return_value = body
    return response


@pytest.fixture(scope="session")
def ec_private_key():
    return ec.generate_private_key(ec.SECP521R1())


@pytest.fixture(scope="session")
def private_key_pem(ec_private_key) -> str:
    return ec_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(scope="session")
def public_key(ec_private_key):
    return ec_private_key.public_key()


@pytest.fixture
def identity(private_key_pem) -> ClientIdentity:
    return ClientIdentity(
        client_id="sandbox-quickpay-1234",
        client_secret="s3cr3t",
        key_id="kid-1",
        private_key=private_key_pem,
        signing_algorithm="ES512",
    )


@pytest.fixture
def config(identity) -> QuickPayConfig:
    return QuickPayConfig(
        identity=identity,
        redirect_uri="https://console.example.com/redirect-page",
        auth_url="https://auth.example.com",
        api_url="https://api.example.com",
        hpp_url="https://payment.example.com",
        request_timeout_seconds=5.0,
        poll_interval_seconds=1.0,
        poll_timeout_seconds=10.0,
        authorization_timeout_seconds=5.0,
        token_safety_margin_seconds=30.0,
        retry=RetryPolicy(max_retries=3, backoff_base_seconds=0.5, backoff_max_seconds=8.0, jitter=0.1),
        callback_listener=False,
        drive_authorization=False,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def token_body() -> dict:
    return {"access_token": "at-123", "expires_in": 3600, "token_type": "Bearer"}
