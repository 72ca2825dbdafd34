"""
HTTP client for the provider's payment endpoints.
"""

from __future__ import annotations

import enum
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit

import requests

from .config import QuickPayConfig
from .errors import (
    AuthError,
    InconsistentStateError,
    PaymentCreationError,
    TransientError,
    UnknownStatusError,
    UnsupportedActionError,
)
from .payloads import PaymentRequest
from .signing import AssertionSigner
from .token import AccessToken

__all__ = [
    "ActionKind",
    "NextAction",
    "Payment",
    "PaymentClient",
    "PaymentStatus",
    "Provider",
    "STATUS_MAP",
    "parse_status",
]


class PaymentStatus(enum.Enum):
    AUTHORIZATION_REQUIRED = "authorization_required"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    EXECUTED = "executed"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {
        PaymentStatus.EXECUTED,
        PaymentStatus.REJECTED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }
)

STATUS_MAP = {
    "authorization_required": PaymentStatus.AUTHORIZATION_REQUIRED,
    "authorizing": PaymentStatus.AUTHORIZING,
    "authorized": PaymentStatus.AUTHORIZED,
    "executed": PaymentStatus.EXECUTED,
    "settled": PaymentStatus.EXECUTED,
    "rejected": PaymentStatus.REJECTED,
    "failed": PaymentStatus.FAILED,
    "attempt_failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
}

# A "failed" payment is reported more precisely when the failure reason says so.
FAILURE_REASON_MAP = {
    "provider_rejected": PaymentStatus.REJECTED,
    "rejected": PaymentStatus.REJECTED,
    "user_canceled_at_provider": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
    "cancelled": PaymentStatus.CANCELLED,
}


def parse_status(raw_status: Any, failure_reason: Any = None) -> PaymentStatus:
    if not isinstance(raw_status, str) or raw_status.lower() not in STATUS_MAP:
        raise UnknownStatusError(raw_status)
    status = STATUS_MAP[raw_status.lower()]
    if status is PaymentStatus.FAILED and isinstance(failure_reason, str):
        status = FAILURE_REASON_MAP.get(failure_reason.lower(), status)
    return status


@dataclass(frozen=True)
class Payment:
    id: str
    status: PaymentStatus
    authorization_uri: Optional[str] = None
    resource_token: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> "Payment":
        return cls(
            id=str(payload["id"]),
            status=parse_status(payload.get("status"), payload.get("failure_reason")),
            authorization_uri=payload.get("authorization_uri")
            or (payload.get("authorization_flow") or {}).get("redirect_uri"),
            resource_token=payload.get("resource_token"),
        )


class ActionKind(enum.Enum):
    PROVIDER_SELECTION = "provider_selection"
    CONSENT = "consent"
    REDIRECT = "redirect"
    WAIT = "wait"


@dataclass(frozen=True)
class Provider:
    id: str
    display_name: str
    country_code: Optional[str] = None

    @property
    def label(self) -> str:
        if self.country_code:
            return f"{self.display_name} ({self.country_code})"
        return self.display_name


@dataclass(frozen=True)
class NextAction:
    """The step the provider expects next in a payment's authorization flow."""

    kind: ActionKind
    uri: Optional[str] = None
    providers: Tuple[Provider, ...] = ()

    @classmethod
    def from_response(cls, payload: Dict[str, Any]) -> Optional["NextAction"]:
        """
        Read ``authorization_flow.actions.next``. Returns ``None`` when the
        provider has nothing further for the user to do.
        """
        flow = payload.get("authorization_flow") or {}
        step = (flow.get("actions") or {}).get("next")
        if not step:
            return None
        raw_kind = step.get("type")
        try:
            kind = ActionKind(raw_kind)
        except ValueError:
            raise UnsupportedActionError(raw_kind) from None
        if kind is ActionKind.REDIRECT:
            return cls(kind=kind, uri=str(step["uri"]))
        if kind is ActionKind.PROVIDER_SELECTION:
            providers = tuple(
                Provider(
                    id=str(item["id"]),
                    display_name=str(item.get("display_name") or item["id"]),
                    country_code=item.get("country_code"),
                )
                for item in step.get("providers") or ()
            )
            return cls(kind=kind, providers=providers)
        return cls(kind=kind)


def _parse_json(response: requests.Response, url: str) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise TransientError(
            f"Failed to parse JSON from {url}: {response.text}",
            status_code=response.status_code,
        ) from exc
    if not isinstance(data, dict):
        raise TransientError(
            f"Expected a JSON object from {url}, got: {response.text}",
            status_code=response.status_code,
        )
    return data




class PaymentClient:
    """
    Thin wrapper around ``/v3/payments``.

    Every call takes the bearer token explicitly and refuses one that has
    already expired. Retrying is left to the caller. ``timeout`` overrides the
    configured request timeout for a single call.
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

    def _headers(self, token: AccessToken) -> Dict[str, str]:
        if token.is_expired(self._clock()):
            raise AuthError("Refusing to use an expired access token")
        return {
            "Authorization": f"Bearer {token.value}",
            "Accept": "application/json",
        }

    def new_idempotency_key(self) -> str:
        return str(uuid.uuid4())

    def _post_signed(
        self,
        token: AccessToken,
        url: str,
        payload: Dict[str, Any],
        *,
        idempotency_key: Optional[str],
        timeout: Optional[float],
    ) -> requests.Response:
        headers = self._headers(token)
        idempotency_key = idempotency_key or self.new_idempotency_key()
        body = json.dumps(payload).encode("utf-8")
        headers["Content-Type"] = "application/json"
        headers["Idempotency-Key"] = idempotency_key
        headers["Tl-Signature"] = self.signer.sign_request(
            self.config.identity,
            "POST",
            urlsplit(url).path,
            body,
            headers={"Idempotency-Key": idempotency_key},
        )
        try:
            return self.session.post(
                url,
                data=body,
                headers=headers,
                timeout=timeout or self.config.request_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise TransientError(f"Request to {url} failed: {exc}") from exc

    def create(
        self,
        token: AccessToken,
        request: PaymentRequest,
        *,
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Payment:
        """
        Create a payment. Pass the same ``idempotency_key`` when retrying so the
        provider does not create a duplicate.
        """
        url = self.config.payments_url
        logging.info(
            "Creating payment of %d %s to %s",
            request.amount,
            request.currency,
            request.beneficiary_name,
        )
        response = self._post_signed(
            token,
            url,
            request.to_payload(),
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

        if response.status_code >= 500:
            raise TransientError(
                f"Provider responded with {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise PaymentCreationError(
                f"Payment rejected with {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        payload = _parse_json(response, url)
        try:
            payment = Payment.from_response(payload)
        except (KeyError, TypeError, AttributeError) as exc:
            raise PaymentCreationError(
                f"Provider response did not include a payment id: {payload}",
                status_code=response.status_code,
                body=response.text,
            ) from exc
        logging.info("Payment %s created with status %s", payment.id, payment.status.value)
        return payment

    def get_status(
        self,
        token: AccessToken,
        payment_id: str,
        *,
        timeout: Optional[float] = None,
    ) -> PaymentStatus:
        url = f"{self.config.payments_url}/{payment_id}"
        headers = self._headers(token)
        try:
            response = self.session.get(
                url,
                headers=headers,
                timeout=timeout or self.config.request_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise TransientError(f"Status request to {url} failed: {exc}") from exc

        if response.status_code == 404:
            raise InconsistentStateError(payment_id)
        if response.status_code >= 500:
            raise TransientError(
                f"Provider responded with {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise PaymentCreationError(
                f"Status request rejected with {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        payload = _parse_json(response, url)
        failure_reason = payload.get("failure_reason")
        status = parse_status(payload.get("status"), failure_reason)
        if failure_reason:
            logging.info("Payment %s failure reason: %s", payment_id, failure_reason)
        logging.debug("Payment %s status is %s", payment_id, status.value)
        return status

    def start_authorization_flow(
        self,
        token: AccessToken,
        payment_id: str,
        *,
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[NextAction]:
        """
        Start the authorization flow, declaring support for provider selection,
        consent and a redirect back to the configured return URI.
        """
        payload = {
            "provider_selection": {},
            "redirect": {"return_uri": self.config.redirect_uri},
            "consent": {},
        }
        return self._flow_action(
            token,
            payment_id,
            "authorization-flow",
            payload,
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    def submit_provider_selection(
        self,
        token: AccessToken,
        payment_id: str,
        provider_id: str,
        *,
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[NextAction]:
        return self._flow_action(
            token,
            payment_id,
            "authorization-flow/actions/provider-selection",
            {"provider_id": provider_id},
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    def submit_consent(
        self,
        token: AccessToken,
        payment_id: str,
        *,
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[NextAction]:
        return self._flow_action(
            token,
            payment_id,
            "authorization-flow/actions/consent",
            {},
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

    def _flow_action(
        self,
        token: AccessToken,
        payment_id: str,
        path: str,
        payload: Dict[str, Any],
        *,
        idempotency_key: Optional[str],
        timeout: Optional[float],
    ) -> Optional[NextAction]:
        url = f"{self.config.payments_url}/{payment_id}/{path}"
        logging.debug("Calling %s for payment %s", path, payment_id)
        response = self._post_signed(
            token,
            url,
            payload,
            idempotency_key=idempotency_key,
            timeout=timeout,
        )

        if response.status_code == 404:
            raise InconsistentStateError(payment_id)
        if response.status_code >= 500:
            raise TransientError(
                f"Provider responded with {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise PaymentCreationError(
                f"Authorization step rejected with {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        data = _parse_json(response, url)
        try:
            return NextAction.from_response(data)
        except (KeyError, TypeError, AttributeError) as exc:
            raise PaymentCreationError(
                f"Malformed authorization flow from {url}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            ) from exc
