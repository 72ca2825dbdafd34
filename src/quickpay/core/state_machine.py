"""
Orchestration of a single payment run: authenticate, create, authorize, poll.
"""

from __future__ import annotations

import enum
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple, TypeVar

from .authorization import AuthorizationFlow
from .client import ActionKind, NextAction, Payment, PaymentClient, PaymentStatus
from .config import QuickPayConfig
from .errors import (
    AuthorizationDenied,
    AuthorizationTimeout,
    InvalidTransitionError,
    PollTimeout,
    QuickPayError,
)
from .payloads import PaymentRequest
from .token import TokenClient

__all__ = [
    "ALLOWED_TRANSITIONS",
    "PaymentResult",
    "PaymentState",
    "PaymentStateMachine",
    "TERMINAL_STATES",
]

T = TypeVar("T")


class PaymentState(enum.Enum):
    CREATED = "created"
    AUTHORIZATION_REQUIRED = "authorization_required"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    EXECUTED = "executed"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        PaymentState.EXECUTED,
        PaymentState.REJECTED,
        PaymentState.FAILED,
        PaymentState.CANCELLED,
        PaymentState.TIMED_OUT,
    }
)

_PROVIDER_ENDINGS = {
    PaymentState.EXECUTED,
    PaymentState.REJECTED,
    PaymentState.FAILED,
    PaymentState.CANCELLED,
}

ALLOWED_TRANSITIONS: dict[PaymentState, frozenset[PaymentState]] = {
    PaymentState.CREATED: frozenset(
        {PaymentState.AUTHORIZATION_REQUIRED, PaymentState.AUTHORIZED} | _PROVIDER_ENDINGS
    ),
    PaymentState.AUTHORIZATION_REQUIRED: frozenset(
        {PaymentState.AUTHORIZING, PaymentState.TIMED_OUT} | _PROVIDER_ENDINGS
    ),
    PaymentState.AUTHORIZING: frozenset(
        {PaymentState.AUTHORIZED, PaymentState.TIMED_OUT} | _PROVIDER_ENDINGS
    ),
    PaymentState.AUTHORIZED: frozenset({PaymentState.TIMED_OUT} | _PROVIDER_ENDINGS),
}
ALLOWED_TRANSITIONS.update({state: frozenset() for state in TERMINAL_STATES})

# Provider statuses that end the run, keyed to the state they end it in.
TERMINAL_STATUS_STATES = {
    PaymentStatus.EXECUTED: PaymentState.EXECUTED,
    PaymentStatus.REJECTED: PaymentState.REJECTED,
    PaymentStatus.FAILED: PaymentState.FAILED,
    PaymentStatus.CANCELLED: PaymentState.CANCELLED,
}


@dataclass(frozen=True)
class PaymentResult:
    payment_id: str
    state: PaymentState
    error: Optional[QuickPayError] = None
    history: Tuple[PaymentState, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.state is PaymentState.EXECUTED


class PaymentStateMachine:
    """
    Drives one payment from creation to a terminal state.

    This is the only place that decides between retrying and aborting. Errors
    whose ``retryable`` flag is set are retried with exponential backoff and
    jitter up to ``config.retry.max_retries`` times; everything else
    propagates immediately. A machine instance runs exactly once.
    """

    def __init__(
        self,
        config: QuickPayConfig,
        *,
        token_client: TokenClient,
        payment_client: PaymentClient,
        authorization_flow: AuthorizationFlow,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.token_client = token_client
        self.payment_client = payment_client
        self.authorization_flow = authorization_flow
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._state: Optional[PaymentState] = None
        self._history: list[PaymentState] = []
        self._payment_id: Optional[str] = None

    @property
    def state(self) -> Optional[PaymentState]:
        return self._state

    @property
    def history(self) -> Tuple[PaymentState, ...]:
        return tuple(self._history)

    def transition(self, new_state: PaymentState) -> None:
        current = self._state
        if current is None:
            if new_state is not PaymentState.CREATED:
                raise InvalidTransitionError(f"A payment must start in CREATED, not {new_state.name}")
        elif new_state not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(f"Invalid transition: {current.name} -> {new_state.name}")
        logging.info(
            "Payment %s: %s -> %s",
            self._payment_id,
            current.name if current else "-",
            new_state.name,
        )
        self._state = new_state
        self._history.append(new_state)

    def run(self, request: PaymentRequest) -> PaymentResult:
        """
        Create ``request`` and follow it to a terminal state.

        Returns a :class:`PaymentResult` once a terminal state is reached;
        user-side outcomes (denied, timed out) are reported on the result.
        Fatal errors propagate as typed :class:`QuickPayError` subclasses.
        """
        if self._state is not None:
            raise InvalidTransitionError("This payment run has already started")

        payment = self._create(request)
        self._payment_id = payment.id
        self.transition(PaymentState.CREATED)

        if payment.status.is_terminal:
            self.transition(TERMINAL_STATUS_STATES[payment.status])
            return self._result()

        if payment.status is PaymentStatus.AUTHORIZATION_REQUIRED:
            error = self._authorize(payment)
            if error is not None:
                return self._result(error)

        self.transition(PaymentState.AUTHORIZED)
        return self._poll(payment.id)

    def _result(self, error: Optional[QuickPayError] = None) -> PaymentResult:
        assert self._state is not None and self._payment_id is not None
        return PaymentResult(
            payment_id=self._payment_id,
            state=self._state,
            error=error,
            history=self.history,
        )

    def _create(self, request: PaymentRequest) -> Payment:
        idempotency_key = self.payment_client.new_idempotency_key()
        return self._with_retry(
            "create payment",
            lambda: self.payment_client.create(
                self.token_client.get_token(),
                request,
                idempotency_key=idempotency_key,
            ),
        )

    def _authorize(self, payment: Payment) -> Optional[QuickPayError]:
        self.transition(PaymentState.AUTHORIZATION_REQUIRED)
        self.transition(PaymentState.AUTHORIZING)
        try:
            if self.config.drive_authorization:
                payment = self._drive_authorization(payment)
            outcome = self.authorization_flow.authorize(
                payment, timeout=self.config.authorization_timeout_seconds
            )
        except AuthorizationDenied as exc:
            logging.warning("%s", exc)
            self.transition(PaymentState.CANCELLED)
            return exc
        except AuthorizationTimeout as exc:
            logging.warning("%s", exc)
            self.transition(PaymentState.TIMED_OUT)
            return exc
        logging.debug("Authorization outcome for %s: %s", payment.id, outcome.kind.value)
        return None

    def _drive_authorization(self, payment: Payment) -> Payment:
        """
        Walk the provider's authorization actions until it hands back a
        redirect link or has nothing more for the user to do.
        """
        action = self._flow_step(
            "start authorization flow",
            lambda key: self.payment_client.start_authorization_flow(
                self.token_client.get_token(), payment.id, idempotency_key=key
            ),
        )
        while action is not None:
            logging.info("Payment %s authorization action: %s", payment.id, action.kind.value)
            if action.kind is ActionKind.PROVIDER_SELECTION:
                provider = self.authorization_flow.choose_provider(action.providers)
                action = self._flow_step(
                    "submit provider selection",
                    lambda key: self.payment_client.submit_provider_selection(
                        self.token_client.get_token(), payment.id, provider.id, idempotency_key=key
                    ),
                )
            elif action.kind is ActionKind.CONSENT:
                if not self.authorization_flow.confirm_consent():
                    raise AuthorizationDenied("consent was not given")
                action = self._flow_step(
                    "submit consent",
                    lambda key: self.payment_client.submit_consent(
                        self.token_client.get_token(), payment.id, idempotency_key=key
                    ),
                )
            elif action.kind is ActionKind.REDIRECT:
                return replace(payment, authorization_uri=action.uri, resource_token=None)
            else:
                break
        # Nothing left for the user; polling reports the outcome.
        return replace(payment, authorization_uri=None, resource_token=None)

    def _flow_step(
        self, description: str, call: Callable[[str], Optional[NextAction]]
    ) -> Optional[NextAction]:
        idempotency_key = self.payment_client.new_idempotency_key()
        return self._with_retry(description, lambda: call(idempotency_key))

    def _poll(self, payment_id: str) -> PaymentResult:
        interval = self.config.poll_interval_seconds
        timeout = self.config.poll_timeout_seconds
        deadline = self._clock() + timeout
        last_status: Optional[PaymentStatus] = None

        while True:
            if self._clock() >= deadline:
                return self._poll_timed_out(payment_id, timeout)
            try:
                status = self._with_retry(
                    "fetch payment status",
                    lambda: self._fetch_status(payment_id, deadline),
                    deadline=deadline,
                )
            except PollTimeout:
                return self._poll_timed_out(payment_id, timeout)

            if status is not last_status:
                logging.info("Payment %s reported status %s", payment_id, status.value)
                last_status = status
            if status.is_terminal:
                self.transition(TERMINAL_STATUS_STATES[status])
                return self._result()

            remaining = deadline - self._clock()
            if remaining <= 0:
                return self._poll_timed_out(payment_id, timeout)
            self._sleep(min(interval, remaining))

    def _fetch_status(self, payment_id: str, deadline: float) -> PaymentStatus:
        token = self.token_client.get_token(timeout=self._time_left(deadline))
        return self.payment_client.get_status(
            token, payment_id, timeout=self._time_left(deadline)
        )

    def _time_left(self, deadline: float) -> float:
        """Request timeout for a call that must finish before ``deadline``."""
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise PollTimeout("Deadline reached before the next status request")
        return min(self.config.request_timeout_seconds, remaining)

    def _poll_timed_out(self, payment_id: str, timeout: float) -> PaymentResult:
        error = PollTimeout(f"Payment {payment_id} still pending after {timeout:g}s")
        logging.warning("%s", error)
        self.transition(PaymentState.TIMED_OUT)
        return self._result(error)

    def _with_retry(
        self,
        description: str,
        operation: Callable[[], T],
        *,
        deadline: Optional[float] = None,
    ) -> T:
        policy = self.config.retry
        attempt = 0
        while True:
            try:
                return operation()
            except QuickPayError as exc:
                if not exc.retryable or attempt >= policy.max_retries:
                    raise
                delay = policy.delay(attempt, self._rng.random())
                if deadline is not None and self._clock() + delay >= deadline:
                    raise PollTimeout(f"Deadline reached while retrying {description}") from exc
                attempt += 1
                logging.warning(
                    "%s failed (%s); retry %d/%d in %.2fs",
                    description,
                    exc,
                    attempt,
                    policy.max_retries,
                    delay,
                )
                self._sleep(delay)
