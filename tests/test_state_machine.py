"""
Tests for the payment orchestration: end-to-end scenarios against a mocked
HTTP session, plus the transition table and retry policy.
"""

import json
import random
from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from conftest import make_response
from quickpay.core.authorization import AuthorizationFlow, AuthorizationOutcome, OutcomeKind
from quickpay.core.client import PaymentClient
from quickpay.core.errors import (
    AuthError,
    AuthorizationDenied,
    AuthorizationTimeout,
    InconsistentStateError,
    InvalidTransitionError,
    PaymentCreationError,
    PollTimeout,
    TransientError,
    UnsupportedActionError,
)
from quickpay.core.payloads import PaymentRequestBuilder
from quickpay.core.state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    PaymentState,
    PaymentStateMachine,
)
from quickpay.core.token import TokenClient

TOKEN_URL = "https://auth.example.com/connect/token"
PAYMENTS_URL = "https://api.example.com/v3/payments"
FLOW_URL = f"{PAYMENTS_URL}/pay-1/authorization-flow"

REQUEST = PaymentRequestBuilder().build(
    {
        "amount": 100,
        "currency": "EUR",
        "iban": "NL84INGB2266765221",
        "beneficiary_name": "Ben Eficiary",
    }
)

CREATED = {
    "id": "pay-1",
    "status": "authorization_required",
    "authorization_uri": "https://bank.example.com/authorize",
}


class FakeProvider:
    """Routes mocked ``requests.Session`` calls to canned responses."""

    def __init__(self, token_responses, create_responses, status_responses, flow_responses=()):
        self.token_responses = list(token_responses)
        self.create_responses = list(create_responses)
        self.status_responses = list(status_responses)
        self.flow_responses = list(flow_responses)
        self.session = MagicMock()
        self.session.post.side_effect = self._post
        self.session.get.side_effect = self._get
        self.token_calls = 0
        self.create_calls = []
        self.status_calls = 0
        self.flow_calls = []

    def _post(self, url, **kwargs):
        if url == TOKEN_URL:
            self.token_calls += 1
            return self._next(self.token_responses)
        if url.startswith(FLOW_URL):
            self.flow_calls.append(
                (
                    url[len(FLOW_URL):],
                    json.loads(kwargs["data"]),
                    kwargs["headers"]["Idempotency-Key"],
                )
            )
            return self._next(self.flow_responses)
        assert url == PAYMENTS_URL
        self.create_calls.append(kwargs["headers"]["Idempotency-Key"])
        return self._next(self.create_responses)

    def _get(self, url, **kwargs):
        assert url == f"{PAYMENTS_URL}/pay-1"
        self.status_calls += 1
        return self._next(self.status_responses)

    @staticmethod
    def _next(responses):
        if len(responses) > 1:
            return responses.pop(0)
        return responses[0]


@pytest.fixture
def shown():
    return []


def _machine(config, provider, fake_clock, shown, flow=None):
    return PaymentStateMachine(
        config,
        token_client=TokenClient(config, session=provider.session, clock=fake_clock),
        payment_client=PaymentClient(config, session=provider.session, clock=fake_clock),
        authorization_flow=flow or AuthorizationFlow(config, display=shown.append, clock=fake_clock),
        sleep=fake_clock.sleep,
        clock=fake_clock,
        rng=random.Random(7),
    )


def _ok_token(token_body):
    return [make_response(200, token_body)]


class TestScenarios:
    def test_happy_path_reaches_executed(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [
                make_response(200, {"id": "pay-1", "status": "authorizing"}),
                make_response(200, {"id": "pay-1", "status": "authorized"}),
                make_response(200, {"id": "pay-1", "status": "executed"}),
            ],
        )
        machine = _machine(config, provider, fake_clock, shown)

        result = machine.run(REQUEST)

        assert result.succeeded
        assert result.payment_id == "pay-1"
        assert result.error is None
        assert len(provider.create_calls) == 1
        assert shown == ["https://bank.example.com/authorize"]
        assert provider.status_calls == 3
        assert provider.token_calls == 1
        assert result.history == (
            PaymentState.CREATED,
            PaymentState.AUTHORIZATION_REQUIRED,
            PaymentState.AUTHORIZING,
            PaymentState.AUTHORIZED,
            PaymentState.EXECUTED,
        )

    def test_token_401_aborts_before_creation(self, config, fake_clock, shown):
        provider = FakeProvider(
            [make_response(401, {"error": "invalid_client"})],
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
        )
        machine = _machine(config, provider, fake_clock, shown)

        with pytest.raises(AuthError):
            machine.run(REQUEST)

        assert provider.token_calls == 1
        assert provider.create_calls == []
        assert machine.state is None

    def test_status_500_three_times_then_executed(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [
                make_response(500, {"title": "oops"}),
                make_response(500, {"title": "oops"}),
                make_response(500, {"title": "oops"}),
                make_response(200, {"id": "pay-1", "status": "executed"}),
            ],
        )
        machine = _machine(config, provider, fake_clock, shown)

        result = machine.run(REQUEST)

        assert result.state is PaymentState.EXECUTED
        assert provider.status_calls == 4
        assert len(fake_clock.sleeps) == 3
        assert fake_clock.sleeps == sorted(fake_clock.sleeps)
        assert fake_clock.sleeps[0] < fake_clock.sleeps[1] < fake_clock.sleeps[2]
        assert 0.5 <= fake_clock.sleeps[0] <= 0.55

    def test_poll_gives_up_at_deadline(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "authorized"})],
        )
        machine = _machine(config, provider, fake_clock, shown)
        started = fake_clock.now

        result = machine.run(REQUEST)

        assert result.state is PaymentState.TIMED_OUT
        assert isinstance(result.error, PollTimeout)
        elapsed = fake_clock.now - started
        assert elapsed <= config.poll_interval_seconds + config.poll_timeout_seconds
        assert provider.status_calls >= 2


class TestOutcomes:
    @pytest.mark.parametrize(
        "status, reason, expected",
        [
            ("failed", None, PaymentState.FAILED),
            ("rejected", None, PaymentState.REJECTED),
            ("failed", "user_canceled_at_provider", PaymentState.CANCELLED),
            ("settled", None, PaymentState.EXECUTED),
        ],
    )
    def test_provider_terminal_status(self, config, fake_clock, token_body, shown, status, reason, expected):
        body = {"id": "pay-1", "status": status}
        if reason:
            body["failure_reason"] = reason
        provider = FakeProvider(
            _ok_token(token_body), [make_response(201, CREATED)], [make_response(200, body)]
        )

        result = _machine(config, provider, fake_clock, shown).run(REQUEST)

        assert result.state is expected
        assert provider.status_calls == 1

    def test_already_authorized_skips_user_step(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, {"id": "pay-1", "status": "authorized"})],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
        )

        result = _machine(config, provider, fake_clock, shown).run(REQUEST)

        assert result.history == (PaymentState.CREATED, PaymentState.AUTHORIZED, PaymentState.EXECUTED)
        assert shown == []

    def test_terminal_on_creation_never_polls(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, {"id": "pay-1", "status": "failed"})],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
        )

        result = _machine(config, provider, fake_clock, shown).run(REQUEST)

        assert result.state is PaymentState.FAILED
        assert provider.status_calls == 0

    @pytest.mark.parametrize(
        "error, expected",
        [
            (AuthorizationDenied("access_denied"), PaymentState.CANCELLED),
            (AuthorizationTimeout("no redirect"), PaymentState.TIMED_OUT),
        ],
    )
    def test_user_side_outcomes(self, config, fake_clock, token_body, shown, error, expected):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
        )
        flow = MagicMock()
        flow.authorize.side_effect = error

        result = _machine(config, provider, fake_clock, shown, flow=flow).run(REQUEST)

        assert result.state is expected
        assert result.error is error
        assert provider.status_calls == 0

    def test_completed_redirect_moves_to_polling(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
        )
        flow = MagicMock()
        flow.authorize.return_value = AuthorizationOutcome(kind=OutcomeKind.COMPLETED)

        result = _machine(config, provider, fake_clock, shown, flow=flow).run(REQUEST)

        assert result.succeeded
        flow.authorize.assert_called_once()


    def test_request_timeout_shrinks_near_the_deadline(self, config, fake_clock, token_body, shown):
        config = replace(config, request_timeout_seconds=5.0, poll_interval_seconds=4.0)
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "authorized"})],
        )

        result = _machine(config, provider, fake_clock, shown).run(REQUEST)

        assert result.state is PaymentState.TIMED_OUT
        timeouts = [call.kwargs["timeout"] for call in provider.session.get.call_args_list]
        assert timeouts == [5.0, 5.0, 2.0]


class TestErrors:
    def test_creation_4xx_is_not_retried(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(422, {"title": "Invalid"})],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
        )

        with pytest.raises(PaymentCreationError):
            _machine(config, provider, fake_clock, shown).run(REQUEST)
        assert len(provider.create_calls) == 1
        assert fake_clock.sleeps == []

    def test_creation_retries_reuse_idempotency_key(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(503, {"title": "busy"}), make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
        )

        result = _machine(config, provider, fake_clock, shown).run(REQUEST)

        assert result.succeeded
        assert len(provider.create_calls) == 2
        assert len(set(provider.create_calls)) == 1

    def test_token_5xx_is_retried(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            [make_response(502, {"error": "bad gateway"}), make_response(200, token_body)],
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
        )

        result = _machine(config, provider, fake_clock, shown).run(REQUEST)

        assert result.succeeded
        assert provider.token_calls == 2

    def test_retries_are_bounded(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(500, {"title": "oops"})],
        )

        with pytest.raises(TransientError):
            _machine(config, provider, fake_clock, shown).run(REQUEST)
        assert provider.status_calls == config.retry.max_retries + 1

    def test_404_after_creation_surfaces_immediately(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(404, {"title": "Not Found"})],
        )

        with pytest.raises(InconsistentStateError):
            _machine(config, provider, fake_clock, shown).run(REQUEST)
        assert provider.status_calls == 1

    def test_expiring_token_is_refreshed_between_polls(self, config, fake_clock, shown):
        provider = FakeProvider(
            [
                make_response(200, {"access_token": "short", "expires_in": 32}),
                make_response(200, {"access_token": "long", "expires_in": 3600}),
            ],
            [make_response(201, CREATED)],
            [
                make_response(200, {"id": "pay-1", "status": "authorizing"}),
                make_response(200, {"id": "pay-1", "status": "authorizing"}),
                make_response(200, {"id": "pay-1", "status": "executed"}),
            ],
        )

        result = _machine(config, provider, fake_clock, shown).run(REQUEST)

        assert result.succeeded
        assert provider.token_calls == 2
        last_auth = provider.session.get.call_args.kwargs["headers"]["Authorization"]
        assert last_auth == "Bearer long"


class TestTransitions:
    def test_terminal_states_have_no_exits(self):
        for state in TERMINAL_STATES:
            assert ALLOWED_TRANSITIONS[state] == frozenset()

    def test_cannot_leave_terminal_state(self, config, fake_clock, shown):
        machine = _machine(config, FakeProvider([None], [None], [None]), fake_clock, shown)
        machine.transition(PaymentState.CREATED)
        machine.transition(PaymentState.AUTHORIZED)
        machine.transition(PaymentState.EXECUTED)

        for state in PaymentState:
            with pytest.raises(InvalidTransitionError):
                machine.transition(state)
        assert machine.state is PaymentState.EXECUTED

    def test_must_start_in_created(self, config, fake_clock, shown):
        machine = _machine(config, FakeProvider([None], [None], [None]), fake_clock, shown)
        with pytest.raises(InvalidTransitionError):
            machine.transition(PaymentState.AUTHORIZED)

    def test_runs_only_once(self, config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
        )
        machine = _machine(config, provider, fake_clock, shown)
        machine.run(REQUEST)

        with pytest.raises(InvalidTransitionError):
            machine.run(REQUEST)


def _flow_response(next_action):
    return make_response(
        200, {"status": "authorizing", "authorization_flow": {"actions": {"next": next_action}}}
    )


PROVIDERS = {
    "type": "provider_selection",
    "providers": [
        {"id": "ob-first", "display_name": "First Bank", "country_code": "GB"},
        {"id": "ob-second", "display_name": "Second Bank", "country_code": "GB"},
    ],
}
REDIRECT = {"type": "redirect", "uri": "https://bank.example.com/consent"}


class TestDrivenAuthorization:
    @pytest.fixture
    def driven_config(self, config):
        return replace(config, drive_authorization=True)

    @staticmethod
    def _flow(config, fake_clock, shown, answers, printed=None):
        replies = iter(answers)
        return AuthorizationFlow(
            config,
            display=shown.append,
            clock=fake_clock,
            prompt=lambda _: next(replies),
            output=(printed if printed is not None else []).append,
        )

    def test_selects_provider_consents_and_shows_redirect(
        self, driven_config, fake_clock, token_body, shown
    ):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
            [
                _flow_response(PROVIDERS),
                _flow_response({"type": "consent"}),
                _flow_response(REDIRECT),
            ],
        )
        printed = []
        flow = self._flow(driven_config, fake_clock, shown, ["9", "2", "y"], printed)

        result = _machine(driven_config, provider, fake_clock, shown, flow=flow).run(REQUEST)

        assert result.succeeded
        assert [path for path, _, _ in provider.flow_calls] == [
            "",
            "/actions/provider-selection",
            "/actions/consent",
        ]
        assert provider.flow_calls[0][1]["redirect"] == {"return_uri": driven_config.redirect_uri}
        assert provider.flow_calls[1][1] == {"provider_id": "ob-second"}
        assert "  1. First Bank (GB)" in printed
        assert "Enter a number between 1 and 2" in printed
        assert shown == ["https://bank.example.com/consent"]

    def test_refused_consent_cancels(self, driven_config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
            [_flow_response({"type": "consent"})],
        )
        flow = self._flow(driven_config, fake_clock, shown, ["n"])

        result = _machine(driven_config, provider, fake_clock, shown, flow=flow).run(REQUEST)

        assert result.state is PaymentState.CANCELLED
        assert isinstance(result.error, AuthorizationDenied)
        assert provider.status_calls == 0
        assert len(provider.flow_calls) == 1

    def test_closed_prompt_cancels(self, driven_config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
            [_flow_response(PROVIDERS)],
        )
        flow = AuthorizationFlow(
            driven_config,
            display=shown.append,
            clock=fake_clock,
            prompt=MagicMock(side_effect=EOFError),
            output=[].append,
        )

        result = _machine(driven_config, provider, fake_clock, shown, flow=flow).run(REQUEST)

        assert result.state is PaymentState.CANCELLED

    def test_wait_skips_the_link_and_polls(self, driven_config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
            [_flow_response({"type": "wait"})],
        )
        flow = self._flow(driven_config, fake_clock, shown, [])

        result = _machine(driven_config, provider, fake_clock, shown, flow=flow).run(REQUEST)

        assert result.succeeded
        assert shown == []
        assert provider.status_calls == 1

    def test_flow_steps_are_retried_with_one_key(self, driven_config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
            [make_response(503, {"title": "busy"}), _flow_response(REDIRECT)],
        )
        flow = self._flow(driven_config, fake_clock, shown, [])

        result = _machine(driven_config, provider, fake_clock, shown, flow=flow).run(REQUEST)

        assert result.succeeded
        assert len(provider.flow_calls) == 2
        assert provider.flow_calls[0][2] == provider.flow_calls[1][2]
        assert len(fake_clock.sleeps) == 1

    def test_unsupported_step_is_fatal(self, driven_config, fake_clock, token_body, shown):
        provider = FakeProvider(
            _ok_token(token_body),
            [make_response(201, CREATED)],
            [make_response(200, {"id": "pay-1", "status": "executed"})],
            [_flow_response({"type": "form", "inputs": []})],
        )
        flow = self._flow(driven_config, fake_clock, shown, [])

        with pytest.raises(UnsupportedActionError):
            _machine(driven_config, provider, fake_clock, shown, flow=flow).run(REQUEST)
        assert provider.status_calls == 0
