"""
User-facing authorization step.

The end user picks a bank, gives consent and then visits the bank
authorization link. When the configured redirect URI points at this machine,
a one-shot HTTP listener waits for the provider to redirect back, bounded by
an explicit deadline.
"""

from __future__ import annotations

import enum
import logging
import socket
import time
import webbrowser
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable, Dict, Mapping, Optional, Sequence
from urllib.parse import parse_qsl, quote, urlsplit

from .client import Payment, Provider
from .config import QuickPayConfig
from .errors import AuthorizationDenied, AuthorizationTimeout

__all__ = [
    "AuthorizationFlow",
    "AuthorizationOutcome",
    "OutcomeKind",
]

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}

_ACK_PAGE = (
    "<!DOCTYPE html><html><head><title>quickpay</title></head>"
    "<body><h1>Authorization received</h1>"
    "<p>You can close this window and return to the terminal.</p></body></html>"
)


class OutcomeKind(enum.Enum):
    COMPLETED = "completed"
    LINK_DISPLAYED = "link_displayed"
    NOT_REQUIRED = "not_required"


@dataclass(frozen=True)
class AuthorizationOutcome:
    kind: OutcomeKind
    uri: Optional[str] = None
    params: Mapping[str, str] = field(default_factory=dict)


def _print_link(uri: str) -> None:
    print(f"Authorisation link: \n{uri}\n", flush=True)


class _CallbackServer(HTTPServer):
    allow_reuse_address = True

    def __init__(self, address: tuple[str, int], expected_path: str, payment_id: str) -> None:
        if ":" in address[0]:
            self.address_family = socket.AF_INET6
        self.expected_path = expected_path
        self.payment_id = payment_id
        self.result: Optional[Dict[str, str]] = None
        super().__init__(address, _CallbackHandler)


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackServer
    timeout = 5

    def do_GET(self) -> None:  # noqa: N802
        parts = urlsplit(self.path)
        if parts.path != self.server.expected_path:
            self._reply(404, "Not found")
            return
        params = dict(parse_qsl(parts.query))
        returned_id = params.get("payment_id")
        if returned_id is not None and returned_id != self.server.payment_id:
            logging.warning("Ignoring redirect for unrelated payment %s", returned_id)
            self._reply(400, "Unexpected payment id")
            return
        self.server.result = params
        self._reply(200, _ACK_PAGE, content_type="text/html; charset=utf-8")

    def _reply(self, status: int, body: str, *, content_type: str = "text/plain") -> None:
        encoded = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logging.debug("callback listener: " + format, *args)


class AuthorizationFlow:
    """
    Gets the end user through the bank authorization for one payment.
    """

    def __init__(
        self,
        config: QuickPayConfig,
        *,
        display: Callable[[str], None] = _print_link,
        open_browser: Optional[Callable[[str], object]] = None,
        clock: Callable[[], float] = time.monotonic,
        prompt: Callable[[str], str] = input,
        output: Callable[[str], None] = print,
    ) -> None:
        self.config = config
        self._display = display
        self._open_browser = open_browser or webbrowser.open
        self._clock = clock
        self._prompt = prompt
        self._output = output

    def choose_provider(self, providers: Sequence[Provider]) -> Provider:
        """
        Ask the user which bank to pay from.

        Raises :class:`AuthorizationDenied` when there is nothing to choose
        from or the user closes the prompt.
        """
        if not providers:
            raise AuthorizationDenied("no providers are available for this payment")
        for index, provider in enumerate(providers, start=1):
            self._output(f"{index:>3}. {provider.label}")
        while True:
            try:
                answer = self._prompt("Select provider: ").strip()
            except EOFError:
                raise AuthorizationDenied("no provider was selected") from None
            if answer.isascii() and answer.isdigit() and 1 <= int(answer) <= len(providers):
                provider = providers[int(answer) - 1]
                logging.info("Selected provider %s", provider.id)
                return provider
            self._output(f"Enter a number between 1 and {len(providers)}")

    def confirm_consent(self) -> bool:
        try:
            answer = self._prompt("Submit consent? [y/N] ")
        except EOFError:
            return False
        return answer.strip().lower() in {"y", "yes"}

    def authorization_link(self, payment: Payment) -> Optional[str]:
        """
        Return the link the user must visit, building a hosted payment page
        link from the resource token when the provider sent no URI.
        """
        if payment.authorization_uri:
            return payment.authorization_uri
        if payment.resource_token:
            return (
                f"{self.config.hpp_url}/payments#payment_id={quote(payment.id, safe='')}"
                f"&resource_token={quote(payment.resource_token, safe='')}"
                f"&return_uri={quote(self.config.redirect_uri, safe='')}"
            )
        return None

    def uses_listener(self) -> bool:
        host = urlsplit(self.config.redirect_uri).hostname or ""
        return self.config.callback_listener and host in LOOPBACK_HOSTS

    def authorize(
        self,
        payment: Payment,
        timeout: Optional[float] = None,
    ) -> AuthorizationOutcome:
        """
        Send the user to the authorization link and, when listening locally,
        wait for the redirect.

        Raises
        ------
        AuthorizationDenied
            The redirect carried an ``error`` parameter.
        AuthorizationTimeout
            No redirect arrived within ``timeout`` seconds.
        """
        link = self.authorization_link(payment)
        if link is None:
            logging.info("Payment %s needs no user authorization", payment.id)
            return AuthorizationOutcome(kind=OutcomeKind.NOT_REQUIRED)

        if not self.uses_listener():
            self._show(link)
            return AuthorizationOutcome(kind=OutcomeKind.LINK_DISPLAYED, uri=link)

        if timeout is None:
            timeout = self.config.authorization_timeout_seconds
        params = self._wait_for_redirect(payment, link, timeout)
        if params is None:
            return AuthorizationOutcome(kind=OutcomeKind.LINK_DISPLAYED, uri=link)

        error = params.get("error")
        if error:
            raise AuthorizationDenied(params.get("error_description") or error)
        logging.info("Authorization redirect received for payment %s", payment.id)
        return AuthorizationOutcome(kind=OutcomeKind.COMPLETED, uri=link, params=params)

    def _show(self, link: str) -> None:
        self._display(link)
        if self.config.open_browser:
            self._open_browser(link)

    def _wait_for_redirect(
        self, payment: Payment, link: str, timeout: float
    ) -> Optional[Dict[str, str]]:
        redirect = urlsplit(self.config.redirect_uri)
        host = "127.0.0.1" if redirect.hostname == "localhost" else redirect.hostname or ""
        port = redirect.port or (443 if redirect.scheme == "https" else 80)
        expected_path = redirect.path or "/"
        deadline = self._clock() + timeout

        try:
            server = _CallbackServer((host, port), expected_path, payment.id)
        except OSError as exc:
            logging.warning(
                "Cannot listen for the redirect on %s:%d (%s); showing the link only",
                host,
                port,
                exc,
            )
            self._show(link)
            return None

        with server:
            logging.info("Waiting for authorization redirect on %s:%d%s", host, port, expected_path)
            self._show(link)
            while server.result is None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise AuthorizationTimeout(
                        f"No authorization redirect for payment {payment.id} "
                        f"within {timeout:g}s"
                    )
                server.timeout = remaining
                server.handle_request()
            return server.result
