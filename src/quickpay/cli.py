"""
Command-line interface for initiating a single bank payment.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Iterable, Optional, Sequence, Tuple

import requests

from .api import build_payment_request, create_state_machine, load_config
from .core.environment import DEFAULT_CONFIG_FILE
from .core.errors import (
    AuthError,
    AuthorizationDenied,
    AuthorizationTimeout,
    ConfigError,
    PaymentCreationError,
    PollTimeout,
    QuickPayError,
    SigningError,
    ValidationError,
)
from .core.payloads import SUPPORTED_CURRENCIES
from .core.state_machine import PaymentResult, PaymentState

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_VALIDATION = 2
EXIT_AUTH = 3
EXIT_REJECTED = 4
EXIT_TIMEOUT = 5

_STATE_EXIT_CODES = {
    PaymentState.EXECUTED: EXIT_OK,
    PaymentState.REJECTED: EXIT_REJECTED,
    PaymentState.FAILED: EXIT_REJECTED,
    PaymentState.CANCELLED: EXIT_REJECTED,
    PaymentState.TIMED_OUT: EXIT_TIMEOUT,
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )


def _env_override(value: str) -> Tuple[str, str]:
    if "=" not in value:
        raise argparse.ArgumentTypeError("Overrides must look like KEY=VALUE")
    key, val = value.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError("Override key must not be empty")
    return key, val


def _scan(value: str) -> Tuple[str, str]:
    parts = [part.strip() for part in value.split(",")]
    if len(parts) != 2 or not all(parts):
        raise argparse.ArgumentTypeError('SCAN must look like "SORT_CODE,ACCOUNT_NUMBER"')
    return parts[0], parts[1]


def _collect_overrides(pairs: Iterable[Tuple[str, str]]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, value in pairs:
        overrides[key] = value
    return overrides


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quickpay",
        description="Initiate an Open Banking payment and follow it to a final status",
    )
    parser.add_argument(
        "currency",
        type=str.upper,
        choices=SUPPORTED_CURRENCIES,
        help="Payment currency",
    )
    parser.add_argument("amount", help="Payment amount in currency minor units (e.g. pence)")
    parser.add_argument("-n", "--name", required=True, help="Name of the beneficiary")
    account = parser.add_mutually_exclusive_group(required=True)
    account.add_argument("-i", "--iban", help="Beneficiary IBAN")
    account.add_argument(
        "-s",
        "--scan",
        type=_scan,
        metavar="SORT_CODE,ACCOUNT",
        help='Sort code and account number, e.g. "010102,12345678"',
    )
    parser.add_argument("-r", "--reference", help="Payment reference (default: reference)")
    parser.add_argument("--payer-name", help="Name of the paying user")
    parser.add_argument("--payer-email", help="Email address of the paying user")
    parser.add_argument(
        "--config-file",
        default=str(DEFAULT_CONFIG_FILE),
        help=f"Path to the settings file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "--set",
        action="append",
        type=_env_override,
        metavar="KEY=VALUE",
        default=None,
        help="Override a QUICKPAY_* setting without editing the settings file",
    )
    parser.add_argument(
        "--no-listener",
        action="store_true",
        help="Only print the authorization link; do not wait for the redirect locally",
    )
    parser.add_argument(
        "--open-browser",
        action="store_true",
        help="Open the authorization link in the default browser",
    )
    parser.add_argument(
        "--hosted-page",
        action="store_true",
        help="Skip bank selection in the terminal and use the hosted payment page link",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser


def _raw_inputs(args: argparse.Namespace) -> dict[str, object]:
    sort_code, account_number = args.scan if args.scan else (None, None)
    return {
        "amount": args.amount,
        "currency": args.currency,
        "beneficiary_name": args.name,
        "iban": args.iban,
        "sort_code": sort_code,
        "account_number": account_number,
        "reference": args.reference,
        "payer_name": args.payer_name,
        "payer_email": args.payer_email,
    }


def exit_code_for_error(exc: QuickPayError) -> int:
    if isinstance(exc, ValidationError):
        return EXIT_VALIDATION
    if isinstance(exc, (AuthError, SigningError)):
        return EXIT_AUTH
    if isinstance(exc, (PaymentCreationError, AuthorizationDenied)):
        return EXIT_REJECTED
    if isinstance(exc, (AuthorizationTimeout, PollTimeout)):
        return EXIT_TIMEOUT
    return EXIT_ERROR


def run_cli(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)
    overrides = _collect_overrides(args.set or ())
    if args.no_listener:
        overrides["QUICKPAY_CALLBACK_LISTENER"] = "false"
    if args.open_browser:
        overrides["QUICKPAY_OPEN_BROWSER"] = "true"
    if args.hosted_page:
        overrides["QUICKPAY_DRIVE_AUTHORIZATION"] = "false"

    try:
        request = build_payment_request(_raw_inputs(args))
    except ValidationError as exc:
        logging.error("Invalid payment details: %s", exc)
        return EXIT_VALIDATION

    try:
        config = load_config(config_file=args.config_file, overrides=overrides)
    except ConfigError as exc:
        logging.error("Invalid configuration: %s", exc)
        return EXIT_ERROR

    try:
        machine = create_state_machine(config, session=requests.Session())
        result = machine.run(request)
    except QuickPayError as exc:
        logging.error("Payment failed: %s: %s", type(exc).__name__, exc)
        return exit_code_for_error(exc)
    except Exception as exc:  # noqa: BLE001
        logging.error("Payment failed unexpectedly: %s", exc)
        return EXIT_ERROR

    return _handle_result(result)


def _handle_result(result: PaymentResult) -> int:
    if result.succeeded:
        print(f"Payment {result.payment_id} executed")
        return EXIT_OK

    message = f"Payment {result.payment_id} {result.state.value}"
    if result.error is not None:
        message = f"{message}: {result.error}"
    print(message)
    if result.error is not None:
        return exit_code_for_error(result.error)
    return _STATE_EXIT_CODES.get(result.state, EXIT_ERROR)


def main(argv: Optional[Sequence[str]] = None) -> None:
    sys.exit(run_cli(argv))
