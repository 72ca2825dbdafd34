"""
Minimal script that uses the public API to pay a beneficiary by IBAN.
"""

from __future__ import annotations

import argparse
import logging
import sys

from quickpay import ConfigError, QuickPayError, ValidationError, send_payment


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send a quickpay payment using the SDK API")
    parser.add_argument("--amount", type=int, default=100, help="Amount in minor units")
    parser.add_argument("--currency", default="EUR", help="ISO 4217 currency code")
    parser.add_argument("--iban", default="NL84INGB2266765221", help="Beneficiary IBAN")
    parser.add_argument("--name", default="Ben Eficiary", help="Beneficiary name")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )

    try:
        result = send_payment(
            {
                "amount": args.amount,
                "currency": args.currency,
                "iban": args.iban,
                "beneficiary_name": args.name,
            }
        )
    except (ConfigError, ValidationError) as exc:
        logging.error("Cannot start payment: %s", exc)
        return 1
    except QuickPayError as exc:
        logging.error("Payment failed: %s", exc)
        return 1

    if result.succeeded:
        logging.info("Payment %s executed", result.payment_id)
        return 0

    logging.error("Payment %s ended as %s: %s", result.payment_id, result.state.value, result.error)
    return 1


if __name__ == "__main__":
    sys.exit(main())
