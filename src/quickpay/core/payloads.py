"""
Validation of payment inputs and construction of the provider request body.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .errors import ValidationError

__all__ = [
    "DEFAULT_REFERENCE",
    "IBAN_LENGTHS",
    "SUPPORTED_CURRENCIES",
    "PaymentRequest",
    "PaymentRequestBuilder",
    "iban_is_valid",
]

SUPPORTED_CURRENCIES = ("GBP", "EUR")

DEFAULT_REFERENCE = "reference"
MAX_REFERENCE_LENGTH = 35

IBAN_LENGTHS = {
    "AD": 24, "AE": 23, "AL": 28, "AT": 20, "AZ": 28, "BA": 20, "BE": 16,
    "BG": 22, "BH": 22, "BR": 29, "BY": 28, "CH": 21, "CR": 22, "CY": 28,
    "CZ": 24, "DE": 22, "DK": 18, "DO": 28, "EE": 20, "EG": 29, "ES": 24,
    "FI": 18, "FO": 18, "FR": 27, "GB": 22, "GE": 22, "GI": 23, "GL": 18,
    "GR": 27, "GT": 28, "HR": 21, "HU": 28, "IE": 22, "IL": 23, "IQ": 23,
    "IS": 26, "IT": 27, "JO": 30, "KW": 30, "KZ": 20, "LB": 28, "LC": 32,
    "LI": 21, "LT": 20, "LU": 20, "LV": 21, "MC": 27, "MD": 24, "ME": 22,
    "MK": 19, "MR": 27, "MT": 31, "MU": 30, "NL": 18, "NO": 15, "PK": 24,
    "PL": 28, "PS": 29, "PT": 25, "QA": 29, "RO": 24, "RS": 22, "SA": 24,
    "SC": 31, "SE": 24, "SI": 19, "SK": 24, "SM": 27, "TN": 24, "TR": 26,
    "UA": 29, "VA": 22, "VG": 24, "XK": 20,
}

_IBAN_SHAPE = re.compile(r"^[A-Z]{2}[0-9]{2}[A-Z0-9]+$")
_SORT_CODE = re.compile(r"^[0-9]{6}$")
_ACCOUNT_NUMBER = re.compile(r"^[0-9]{8}$")


def _iban_problem(iban: str) -> Optional[str]:
    if not _IBAN_SHAPE.match(iban):
        return "must start with a country code and two check digits"
    expected = IBAN_LENGTHS.get(iban[:2])
    if expected is None:
        return f"country {iban[:2]} does not use IBANs"
    if len(iban) != expected:
        return f"{iban[:2]} IBANs are {expected} characters, got {len(iban)}"
    rearranged = iban[4:] + iban[:4]
    digits = "".join(str(int(ch, 36)) for ch in rearranged)
    if int(digits) % 97 != 1:
        return "checksum does not match"
    return None


def iban_is_valid(iban: str) -> bool:
    return _iban_problem(iban.replace(" ", "").upper()) is None


@dataclass(frozen=True)
class PaymentRequest:
    """
    A validated payment. Built once per run by :class:`PaymentRequestBuilder`.

    The beneficiary account is identified either by ``beneficiary_iban`` or
    by ``sort_code`` and ``account_number``, never both.
    """

    amount: int
    currency: str
    beneficiary_name: str
    beneficiary_iban: Optional[str] = None
    sort_code: Optional[str] = None
    account_number: Optional[str] = None
    reference: str = DEFAULT_REFERENCE
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None

    def account_identifier(self) -> Dict[str, str]:
        if self.beneficiary_iban is not None:
            return {"type": "iban", "iban": self.beneficiary_iban}
        return {
            "type": "sort_code_account_number",
            "sort_code": self.sort_code or "",
            "account_number": self.account_number or "",
        }

    def to_payload(self) -> Dict[str, Any]:
        """Serialize into the body of ``POST /v3/payments``."""
        user: Dict[str, Any] = {}
        if self.payer_name is not None:
            user["name"] = self.payer_name
        if self.payer_email is not None:
            user["email"] = self.payer_email
        return {
            "amount_in_minor": self.amount,
            "currency": self.currency,
            "payment_method": {
                "type": "bank_transfer",
                "provider_selection": {
                    "type": "user_selected",
                    "scheme_selection": {
                        "type": "instant_preferred",
                        "allow_remitter_fee": False,
                    },
                },
                "beneficiary": {
                    "type": "external_account",
                    "account_holder_name": self.beneficiary_name,
                    "reference": self.reference,
                    "account_identifier": self.account_identifier(),
                },
            },
            "user": user,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PaymentRequest":
        beneficiary = payload["payment_method"]["beneficiary"]
        identifier = beneficiary["account_identifier"]
        user = payload.get("user") or {}
        return cls(
            amount=payload["amount_in_minor"],
            currency=payload["currency"],
            beneficiary_name=beneficiary["account_holder_name"],
            beneficiary_iban=identifier.get("iban"),
            sort_code=identifier.get("sort_code"),
            account_number=identifier.get("account_number"),
            reference=beneficiary["reference"],
            payer_name=user.get("name"),
            payer_email=user.get("email"),
        )


class PaymentRequestBuilder:
    """
    Turns raw operator input into a :class:`PaymentRequest`.

    Fields are checked left to right (amount, currency, beneficiary name,
    account identifier, reference) and the first problem is raised as a
    :class:`ValidationError` naming the field.
    """

    def __init__(self, supported_currencies: tuple[str, ...] = SUPPORTED_CURRENCIES) -> None:
        self.supported_currencies = supported_currencies

    def build(self, raw_inputs: Mapping[str, Any]) -> PaymentRequest:
        amount = self._amount(raw_inputs.get("amount"))
        currency = self._currency(raw_inputs.get("currency"))
        name = self._text(raw_inputs.get("beneficiary_name"), "beneficiary_name")
        iban, sort_code, account_number = self._account(raw_inputs)
        reference = self._reference(raw_inputs.get("reference"))
        return PaymentRequest(
            amount=amount,
            currency=currency,
            beneficiary_name=name,
            beneficiary_iban=iban,
            sort_code=sort_code,
            account_number=account_number,
            reference=reference,
            payer_name=self._optional_text(raw_inputs.get("payer_name")),
            payer_email=self._optional_text(raw_inputs.get("payer_email")),
        )

    @staticmethod
    def _amount(raw: Any) -> int:
        if isinstance(raw, bool) or raw is None:
            raise ValidationError("amount", "must be a positive integer in minor units")
        if isinstance(raw, str):
            digits = raw.strip()
            if not (digits.isascii() and digits.isdigit()):
                raise ValidationError(
                    "amount", f"must be a positive integer in minor units, got {raw!r}"
                )
            raw = int(digits)
        if not isinstance(raw, int):
            raise ValidationError(
                "amount", f"must be a positive integer in minor units, got {raw!r}"
            )
        if raw <= 0:
            raise ValidationError("amount", "must be greater than zero")
        return raw

    def _currency(self, raw: Any) -> str:
        code = str(raw or "").strip().upper()
        if code not in self.supported_currencies:
            raise ValidationError(
                "currency",
                f"{code or raw!r} is not supported; use one of {', '.join(self.supported_currencies)}",
            )
        return code

    @staticmethod
    def _text(raw: Any, field_name: str) -> str:
        value = str(raw or "").strip()
        if not value:
            raise ValidationError(field_name, "must not be empty")
        return value

    @staticmethod
    def _optional_text(raw: Any) -> Optional[str]:
        value = str(raw or "").strip()
        return value or None

    @staticmethod
    def _account(
        raw_inputs: Mapping[str, Any],
    ) -> tuple[Optional[str], Optional[str], Optional[str]]:
        raw_iban = raw_inputs.get("iban")
        raw_sort_code = raw_inputs.get("sort_code")
        raw_account = raw_inputs.get("account_number")

        if raw_iban and (raw_sort_code or raw_account):
            raise ValidationError("iban", "provide either an IBAN or a sort code and account number")

        if raw_iban:
            iban = str(raw_iban).replace(" ", "").upper()
            problem = _iban_problem(iban)
            if problem is not None:
                raise ValidationError("iban", problem)
            return iban, None, None

        if raw_sort_code or raw_account:
            sort_code = str(raw_sort_code or "").replace("-", "").strip()
            if not _SORT_CODE.match(sort_code):
                raise ValidationError("sort_code", "must be six digits")
            account_number = str(raw_account or "").strip()
            if not _ACCOUNT_NUMBER.match(account_number):
                raise ValidationError("account_number", "must be eight digits")
            return None, sort_code, account_number

        raise ValidationError("iban", "missing account identifier")

    @staticmethod
    def _reference(raw: Any) -> str:
        if raw is None:
            return DEFAULT_REFERENCE
        value = str(raw).strip()
        if not value:
            raise ValidationError("reference", "must not be empty")
        if len(value) > MAX_REFERENCE_LENGTH:
            raise ValidationError(
                "reference", f"must be at most {MAX_REFERENCE_LENGTH} characters"
            )
        return value
