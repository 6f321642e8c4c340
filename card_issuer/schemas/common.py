"""
Shared input normalization for request schemas.

Requests arrive as JSON or XML and from terminals that format card data in
many ways ("4111 1111-1111 1111", "12/29", "José Pérez"). These helpers turn
raw values into one canonical form, or raise ValueError with a reason code
that is reported back as {"field": ..., "reason": CODE}.
"""

import re
import unicodedata
from decimal import Decimal
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from card_issuer.exceptions import RequestValidationFailed
from card_issuer.money import to_cents, from_cents

# at most 9,999,999,999.99; cents must fit a 64-bit column
_AMOUNT_PATTERN = re.compile(r"^\d{1,10}(\.\d{1,2})?$")
_MERCHANT_STRIP = re.compile(r"[^A-Za-z0-9_]")

ModelT = TypeVar("ModelT", bound=BaseModel)


def clean_digits(value) -> str:
    return re.sub(r"\D+", "", str(value if value is not None else ""))


def luhn_ok(pan: str) -> bool:
    total = 0
    double = False
    for char in reversed(pan):
        digit = ord(char) - 48
        if double:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
        double = not double
    return total % 10 == 0


def normalize_pan(value) -> str:
    pan = clean_digits(value)
    if len(pan) != 16 or not luhn_ok(pan):
        raise ValueError("INVALID_FORMAT_OR_LUHN")
    return pan


def normalize_cvv(value) -> str:
    cvv = clean_digits(value)
    if not 3 <= len(cvv) <= 4:
        raise ValueError("INVALID_FORMAT")
    return cvv


def normalize_name(value) -> str:
    """Strip diacritics, drop everything but letters/digits, upper-case."""
    decomposed = unicodedata.normalize("NFD", str(value or ""))
    without_marks = "".join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r"[^A-Za-z0-9]", "", without_marks).upper()


def normalize_expiration(value) -> str:
    """
    Accept YYYYMM, MMYY or MM/YY and return YYYYMM.

    Two-digit years up to 79 are 20xx, the rest 19xx.
    """
    raw = str(value or "").strip()
    if re.fullmatch(r"\d{6}", raw):
        normalized = raw
    elif re.fullmatch(r"\d{4}", raw) or re.fullmatch(r"\d{2}/\d{2}", raw):
        month, year = raw[:2], raw[-2:]
        century = "20" if int(year) <= 79 else "19"
        normalized = f"{century}{year}{month}"
    else:
        raise ValueError("INVALID_FORMAT")
    if not 1 <= int(normalized[4:]) <= 12:
        raise ValueError("INVALID_FORMAT")
    return normalized


def normalize_merchant(value) -> str:
    merchant = _MERCHANT_STRIP.sub("", re.sub(r"\s+", "", str(value or ""))).upper()
    if not merchant:
        raise ValueError("EMPTY_AFTER_NORMALIZATION")
    return merchant[:64]


def parse_amount(value, allow_zero: bool = False) -> Decimal:
    """
    Parse a positive decimal with at most ten integer and two fractional digits.

    Floats are rejected outright: they may already have lost the exact value.
    """
    if isinstance(value, (bool, float)):
        raise ValueError("INVALID_AMOUNT")
    raw = str(value if value is not None else "").strip()
    if not _AMOUNT_PATTERN.match(raw):
        raise ValueError("INVALID_AMOUNT")
    cents = to_cents(raw)
    if cents < 0 or (cents == 0 and not allow_zero):
        raise ValueError("INVALID_AMOUNT")
    return from_cents(cents)


def normalize_idempotency_key(value) -> str | None:
    """Trim, cap at 255 characters, and treat empty as no key."""
    key = str(value if value is not None else "").strip()[:255]
    return key or None


def _reason(error: dict) -> str:
    if error["type"] == "missing":
        return "REQUIRED"
    if error["type"] == "value_error":
        cause = error.get("ctx", {}).get("error")
        if cause is not None and str(cause).isupper():
            return str(cause)
    return "INVALID_FORMAT"


def parse_request(model: type[ModelT], data: dict) -> ModelT:
    """
    Validate raw request data into a schema.

    Raises:
        RequestValidationFailed: With one {"field", "reason"} entry per error.
    """
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = [
            {
                "field": ".".join(str(p) for p in err["loc"]) or "body",
                "reason": _reason(err),
            }
            for err in exc.errors()
        ]
        raise RequestValidationFailed(fields)
