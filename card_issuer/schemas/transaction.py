"""
Pydantic schemas for authorizations, payments and ledger listings.

All monetary amounts are strings with exactly two fractional digits.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, field_validator

from card_issuer.models.card import mask_last_four
from card_issuer.models.transaction import (
    DenialReason,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from card_issuer.money import format_cents
from card_issuer.schemas.common import (
    normalize_cvv,
    normalize_expiration,
    normalize_idempotency_key,
    normalize_merchant,
    normalize_name,
    normalize_pan,
    parse_amount,
)
from card_issuer.services.decisions import (
    AuthorizationDecision,
    IdempotencyConflict,
    PaymentDecision,
)

AUTHORIZATION_ALIASES = {
    "card": ("tarjeta", "card", "card_number"),
    "cvv": ("cvv", "num_seguridad"),
    "amount": ("monto", "amount"),
    "merchant": ("tienda", "merchant"),
    "name": ("nombre", "name"),
    "expiration": ("fecha_venc", "vencimiento", "exp", "expiration"),
}

PAYMENT_ALIASES = {
    "amount": ("monto", "amount"),
    "reference": ("referencia", "reference"),
}

IDEMPOTENCY_KEY_ALIASES = ("idempotencyKey", "idempotency_key")


def body_idempotency_key(data: dict) -> str | None:
    """Idempotency key sent in the body, used when the header is absent."""
    for name in IDEMPOTENCY_KEY_ALIASES:
        if data.get(name) is not None:
            return normalize_idempotency_key(data[name])
    return None


class AuthorizationRequest(BaseModel):
    """Request body for POST /api/v1/authorizations."""
    card: str
    cvv: str
    amount: Decimal
    merchant: str
    # Accepted and validated for terminal compatibility; not part of the decision
    name: str | None = None
    expiration: str | None = None

    @field_validator("card", mode="before")
    @classmethod
    def _card(cls, value):
        return normalize_pan(value)

    @field_validator("cvv", mode="before")
    @classmethod
    def _cvv(cls, value):
        return normalize_cvv(value)

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value):
        return parse_amount(value)

    @field_validator("merchant", mode="before")
    @classmethod
    def _merchant(cls, value):
        return normalize_merchant(value)

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, value):
        if value is None:
            return None
        name = normalize_name(value)
        if len(name) < 2:
            raise ValueError("EMPTY_AFTER_NORMALIZATION")
        return name

    @field_validator("expiration", mode="before")
    @classmethod
    def _expiration(cls, value):
        if value is None or str(value).strip() == "":
            return None
        return normalize_expiration(value)


class PaymentRequest(BaseModel):
    """Request body for POST /api/v1/cards/{number}/payments."""
    amount: Decimal
    reference: str = "PAYMENT"

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value):
        return parse_amount(value)

    @field_validator("reference", mode="before")
    @classmethod
    def _reference(cls, value):
        reference = str(value or "").strip()[:64]
        return reference or "PAYMENT"


class AuthorizationResponse(BaseModel):
    issuer: str
    status: TransactionStatus
    card: str
    authorization_code: str
    reason: DenialReason | None = None
    created_at: datetime

    @classmethod
    def from_decision(cls, decision: AuthorizationDecision, issuer: str) -> "AuthorizationResponse":
        return cls(
            issuer=issuer,
            status=decision.status,
            card=decision.masked_card,
            authorization_code=decision.authorization_code,
            reason=decision.reason,
            created_at=decision.created_at,
        )


class PaymentResponse(BaseModel):
    issuer: str
    card: str
    amount: str
    available_balance: str
    reference: str
    created_at: datetime

    @classmethod
    def from_decision(cls, decision: PaymentDecision, issuer: str) -> "PaymentResponse":
        return cls(
            issuer=issuer,
            card=decision.masked_card,
            amount=format_cents(decision.amount_cents),
            available_balance=format_cents(decision.available_cents),
            reference=decision.reference,
            created_at=decision.created_at,
        )


def conflict_details(conflict: IdempotencyConflict) -> dict:
    """Error details for a 409: the masked parameters of the key's first use."""
    return {
        "previous": {
            "card": conflict.masked_prior_card,
            "amount": format_cents(conflict.prior_amount_cents),
            "merchant": conflict.prior_merchant,
        }
    }


class TransactionResponse(BaseModel):
    """Public representation of a ledger row."""
    id: int
    card: str
    kind: TransactionKind
    amount: str
    merchant: str
    idempotency_key: str | None
    status: TransactionStatus
    denial_reason: DenialReason | None
    authorization_code: str
    created_at: datetime

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "TransactionResponse":
        return cls(
            id=txn.id,
            card=mask_last_four(txn.card.pan_last_four),
            kind=txn.kind,
            amount=format_cents(txn.amount_cents),
            merchant=txn.merchant,
            idempotency_key=txn.idempotency_key,
            status=txn.status,
            denial_reason=txn.denial_reason,
            authorization_code=txn.authorization_code,
            created_at=txn.created_at_utc,
        )
