"""
Pydantic schemas for Card endpoints.

Card numbers and CVVs are NEVER returned in API responses. Only the masked
number (last four digits) is exposed, and money is rendered as strings with
exactly two fractional digits ("1000.00") so no client parses it as a float.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, field_validator, model_validator

from card_issuer.clock import as_utc
from card_issuer.models.card import Card, CardStatus
from card_issuer.schemas.common import (
    normalize_cvv,
    normalize_expiration,
    normalize_name,
    normalize_pan,
    parse_amount,
)

# Accepted input names per field (English and the legacy Spanish names)
CARD_CREATE_ALIASES = {
    "number": ("numero", "number", "pan", "card_number"),
    "holder_name": ("nombre", "nombre_titular", "name", "holder_name"),
    "expiration": ("fecha_venc", "vencimiento", "exp", "expiration"),
    "cvv": ("cvv", "num_seguridad"),
    "authorized_limit": ("limite", "monto_autorizado", "limit", "authorized_limit"),
    "available_balance": ("disponible", "available", "available_balance"),
    "status": ("estado", "status"),
}

CARD_UPDATE_ALIASES = {
    "status": ("estado", "status"),
    "available_balance": ("disponible", "available", "available_balance"),
}

_STATUS_ALIASES = {
    "activa": CardStatus.ACTIVE,
    "bloqueada": CardStatus.BLOCKED,
    "vencida": CardStatus.EXPIRED,
}


def _parse_status(value) -> CardStatus:
    raw = str(value).strip().lower()
    if raw in _STATUS_ALIASES:
        return _STATUS_ALIASES[raw]
    try:
        return CardStatus(raw)
    except ValueError:
        raise ValueError("INVALID_VALUE")


class CardCreateRequest(BaseModel):
    """Request body for POST /api/v1/cards."""
    number: str
    holder_name: str
    expiration: str
    cvv: str
    authorized_limit: Decimal
    available_balance: Decimal | None = None
    status: CardStatus = CardStatus.ACTIVE

    @field_validator("number", mode="before")
    @classmethod
    def _number(cls, value):
        return normalize_pan(value)

    @field_validator("holder_name", mode="before")
    @classmethod
    def _holder_name(cls, value):
        name = normalize_name(value)
        if len(name) < 2:
            raise ValueError("REQUIRED")
        return name[:120]

    @field_validator("expiration", mode="before")
    @classmethod
    def _expiration(cls, value):
        return normalize_expiration(value)

    @field_validator("cvv", mode="before")
    @classmethod
    def _cvv(cls, value):
        return normalize_cvv(value)

    @field_validator("authorized_limit", mode="before")
    @classmethod
    def _limit(cls, value):
        return parse_amount(value, allow_zero=True)

    @field_validator("available_balance", mode="before")
    @classmethod
    def _available(cls, value):
        if value is None or str(value).strip() == "":
            return None
        return parse_amount(value, allow_zero=True)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value):
        return _parse_status(value)


class CardUpdateRequest(BaseModel):
    """Request body for PATCH /api/v1/cards/{number}. Both fields optional."""
    status: CardStatus | None = None
    available_balance: Decimal | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, value):
        if value is None or str(value).strip() == "":
            return None
        return _parse_status(value)

    @field_validator("available_balance", mode="before")
    @classmethod
    def _available(cls, value):
        if value is None or str(value).strip() == "":
            return None
        return parse_amount(value, allow_zero=True)

    @model_validator(mode="after")
    def at_least_one_change(self):
        if self.status is None and self.available_balance is None:
            raise ValueError("NOTHING_TO_UPDATE")
        return self


class CardResponse(BaseModel):
    """Public representation of a card (masked — no full number or CVV)."""
    issuer: str
    number: str
    holder_name: str
    expiration: str
    authorized_limit: str
    available_balance: str
    status: CardStatus
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_card(cls, card: Card, issuer: str) -> "CardResponse":
        return cls(
            issuer=issuer,
            number=card.masked_number,
            holder_name=card.holder_name,
            expiration=card.expiration,
            authorized_limit=str(card.authorized_limit),
            available_balance=str(card.available_balance),
            status=card.status,
            created_at=as_utc(card.created_at),
            updated_at=as_utc(card.updated_at),
        )
