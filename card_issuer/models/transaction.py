"""
Transaction model — the append-only ledger of purchase and payment attempts.

Every authorization attempt against a known card and every payment creates
exactly one Transaction row. Rows are never updated or deleted; the ledger is
the audit trail and also the idempotency cache: a retried request with the
same Idempotency-Key is answered by re-reading the row written for it.

Key fields:
  - kind: "purchase" (debit, cardholder-initiated) or "payment" (credit,
    issuer-initiated, capped at the authorized limit)
  - amount_cents: Always positive (direction is implied by kind)
  - status: "approved" or "denied" — never left pending
  - denial_reason: Set iff denied (INVALID_CVV, INSUFFICIENT_FUNDS, ...)
  - authorization_code: 6 digits when approved, "000000" when denied

Idempotency claims:
  (kind, idempotency_key, idempotency_generation) is unique. The first use of
  a key is generation 0. When a key is reused after its retention window has
  elapsed, the new attempt claims generation N+1. The constraint makes the
  store reject the loser of two concurrent first uses of the same claim.
  NULL keys never collide, so requests without a key are unconstrained.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    String,
    BigInteger,
    Integer,
    DateTime,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Enum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from card_issuer.clock import as_utc
from card_issuer.database import Base
from card_issuer.models.card import Card

ZERO_AUTHORIZATION_CODE = "000000"
IDEMPOTENCY_CLAIM_CONSTRAINT = "uq_transactions_idempotency_claim"


def _values(members):
    return [m.value for m in members]


class TransactionKind(str, enum.Enum):
    PURCHASE = "purchase"
    PAYMENT = "payment"


class TransactionStatus(str, enum.Enum):
    APPROVED = "approved"
    DENIED = "denied"


class DenialReason(str, enum.Enum):
    INVALID_CVV = "INVALID_CVV"
    UNKNOWN_CARD = "UNKNOWN_CARD"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    CARD_BLOCKED = "CARD_BLOCKED"
    CARD_EXPIRED = "CARD_EXPIRED"


class Transaction(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_transactions_positive_amount"),
        UniqueConstraint(
            "kind",
            "idempotency_key",
            "idempotency_generation",
            name=IDEMPOTENCY_CLAIM_CONSTRAINT,
        ),
    )

    # Integer autoincrement: ids are assigned monotonically
    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    card_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("cards.id"),
        nullable=False,
        index=True,
    )

    kind: Mapped[TransactionKind] = mapped_column(
        Enum(TransactionKind, native_enum=False, length=10, values_callable=_values),
        nullable=False,
    )

    amount_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    # Merchant label for purchases, payment reference for payments
    merchant: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    idempotency_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    idempotency_generation: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, native_enum=False, length=10, values_callable=_values),
        nullable=False,
    )

    denial_reason: Mapped[DenialReason | None] = mapped_column(
        Enum(DenialReason, native_enum=False, length=32, values_callable=_values),
        nullable=True,
    )

    authorization_code: Mapped[str] = mapped_column(
        String(6),
        nullable=False,
        default=ZERO_AUTHORIZATION_CODE,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )

    # Eager-loaded: async sessions cannot lazy-load, and every reader of a
    # ledger row needs the card's fingerprint or last four digits.
    card: Mapped[Card] = relationship(lazy="joined")

    @property
    def created_at_utc(self) -> datetime:
        return as_utc(self.created_at)
