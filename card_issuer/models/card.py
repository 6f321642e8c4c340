"""
Card model — an issued card with its authorized limit and available balance.

Card numbers (PANs) are encrypted at rest using Fernet (AES-128-CBC +
HMAC-SHA256). Because Fernet ciphertexts are randomized, lookups by PAN go
through `pan_fingerprint`, a keyed HMAC of the number with a unique index.
Only the last four digits are stored in plaintext for display.

The CVV is never stored in any recoverable form: `cvv_hmac` holds a peppered
HMAC digest which the credential verifier recomputes and compares.

Balance invariant:
  0 <= available_balance_cents <= authorized_limit_cents

  It is enforced by a CHECK constraint, so a write that would break it is
  rejected by the store before commit even if a code path forgot to check.
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import String, BigInteger, DateTime, LargeBinary, Enum, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from card_issuer.database import Base
from card_issuer.money import from_cents


class CardStatus(str, enum.Enum):
    """Card lifecycle status. Only ACTIVE cards can be debited."""
    ACTIVE = "active"
    BLOCKED = "blocked"
    EXPIRED = "expired"


def mask_last_four(last_four: str) -> str:
    """Render a card number showing only its last four digits."""
    return f"****-****-****-{last_four}"


class Card(Base):
    __tablename__ = "cards"

    __table_args__ = (
        CheckConstraint(
            "authorized_limit_cents >= 0",
            name="ck_cards_non_negative_limit",
        ),
        CheckConstraint(
            "available_balance_cents >= 0 "
            "AND available_balance_cents <= authorized_limit_cents",
            name="ck_cards_available_within_limit",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Keyed HMAC of the PAN; deterministic, so it can be indexed and queried
    pan_fingerprint: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )

    # Full card number, Fernet-encrypted
    pan_encrypted: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
    )

    # Last four digits in plaintext for display ("****-****-****-4242")
    pan_last_four: Mapped[str] = mapped_column(
        String(4),
        nullable=False,
    )

    # Normalized holder name (upper case, no diacritics or punctuation)
    holder_name: Mapped[str] = mapped_column(
        String(120),
        nullable=False,
    )

    # YYYYMM
    expiration: Mapped[str] = mapped_column(
        String(6),
        nullable=False,
    )

    cvv_hmac: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    authorized_limit_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    available_balance_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    status: Mapped[CardStatus] = mapped_column(
        Enum(
            CardStatus,
            native_enum=False,
            length=10,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=CardStatus.ACTIVE,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    @property
    def masked_number(self) -> str:
        return mask_last_four(self.pan_last_four)

    @property
    def authorized_limit(self) -> Decimal:
        return from_cents(self.authorized_limit_cents)

    @property
    def available_balance(self) -> Decimal:
        return from_cents(self.available_balance_cents)
