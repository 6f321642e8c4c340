"""
Typed outcomes of the authorization engine.

Denials and idempotency conflicts are normal results, not exceptions, so
they are modelled as values the caller inspects and maps onto its own
transport (HTTP status, JSON/XML body). Every value here only ever carries
the masked card number.
"""

from dataclasses import dataclass
from datetime import datetime

from card_issuer.clock import utcnow
from card_issuer.models.card import mask_last_four
from card_issuer.models.transaction import (
    ZERO_AUTHORIZATION_CODE,
    DenialReason,
    Transaction,
    TransactionStatus,
)

IDEMPOTENCY_CONFLICT_CODE = "IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PARAMETERS"


@dataclass(frozen=True)
class AuthorizationDecision:
    """
    Approved or denied purchase attempt.

    transaction_id is None only for unknown-card denials, which have no card
    to reference and are therefore not written to the ledger.
    """

    status: TransactionStatus
    masked_card: str
    authorization_code: str
    reason: DenialReason | None
    created_at: datetime
    transaction_id: int | None
    replayed: bool = False

    @property
    def approved(self) -> bool:
        return self.status == TransactionStatus.APPROVED

    @property
    def persisted(self) -> bool:
        return self.transaction_id is not None

    @classmethod
    def from_transaction(cls, txn: Transaction, replayed: bool = False) -> "AuthorizationDecision":
        return cls(
            status=txn.status,
            masked_card=mask_last_four(txn.card.pan_last_four),
            authorization_code=txn.authorization_code,
            reason=txn.denial_reason,
            created_at=txn.created_at_utc,
            transaction_id=txn.id,
            replayed=replayed,
        )

    @classmethod
    def unknown_card(cls, card_number: str) -> "AuthorizationDecision":
        return cls(
            status=TransactionStatus.DENIED,
            masked_card=mask_last_four(card_number[-4:]),
            authorization_code=ZERO_AUTHORIZATION_CODE,
            reason=DenialReason.UNKNOWN_CARD,
            created_at=utcnow(),
            transaction_id=None,
        )


@dataclass(frozen=True)
class PaymentDecision:
    """An applied (or replayed) payment and the card's resulting balance."""

    masked_card: str
    amount_cents: int
    reference: str
    available_cents: int
    created_at: datetime
    transaction_id: int
    replayed: bool = False

    @classmethod
    def from_transaction(cls, txn: Transaction, available_cents: int, replayed: bool = False) -> "PaymentDecision":
        return cls(
            masked_card=mask_last_four(txn.card.pan_last_four),
            amount_cents=txn.amount_cents,
            reference=txn.merchant,
            available_cents=available_cents,
            created_at=txn.created_at_utc,
            transaction_id=txn.id,
            replayed=replayed,
        )


@dataclass(frozen=True)
class IdempotencyConflict:
    """The key was first used with different (card, amount, merchant)."""

    masked_prior_card: str
    prior_amount_cents: int
    prior_merchant: str
    code: str = IDEMPOTENCY_CONFLICT_CODE

    @classmethod
    def from_transaction(cls, prior: Transaction) -> "IdempotencyConflict":
        return cls(
            masked_prior_card=mask_last_four(prior.card.pan_last_four),
            prior_amount_cents=prior.amount_cents,
            prior_merchant=prior.merchant,
        )
