"""
Idempotency resolver — decides whether a keyed request is new, a retry, or
a conflicting reuse of its key.

There is no separate cache: the ledger row written for a key IS the cached
result. Resolving a key re-reads that row, so every API instance sees the
same answer and there is nothing to invalidate.

Decision matrix (prior = authoritative ledger row for the key):

    prior?  same (card, amount, merchant)?  fresh?   action
    ------  ------------------------------  ------   ----------------------
    no      -                               -        FRESH (generation 0)
    yes     no                              -        CONFLICT
    yes     yes                             yes      REPLAY
    yes     yes                             no       FRESH (generation N+1)

The authoritative row is the first committed attempt of the key's latest
claim. A key whose retention window has elapsed is claimed again by the next
matching request (generation N+1), and retries of that request then replay
the new row instead of charging again.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from card_issuer.clock import utcnow
from card_issuer.models.transaction import Transaction, TransactionKind
from card_issuer.security import fingerprint_pan
from card_issuer.services import ledger

logger = structlog.get_logger(__name__)


class IdempotencyAction(str, enum.Enum):
    FRESH = "fresh"
    REPLAY = "replay"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class AttemptParameters:
    """The parameters that define "the same logical request" for a key."""
    card_number: str
    amount_cents: int
    merchant: str


@dataclass(frozen=True)
class Resolution:
    action: IdempotencyAction
    prior: Transaction | None = None
    # Claim to write for a FRESH attempt with a key; None without a key
    generation: int | None = None


class IdempotencyResolver:
    """
    Resolves Idempotency-Key reuse against the transaction ledger.

    Args:
        retention: How long a committed outcome is replayed for.
        clock: Returns the current aware UTC time (injectable for tests).
    """

    def __init__(
        self,
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        if retention <= timedelta(0):
            raise ValueError("retention must be positive")
        self.retention = retention
        self._clock = clock

    async def find_prior(
        self,
        db: AsyncSession,
        key: str | None,
        kind: TransactionKind,
    ) -> Transaction | None:
        """Return the authoritative prior attempt for `key`, or None."""
        if not key:
            return None
        rows = await ledger.find_transactions_by_idempotency_key(db, key, kind)
        if not rows:
            return None
        latest_generation = rows[-1].idempotency_generation
        # rows are oldest first within each generation
        for row in rows:
            if row.idempotency_generation == latest_generation:
                return row
        return None

    def is_fresh(self, prior: Transaction, now: datetime | None = None) -> bool:
        now = now or self._clock()
        return now - prior.created_at_utc < self.retention

    @staticmethod
    def matches(prior: Transaction, params: AttemptParameters) -> bool:
        return (
            prior.card.pan_fingerprint == fingerprint_pan(params.card_number)
            and prior.amount_cents == params.amount_cents
            and prior.merchant == params.merchant
        )

    def decide(
        self,
        prior: Transaction | None,
        params: AttemptParameters,
        has_key: bool,
        now: datetime | None = None,
    ) -> Resolution:
        if not has_key:
            return Resolution(IdempotencyAction.FRESH)
        if prior is None:
            return Resolution(IdempotencyAction.FRESH, generation=0)
        if not self.matches(prior, params):
            return Resolution(IdempotencyAction.CONFLICT, prior=prior)
        if self.is_fresh(prior, now):
            return Resolution(IdempotencyAction.REPLAY, prior=prior)
        return Resolution(
            IdempotencyAction.FRESH,
            prior=prior,
            generation=(prior.idempotency_generation or 0) + 1,
        )

    async def resolve(
        self,
        db: AsyncSession,
        key: str | None,
        kind: TransactionKind,
        params: AttemptParameters,
    ) -> Resolution:
        prior = await self.find_prior(db, key, kind)
        resolution = self.decide(prior, params, has_key=bool(key))
        if resolution.action != IdempotencyAction.FRESH or resolution.prior is not None:
            logger.info(
                "idempotency_resolved",
                action=resolution.action.value,
                kind=kind.value,
                prior_transaction_id=prior.id if prior else None,
                generation=resolution.generation,
            )
        return resolution
