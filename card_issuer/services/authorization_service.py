"""
Authorization engine — the core purchase/payment decision logic.

THIS IS THE MOST CRITICAL FILE IN THE PROJECT. For every attempt it:
  1. Resolves the Idempotency-Key (replay / conflict / fresh)
  2. Locks the card row
  3. Verifies the CVV (purchases only)
  4. Decides, applies the balance effect and appends the ledger row in one
     transaction (see services/ledger.py)
  5. Returns a typed decision with the card number masked

Transactions:
  Each attempt runs in its own session from the session factory. Everything
  before the commit is bounded by `store_timeout`; a timeout or a lost
  connection raises TransientStoreError and leaves nothing behind, since
  the uncommitted debit and ledger row roll back together. The commit itself
  is never cancelled once it has started.

Concurrent first use of a key:
  Two requests racing with the same fresh key both resolve to FRESH. The
  store's unique constraint on the idempotency claim rejects the second
  insert; the engine rolls that attempt back (undoing its debit) and
  resolves again, which now finds the winner's row and replays it, or
  reports a conflict if the loser's parameters differ.

Blocked cards:
  The CVV is checked before the card status. A wrong CVV on a blocked card
  is denied as INVALID_CVV; a correct one is denied as CARD_BLOCKED.
"""

import asyncio
from decimal import Decimal

import structlog
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from card_issuer.exceptions import CardNotFoundError, TransientStoreError
from card_issuer.models.transaction import (
    IDEMPOTENCY_CLAIM_CONSTRAINT,
    DenialReason,
    TransactionKind,
)
from card_issuer.money import to_cents
from card_issuer.security import CredentialVerifier
from card_issuer.services import ledger
from card_issuer.services.decisions import (
    AuthorizationDecision,
    IdempotencyConflict,
    PaymentDecision,
)
from card_issuer.services.idempotency import (
    AttemptParameters,
    IdempotencyAction,
    IdempotencyResolver,
)

logger = structlog.get_logger(__name__)


class IdempotencyRaceLost(Exception):
    """Another request committed the same idempotency claim first."""


def _is_claim_collision(exc: IntegrityError) -> bool:
    """True when the store rejected a write for reusing an idempotency claim."""
    message = str(exc.orig)
    # PostgreSQL names the constraint, SQLite lists its columns
    return (
        IDEMPOTENCY_CLAIM_CONSTRAINT in message
        or "transactions.idempotency_generation" in message
    )


class AuthorizationEngine:
    """
    Decides purchase authorizations and applies payments.

    Args:
        session_factory: Creates the session each attempt runs in.
        verifier: CVV verifier built with the server-side pepper.
        resolver: Idempotency resolver built with the retention window.
        store_timeout: Seconds allowed for one attempt's store work.
    """

    # first try + re-resolutions after lost idempotency races
    MAX_ATTEMPTS = 3

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifier: CredentialVerifier,
        resolver: IdempotencyResolver,
        store_timeout: float = 10.0,
    ):
        self._session_factory = session_factory
        self._verifier = verifier
        self._resolver = resolver
        self._store_timeout = store_timeout

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def authorize(
        self,
        card_number: str,
        secret: str,
        amount: Decimal,
        merchant: str,
        idempotency_key: str | None = None,
    ) -> AuthorizationDecision | IdempotencyConflict:
        """
        Authorize a purchase.

        Returns:
            AuthorizationDecision (approved or denied, possibly replayed) or
            IdempotencyConflict when the key was first used with different
            parameters.

        Raises:
            TransientStoreError: On timeout or connection failure. Safe to
                retry with the same idempotency key.
        """
        params = self._parameters(card_number, amount, merchant)
        return await self._with_retries(self._authorize_once, params, secret, idempotency_key)

    async def apply_payment(
        self,
        card_number: str,
        amount: Decimal,
        reference: str,
        idempotency_key: str | None = None,
    ) -> PaymentDecision | IdempotencyConflict:
        """
        Credit a payment to a card, capped at its authorized limit.

        Payments are issuer-initiated: no CVV check, always approved.

        Raises:
            CardNotFoundError: If no card has this number.
            TransientStoreError: On timeout or connection failure.
        """
        params = self._parameters(card_number, amount, reference)
        return await self._with_retries(self._pay_once, params, idempotency_key)

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    @staticmethod
    def _parameters(card_number: str, amount: Decimal, merchant: str) -> AttemptParameters:
        if not card_number or not merchant:
            raise ValueError("card_number and merchant are required")
        amount_cents = to_cents(amount)
        if amount_cents <= 0:
            raise ValueError("amount must be positive")
        return AttemptParameters(card_number, amount_cents, merchant)

    async def _with_retries(self, attempt, *args):
        for attempt_number in range(1, self.MAX_ATTEMPTS + 1):
            try:
                return await attempt(*args)
            except IdempotencyRaceLost:
                logger.info("idempotency_race_lost", attempt=attempt_number)
            except (OperationalError, InterfaceError) as exc:
                logger.warning("store_failure", error_type=type(exc).__name__)
                raise TransientStoreError() from exc
        raise TransientStoreError("Idempotency key is contended, retry the request")

    async def _bounded(self, db: AsyncSession, work):
        """Run pre-commit store work under the timeout."""
        try:
            return await asyncio.wait_for(work, timeout=self._store_timeout)
        except asyncio.TimeoutError:
            logger.warning("store_timeout", timeout_seconds=self._store_timeout)
            raise TransientStoreError("The card store did not respond in time") from None
        except IntegrityError as exc:
            await db.rollback()
            if not _is_claim_collision(exc):
                raise
            raise IdempotencyRaceLost() from exc

    async def _commit(self, db: AsyncSession) -> None:
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            if not _is_claim_collision(exc):
                raise
            raise IdempotencyRaceLost() from exc

    async def _authorize_once(
        self,
        params: AttemptParameters,
        secret: str,
        key: str | None,
    ) -> AuthorizationDecision | IdempotencyConflict:
        async with self._session_factory() as db:
            outcome = await self._bounded(db, self._decide_purchase(db, params, secret, key))
            if not isinstance(outcome, AuthorizationDecision) or outcome.replayed:
                return outcome
            if outcome.persisted:
                await self._commit(db)

        log = logger.info if outcome.approved else logger.warning
        log(
            "authorization_approved" if outcome.approved else "authorization_denied",
            card_last_four=outcome.masked_card[-4:],
            amount_cents=params.amount_cents,
            reason=outcome.reason.value if outcome.reason else None,
            transaction_id=outcome.transaction_id,
        )
        return outcome

    async def _decide_purchase(
        self,
        db: AsyncSession,
        params: AttemptParameters,
        secret: str,
        key: str | None,
    ) -> AuthorizationDecision | IdempotencyConflict:
        resolution = await self._resolver.resolve(db, key, TransactionKind.PURCHASE, params)
        if resolution.action == IdempotencyAction.REPLAY:
            return AuthorizationDecision.from_transaction(resolution.prior, replayed=True)
        if resolution.action == IdempotencyAction.CONFLICT:
            return IdempotencyConflict.from_transaction(resolution.prior)

        card = await ledger.lock_card_for_update(db, params.card_number)
        if card is None:
            # No card to reference: the denial is returned but not persisted.
            await db.rollback()
            return AuthorizationDecision.unknown_card(params.card_number)

        denial = None
        if not self._verifier.verify(card, secret):
            denial = DenialReason.INVALID_CVV

        txn = await ledger.insert_transaction(
            db,
            card,
            kind=TransactionKind.PURCHASE,
            amount_cents=params.amount_cents,
            merchant=params.merchant,
            idempotency_key=key,
            idempotency_generation=resolution.generation,
            denial_reason=denial,
        )
        return AuthorizationDecision.from_transaction(txn)

    async def _pay_once(
        self,
        params: AttemptParameters,
        key: str | None,
    ) -> PaymentDecision | IdempotencyConflict:
        async with self._session_factory() as db:
            outcome = await self._bounded(db, self._decide_payment(db, params, key))
            if isinstance(outcome, PaymentDecision) and not outcome.replayed:
                await self._commit(db)
                logger.info(
                    "payment_applied",
                    card_last_four=outcome.masked_card[-4:],
                    amount_cents=outcome.amount_cents,
                    available_cents=outcome.available_cents,
                    transaction_id=outcome.transaction_id,
                )
        return outcome

    async def _decide_payment(
        self,
        db: AsyncSession,
        params: AttemptParameters,
        key: str | None,
    ) -> PaymentDecision | IdempotencyConflict:
        resolution = await self._resolver.resolve(db, key, TransactionKind.PAYMENT, params)
        if resolution.action == IdempotencyAction.CONFLICT:
            return IdempotencyConflict.from_transaction(resolution.prior)
        if resolution.action == IdempotencyAction.REPLAY:
            prior = resolution.prior
            return PaymentDecision.from_transaction(
                prior, available_cents=prior.card.available_balance_cents, replayed=True
            )

        card = await ledger.lock_card_for_update(db, params.card_number)
        if card is None:
            raise CardNotFoundError(params.card_number[-4:])

        txn = await ledger.insert_transaction(
            db,
            card,
            kind=TransactionKind.PAYMENT,
            amount_cents=params.amount_cents,
            merchant=params.merchant,
            idempotency_key=key,
            idempotency_generation=resolution.generation,
        )
        return PaymentDecision.from_transaction(txn, available_cents=card.available_balance_cents)
