"""
Card store and transaction ledger access.

These are the only functions that touch the `cards` balance columns and
append to `transactions` on the authorization path:

  - lock_card_for_update(): SELECT ... FOR UPDATE on the card row
  - insert_transaction(): decide the outcome, apply the balance effect and
    append the ledger row, all in the caller's open transaction
  - find_transactions_by_idempotency_key(): prior attempts, oldest first

Atomicity:
  The approve/deny decision for a purchase is a single conditional UPDATE:

      UPDATE cards SET available = available - :amount
       WHERE id = :card AND status = 'active' AND available >= :amount

  One affected row means approved, zero means denied. The check and the
  debit cannot be separated by another writer, and the ledger row is added
  in the same transaction, so a rollback undoes both together.

SQLite note:
  with_for_update() is a no-op on SQLite. The conditional UPDATE is what
  keeps concurrent debits correct there; on PostgreSQL the row lock
  additionally serializes authorizations against the same card.
"""

import uuid

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from card_issuer.clock import utcnow
from card_issuer.models.card import Card, CardStatus
from card_issuer.models.transaction import (
    ZERO_AUTHORIZATION_CODE,
    DenialReason,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
from card_issuer.security import fingerprint_pan, generate_authorization_code


async def lock_card_for_update(db: AsyncSession, card_number: str) -> Card | None:
    """Load the card by number holding a row lock until the transaction ends."""
    result = await db.execute(
        select(Card)
        .where(Card.pan_fingerprint == fingerprint_pan(card_number))
        .with_for_update()  # No-op on SQLite, locks row on PostgreSQL
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _denial_reason(card: Card, amount_cents: int) -> DenialReason:
    if card.status == CardStatus.BLOCKED:
        return DenialReason.CARD_BLOCKED
    if card.status == CardStatus.EXPIRED:
        return DenialReason.CARD_EXPIRED
    return DenialReason.INSUFFICIENT_FUNDS


async def _debit(db: AsyncSession, card: Card, amount_cents: int) -> bool:
    result = await db.execute(
        update(Card)
        .where(
            Card.id == card.id,
            Card.status == CardStatus.ACTIVE,
            Card.available_balance_cents >= amount_cents,
        )
        .values(
            available_balance_cents=Card.available_balance_cents - amount_cents,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(card)
    return result.rowcount == 1


async def _credit_capped(db: AsyncSession, card: Card, amount_cents: int) -> None:
    raised = Card.available_balance_cents + amount_cents
    await db.execute(
        update(Card)
        .where(Card.id == card.id)
        .values(
            available_balance_cents=case(
                (raised > Card.authorized_limit_cents, Card.authorized_limit_cents),
                else_=raised,
            ),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(card)


async def insert_transaction(
    db: AsyncSession,
    card: Card,
    kind: TransactionKind,
    amount_cents: int,
    merchant: str,
    idempotency_key: str | None = None,
    idempotency_generation: int | None = None,
    denial_reason: DenialReason | None = None,
) -> Transaction:
    """
    Append a ledger row and apply its balance effect.

    Outcome rules:
      - denial_reason given (e.g. INVALID_CVV): denied, no balance change
      - payment: always approved; available = min(available + amount, limit)
      - purchase: approved iff the card is active and available >= amount,
        in which case available is debited; otherwise denied with
        CARD_BLOCKED, CARD_EXPIRED or INSUFFICIENT_FUNDS

    The row is flushed, so a duplicate idempotency claim surfaces here as
    IntegrityError. Nothing is committed; the caller owns the transaction.
    """
    if amount_cents <= 0:
        raise ValueError("amount_cents must be positive")

    if denial_reason is None:
        if kind == TransactionKind.PAYMENT:
            await _credit_capped(db, card, amount_cents)
        elif not await _debit(db, card, amount_cents):
            denial_reason = _denial_reason(card, amount_cents)

    if denial_reason is None:
        status = TransactionStatus.APPROVED
        authorization_code = generate_authorization_code()
    else:
        status = TransactionStatus.DENIED
        authorization_code = ZERO_AUTHORIZATION_CODE

    txn = Transaction(
        card_id=card.id,
        kind=kind,
        amount_cents=amount_cents,
        merchant=merchant,
        idempotency_key=idempotency_key,
        idempotency_generation=idempotency_generation,
        status=status,
        denial_reason=denial_reason,
        authorization_code=authorization_code,
        created_at=utcnow(),
    )
    txn.card = card
    db.add(txn)
    await db.flush()
    return txn


async def find_transactions_by_idempotency_key(
    db: AsyncSession,
    key: str,
    kind: TransactionKind,
    card_id: uuid.UUID | None = None,
) -> list[Transaction]:
    """
    All ledger rows carrying `key` for this kind, oldest claim first.

    Within a claim (generation) rows are ordered by creation time, then id,
    so the first element of each generation is its first committed attempt.
    """
    query = (
        select(Transaction)
        .where(Transaction.idempotency_key == key)
        .where(Transaction.kind == kind)
        .order_by(
            Transaction.idempotency_generation.asc(),
            Transaction.created_at.asc(),
            Transaction.id.asc(),
        )
    )
    if card_id is not None:
        query = query.where(Transaction.card_id == card_id)

    result = await db.execute(query)
    return list(result.unique().scalars().all())
