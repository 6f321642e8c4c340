"""
Card service — card issuance, lookup and administration with encryption at rest.

When a card is issued:
  1. The card number is Fernet-encrypted and fingerprinted for lookup
  2. Only the last four digits are stored in plaintext (for display)
  3. The CVV is reduced to a peppered HMAC digest; the CVV itself is dropped
  4. The available balance defaults to the authorized limit

Balance writes made here (PATCH of the available amount) are validated
against 0 <= available <= limit and done under the card's row lock, so an
administrator cannot race an authorization into a broken balance.
"""

from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from card_issuer.exceptions import (
    CardNotFoundError,
    DuplicateCardError,
    InvalidAvailableBalanceError,
)
from card_issuer.models.card import Card, CardStatus
from card_issuer.models.transaction import Transaction
from card_issuer.money import to_cents
from card_issuer.security import CredentialVerifier, encrypt_value, fingerprint_pan
from card_issuer.services import ledger

logger = structlog.get_logger(__name__)


def _check_available(available_cents: int, limit_cents: int) -> None:
    if not 0 <= available_cents <= limit_cents:
        raise InvalidAvailableBalanceError(available_cents, limit_cents)


async def issue_card(
    db: AsyncSession,
    verifier: CredentialVerifier,
    number: str,
    holder_name: str,
    expiration: str,
    cvv: str,
    authorized_limit: Decimal,
    available_balance: Decimal | None = None,
    status: CardStatus = CardStatus.ACTIVE,
) -> Card:
    """
    Issue a new card.

    Args:
        db: Database session.
        verifier: Produces the CVV digest with the server pepper.
        number: Normalized 16-digit card number.
        holder_name: Normalized holder name.
        expiration: YYYYMM.
        cvv: 3-4 digit security code (digested, never stored).
        authorized_limit: Credit limit.
        available_balance: Starting available amount; defaults to the limit.
        status: Initial card status.

    Returns:
        The created Card instance.

    Raises:
        DuplicateCardError: If the number has already been issued.
        InvalidAvailableBalanceError: If available is outside [0, limit].
    """
    limit_cents = to_cents(authorized_limit)
    available_cents = limit_cents if available_balance is None else to_cents(available_balance)
    _check_available(available_cents, limit_cents)

    fingerprint = fingerprint_pan(number)
    existing = await db.execute(select(Card.id).where(Card.pan_fingerprint == fingerprint))
    if existing.scalar_one_or_none() is not None:
        raise DuplicateCardError(number[-4:])

    card = Card(
        pan_fingerprint=fingerprint,
        pan_encrypted=encrypt_value(number),
        pan_last_four=number[-4:],
        holder_name=holder_name,
        expiration=expiration,
        cvv_hmac=verifier.digest(cvv),
        authorized_limit_cents=limit_cents,
        available_balance_cents=available_cents,
        status=status,
    )
    db.add(card)
    try:
        await db.flush()
    except IntegrityError:
        # a concurrent request issued the same number between check and insert
        await db.rollback()
        raise DuplicateCardError(number[-4:])

    logger.info("card_issued", card_last_four=card.pan_last_four, limit_cents=limit_cents)
    return card


async def list_cards(db: AsyncSession, limit: int = 50, offset: int = 0) -> list[Card]:
    """List issued cards, oldest first."""
    result = await db.execute(
        select(Card).order_by(Card.created_at.asc(), Card.pan_last_four.asc()).limit(limit).offset(offset)
    )
    return list(result.scalars().all())


async def get_card(db: AsyncSession, number: str) -> Card:
    """
    Look up a card by its full number.

    Raises:
        CardNotFoundError: If no card has this number.
    """
    result = await db.execute(select(Card).where(Card.pan_fingerprint == fingerprint_pan(number)))
    card = result.scalar_one_or_none()
    if card is None:
        raise CardNotFoundError(number[-4:])
    return card


async def update_card(
    db: AsyncSession,
    number: str,
    status: CardStatus | None = None,
    available_balance: Decimal | None = None,
) -> Card:
    """
    Change a card's status and/or set its available balance.

    The card row is locked first, so the new balance is validated against
    the limit as it stands inside this transaction.

    Raises:
        CardNotFoundError: If no card has this number.
        InvalidAvailableBalanceError: If available is outside [0, limit].
    """
    card = await ledger.lock_card_for_update(db, number)
    if card is None:
        raise CardNotFoundError(number[-4:])

    if available_balance is not None:
        available_cents = to_cents(available_balance)
        _check_available(available_cents, card.authorized_limit_cents)
        card.available_balance_cents = available_cents
    if status is not None:
        card.status = status

    await db.flush()
    await db.refresh(card)
    logger.info(
        "card_updated",
        card_last_four=card.pan_last_four,
        status=card.status.value,
        available_cents=card.available_balance_cents,
    )
    return card


async def list_card_transactions(
    db: AsyncSession,
    number: str,
    limit: int = 50,
    offset: int = 0,
) -> list[Transaction]:
    """
    Ledger rows for a card, newest first.

    Raises:
        CardNotFoundError: If no card has this number.
    """
    card = await get_card(db, number)
    result = await db.execute(
        select(Transaction)
        .where(Transaction.card_id == card.id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.unique().scalars().all())
