"""
Tests for concurrent authorizations against one card.

These run the authorization engine directly over a file-backed SQLite
database so every attempt gets its own connection, like parallel API
workers would.

Properties:
  - N parallel purchases of which only M fit the balance: exactly M are
    approved, the balance ends at available - M * amount, never negative
  - Parallel retries of one keyed purchase: one ledger row, one debit
  - Store failures surface as TransientStoreError and leave nothing behind
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from card_issuer.exceptions import TransientStoreError
from card_issuer.models.card import Card
from card_issuer.models.transaction import DenialReason, Transaction
from card_issuer.security import CredentialVerifier
from card_issuer.services import card_service
from card_issuer.services.authorization_service import AuthorizationEngine
from card_issuer.services.decisions import AuthorizationDecision
from card_issuer.services.idempotency import IdempotencyResolver
from conftest import TEST_PEPPER, VISA_TEST_PAN


async def _issue(session_factory, limit: str) -> None:
    async with session_factory() as db:
        await card_service.issue_card(
            db,
            CredentialVerifier(TEST_PEPPER),
            number=VISA_TEST_PAN,
            holder_name="JANEDOE",
            expiration="202912",
            cvv="123",
            authorized_limit=Decimal(limit),
        )
        await db.commit()


def _engine(session_factory, **kwargs) -> AuthorizationEngine:
    return AuthorizationEngine(
        session_factory=session_factory,
        verifier=CredentialVerifier(TEST_PEPPER),
        resolver=kwargs.pop("resolver", IdempotencyResolver()),
        **kwargs,
    )


async def _available_cents(session_factory) -> int:
    async with session_factory() as db:
        result = await db.execute(select(Card.available_balance_cents))
        return result.scalar_one()


async def _ledger_count(session_factory) -> int:
    async with session_factory() as db:
        result = await db.execute(select(func.count()).select_from(Transaction))
        return result.scalar_one()


class TestParallelPurchases:

    async def test_only_affordable_purchases_are_approved(self, file_session_factory):
        # 10 parallel purchases of 25.00 against 100.00: exactly 4 fit
        await _issue(file_session_factory, "100.00")
        engine = _engine(file_session_factory)

        decisions = await asyncio.gather(*[
            engine.authorize(VISA_TEST_PAN, "123", Decimal("25.00"), "SHOP")
            for _ in range(10)
        ])

        approved = [d for d in decisions if d.approved]
        denied = [d for d in decisions if not d.approved]
        assert len(approved) == 4
        assert all(d.reason == DenialReason.INSUFFICIENT_FUNDS for d in denied)
        assert await _available_cents(file_session_factory) == 0
        assert await _ledger_count(file_session_factory) == 10

    async def test_parallel_retries_of_one_key_debit_once(self, file_session_factory):
        await _issue(file_session_factory, "100.00")
        engine = _engine(file_session_factory)

        decisions = await asyncio.gather(*[
            engine.authorize(VISA_TEST_PAN, "123", Decimal("10.00"), "SHOP", idempotency_key="same-order")
            for _ in range(5)
        ])

        assert all(isinstance(d, AuthorizationDecision) for d in decisions)
        assert len({d.authorization_code for d in decisions}) == 1
        assert sum(1 for d in decisions if not d.replayed) == 1
        assert await _available_cents(file_session_factory) == 9000
        assert await _ledger_count(file_session_factory) == 1


class _SlowResolver(IdempotencyResolver):
    async def resolve(self, db, key, kind, params):
        await asyncio.sleep(1)
        return await super().resolve(db, key, kind, params)


class TestTransientFailures:

    async def test_timeout_raises_transient_error_and_changes_nothing(self, file_session_factory):
        await _issue(file_session_factory, "100.00")
        engine = _engine(file_session_factory, resolver=_SlowResolver(), store_timeout=0.05)

        with pytest.raises(TransientStoreError):
            await engine.authorize(VISA_TEST_PAN, "123", Decimal("10.00"), "SHOP", idempotency_key="slow")

        assert await _available_cents(file_session_factory) == 10000
        assert await _ledger_count(file_session_factory) == 0

    async def test_unreachable_store_raises_transient_error(self, tmp_path):
        broken = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'issuer.db'}")
        factory = async_sessionmaker(broken, class_=AsyncSession, expire_on_commit=False)
        try:
            with pytest.raises(TransientStoreError):
                await _engine(factory).authorize(VISA_TEST_PAN, "123", Decimal("10.00"), "SHOP")
        finally:
            await broken.dispose()

    async def test_contract_violations_raise(self, file_session_factory):
        engine = _engine(file_session_factory)
        with pytest.raises(ValueError):
            await engine.authorize(VISA_TEST_PAN, "123", Decimal("0"), "SHOP")
        with pytest.raises(ValueError):
            await engine.authorize(VISA_TEST_PAN, "123", Decimal("1.00"), "")


class _BalanceBreakingResolver(IdempotencyResolver):
    """Writes a balance the card's CHECK constraint rejects."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def resolve(self, db, key, kind, params):
        self.calls += 1
        await db.execute(update(Card).values(available_balance_cents=-1))
        return await super().resolve(db, key, kind, params)


class TestConstraintViolations:

    async def test_check_violation_is_not_retried_as_a_race(self, file_session_factory):
        await _issue(file_session_factory, "100.00")
        resolver = _BalanceBreakingResolver()
        engine = _engine(file_session_factory, resolver=resolver)

        with pytest.raises(IntegrityError):
            await engine.authorize(VISA_TEST_PAN, "123", Decimal("10.00"), "SHOP", idempotency_key="k1")

        assert resolver.calls == 1
        assert await _available_cents(file_session_factory) == 10000
        assert await _ledger_count(file_session_factory) == 0
