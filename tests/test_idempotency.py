"""
Tests for Idempotency-Key handling on authorizations.

A merchant retrying a purchase with the same Idempotency-Key must get the
original decision back, byte for byte, without a second debit. Reusing a key
for a different purchase is a conflict. Once the retention window has passed
the key can be used again.

Covers:
  - Replay: identical body, one ledger row, one debit
  - Replay of denials (the retry is not re-decided)
  - Conflict: 409 with the masked parameters of the first use
  - Expiry: a fresh decision after the window, and retries of it replay
  - Header and body sources for the key
  - The resolver's decision matrix in isolation
"""

from datetime import timedelta
from types import SimpleNamespace

from sqlalchemy import func, select, update

from card_issuer.clock import utcnow
from card_issuer.models.transaction import Transaction
from card_issuer.security import fingerprint_pan
from card_issuer.services.idempotency import (
    AttemptParameters,
    IdempotencyAction,
    IdempotencyResolver,
)
from conftest import SECOND_PAN, VISA_TEST_PAN, authorization_payload, card_payload


async def _rows_for_key(db_session, key: str) -> int:
    result = await db_session.execute(
        select(func.count()).select_from(Transaction).where(Transaction.idempotency_key == key)
    )
    return result.scalar_one()


async def _available(client) -> str:
    card = await client.get(f"/api/v1/cards/{VISA_TEST_PAN}")
    return card.json()["available_balance"]


class TestReplay:

    async def test_replay_returns_identical_body(self, client, issued_card, db_session):
        headers = {"Idempotency-Key": "order-1"}
        first = await client.post("/api/v1/authorizations", json=authorization_payload(), headers=headers)
        second = await client.post("/api/v1/authorizations", json=authorization_payload(), headers=headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.content == first.content
        assert second.headers["Idempotent-Replayed"] == "true"
        assert "Idempotent-Replayed" not in first.headers
        assert await _rows_for_key(db_session, "order-1") == 1
        assert await _available(client) == "900.00"

    async def test_replay_of_denial(self, client, issued_card, db_session):
        headers = {"Idempotency-Key": "order-2"}
        payload = authorization_payload(cvv="999")
        first = await client.post("/api/v1/authorizations", json=payload, headers=headers)
        # same key, correct CVV: the key's first use was a denial, and it stays one
        retry = await client.post("/api/v1/authorizations", json=authorization_payload(), headers=headers)

        assert first.json()["reason"] == "INVALID_CVV"
        assert retry.status_code == 200
        assert retry.content == first.content
        assert await _rows_for_key(db_session, "order-2") == 1
        assert await _available(client) == "1000.00"

    async def test_key_in_body(self, client, issued_card, db_session):
        payload = {**authorization_payload(), "idempotencyKey": "body-key"}
        first = await client.post("/api/v1/authorizations", json=payload)
        second = await client.post("/api/v1/authorizations", json=payload)

        assert second.status_code == 200
        assert second.content == first.content
        assert await _rows_for_key(db_session, "body-key") == 1

    async def test_key_is_trimmed_and_truncated(self, client, issued_card, db_session):
        long_key = "k" * 300
        await client.post(
            "/api/v1/authorizations",
            json=authorization_payload(),
            headers={"Idempotency-Key": f"  {long_key}  "},
        )
        assert await _rows_for_key(db_session, "k" * 255) == 1

    async def test_without_key_every_request_is_new(self, client, issued_card, db_session):
        await client.post("/api/v1/authorizations", json=authorization_payload())
        await client.post("/api/v1/authorizations", json=authorization_payload())

        total = (await db_session.execute(select(func.count()).select_from(Transaction))).scalar_one()
        assert total == 2
        assert await _available(client) == "800.00"


class TestConflict:

    async def test_different_amount_conflicts(self, client, issued_card, db_session):
        headers = {"Idempotency-Key": "order-3"}
        await client.post("/api/v1/authorizations", json=authorization_payload(amount="100.00"), headers=headers)
        response = await client.post(
            "/api/v1/authorizations",
            json=authorization_payload(amount="200.00"),
            headers=headers,
        )

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PARAMETERS"
        assert error["previous"] == {
            "card": "****-****-****-1111",
            "amount": "100.00",
            "merchant": "COFFEE_SHOP",
        }
        assert await _rows_for_key(db_session, "order-3") == 1
        assert await _available(client) == "900.00"

    async def test_different_card_conflicts(self, client, issued_card):
        await client.post("/api/v1/cards", json=card_payload(number=SECOND_PAN))
        headers = {"Idempotency-Key": "order-4"}
        await client.post("/api/v1/authorizations", json=authorization_payload(), headers=headers)

        response = await client.post(
            "/api/v1/authorizations",
            json=authorization_payload(card=SECOND_PAN),
            headers=headers,
        )
        assert response.status_code == 409
        assert response.json()["error"]["previous"]["card"] == "****-****-****-1111"

    async def test_different_merchant_conflicts(self, client, issued_card):
        headers = {"Idempotency-Key": "order-5"}
        await client.post("/api/v1/authorizations", json=authorization_payload(), headers=headers)
        response = await client.post(
            "/api/v1/authorizations",
            json=authorization_payload(merchant="BOOKSTORE"),
            headers=headers,
        )
        assert response.status_code == 409


class TestExpiry:

    async def test_expired_key_is_decided_again(self, client, issued_card, db_session):
        headers = {"Idempotency-Key": "order-6"}
        first = await client.post("/api/v1/authorizations", json=authorization_payload(), headers=headers)
        assert first.status_code == 201

        # age the first decision past the 24h window
        await db_session.execute(
            update(Transaction)
            .where(Transaction.idempotency_key == "order-6")
            .values(created_at=utcnow() - timedelta(hours=25))
        )
        await db_session.commit()

        fresh = await client.post("/api/v1/authorizations", json=authorization_payload(), headers=headers)
        assert fresh.status_code == 201
        assert fresh.json()["authorization_code"] != "000000"
        assert await _available(client) == "800.00"

        retry = await client.post("/api/v1/authorizations", json=authorization_payload(), headers=headers)
        assert retry.status_code == 200
        assert retry.content == fresh.content
        assert await _rows_for_key(db_session, "order-6") == 2
        assert await _available(client) == "800.00"


def _prior(pan=VISA_TEST_PAN, amount_cents=10000, merchant="SHOP", age=timedelta(0), generation=0):
    now = utcnow()
    return SimpleNamespace(
        card=SimpleNamespace(pan_fingerprint=fingerprint_pan(pan)),
        amount_cents=amount_cents,
        merchant=merchant,
        created_at_utc=now - age,
        idempotency_generation=generation,
        id=1,
    )


class TestResolverDecisions:
    """The resolver's decision matrix without a database."""

    params = AttemptParameters(VISA_TEST_PAN, 10000, "SHOP")

    def test_no_key_is_always_fresh_without_claim(self):
        resolution = IdempotencyResolver().decide(_prior(), self.params, has_key=False)
        assert resolution.action == IdempotencyAction.FRESH
        assert resolution.generation is None

    def test_first_use_claims_generation_zero(self):
        resolution = IdempotencyResolver().decide(None, self.params, has_key=True)
        assert resolution.action == IdempotencyAction.FRESH
        assert resolution.generation == 0

    def test_matching_fresh_prior_replays(self):
        resolution = IdempotencyResolver().decide(_prior(), self.params, has_key=True)
        assert resolution.action == IdempotencyAction.REPLAY

    def test_mismatch_conflicts_even_when_expired(self):
        prior = _prior(amount_cents=5000, age=timedelta(days=3))
        resolution = IdempotencyResolver().decide(prior, self.params, has_key=True)
        assert resolution.action == IdempotencyAction.CONFLICT

    def test_expired_match_claims_next_generation(self):
        prior = _prior(age=timedelta(hours=2), generation=1)
        resolver = IdempotencyResolver(retention=timedelta(hours=1))
        resolution = resolver.decide(prior, self.params, has_key=True)
        assert resolution.action == IdempotencyAction.FRESH
        assert resolution.generation == 2

    def test_custom_clock(self):
        prior = _prior()
        resolver = IdempotencyResolver(clock=lambda: prior.created_at_utc + timedelta(hours=25))
        assert not resolver.is_fresh(prior)
