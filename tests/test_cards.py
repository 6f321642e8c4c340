"""
Tests for card issuance and administration.

Card numbers and CVVs are sensitive. These tests verify that:
  - Issuance normalizes input and validates the Luhn check digit
  - The full card number is never returned (only the last four digits)
  - The CVV is never returned and is stored only as a keyed digest
  - The available balance is kept within [0, limit] on every write
  - Duplicate numbers are rejected
"""

from sqlalchemy import select

from card_issuer.models.card import Card
from card_issuer.security import decrypt_value
from conftest import SECOND_PAN, UNKNOWN_PAN, VISA_TEST_PAN, card_payload


class TestIssueCard:
    """Tests for POST /api/v1/cards."""

    async def test_issue_card(self, client):
        response = await client.post("/api/v1/cards", json=card_payload())
        assert response.status_code == 201
        data = response.json()
        assert data["issuer"] == "VISA"
        assert data["number"] == "****-****-****-1111"
        assert data["holder_name"] == "JANEDOE"
        assert data["expiration"] == "202912"
        assert data["authorized_limit"] == "1000.00"
        assert data["available_balance"] == "1000.00"
        assert data["status"] == "active"

    async def test_response_never_contains_full_number_or_cvv(self, client):
        response = await client.post("/api/v1/cards", json=card_payload())
        assert VISA_TEST_PAN not in response.text
        assert "cvv" not in response.json()

    async def test_spanish_field_names_are_accepted(self, client):
        response = await client.post(
            "/api/v1/cards",
            json={
                "numero": "5555 5555 5555 4444",
                "nombre": "José Pérez",
                "fecha_venc": "203001",
                "cvv": "4321",
                "limite": "500",
                "disponible": "250.50",
                "estado": "bloqueada",
            },
        )
        assert response.status_code == 201, response.text
        data = response.json()
        assert data["number"] == "****-****-****-4444"
        assert data["holder_name"] == "JOSEPEREZ"
        assert data["authorized_limit"] == "500.00"
        assert data["available_balance"] == "250.50"
        assert data["status"] == "blocked"

    async def test_card_number_encrypted_and_cvv_digested_at_rest(self, client, db_session):
        await client.post("/api/v1/cards", json=card_payload())

        card = (await db_session.execute(select(Card))).scalar_one()
        assert VISA_TEST_PAN.encode() not in card.pan_encrypted
        assert decrypt_value(card.pan_encrypted) == VISA_TEST_PAN
        assert card.cvv_hmac != "123"
        assert len(card.cvv_hmac) == 64

    async def test_luhn_failure_rejected(self, client):
        response = await client.post("/api/v1/cards", json=card_payload(number="4111111111111112"))
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert {"field": "number", "reason": "INVALID_FORMAT_OR_LUHN"} in error["fields"]

    async def test_missing_fields_reported_as_required(self, client):
        response = await client.post("/api/v1/cards", json={"number": VISA_TEST_PAN})
        assert response.status_code == 422
        reasons = {f["field"]: f["reason"] for f in response.json()["error"]["fields"]}
        assert reasons["cvv"] == "REQUIRED"
        assert reasons["authorized_limit"] == "REQUIRED"

    async def test_available_above_limit_rejected(self, client):
        response = await client.post(
            "/api/v1/cards",
            json=card_payload(limit="100.00", available_balance="100.01"),
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INVALID_AVAILABLE"

    async def test_oversize_limit_rejected(self, client):
        response = await client.post(
            "/api/v1/cards",
            json=card_payload(limit="99999999999999999999.00"),
        )
        assert response.status_code == 422
        assert {"field": "authorized_limit", "reason": "INVALID_AMOUNT"} in response.json()["error"]["fields"]

    async def test_large_limit_is_stored_exactly(self, client):
        response = await client.post("/api/v1/cards", json=card_payload(limit="9999999999.99"))
        assert response.status_code == 201
        assert response.json()["authorized_limit"] == "9999999999.99"
        assert response.json()["available_balance"] == "9999999999.99"

    async def test_duplicate_card_number_rejected(self, client, issued_card):
        response = await client.post("/api/v1/cards", json=card_payload())
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CARD_ALREADY_EXISTS"


class TestGetAndListCards:
    """Tests for GET /api/v1/cards and /api/v1/cards/{number}."""

    async def test_get_card(self, client, issued_card):
        response = await client.get(f"/api/v1/cards/{VISA_TEST_PAN}")
        assert response.status_code == 200
        assert response.json()["number"] == "****-****-****-1111"

    async def test_get_card_with_formatted_number(self, client, issued_card):
        response = await client.get("/api/v1/cards/4111-1111-1111-1111")
        assert response.status_code == 200

    async def test_get_unknown_card(self, client):
        response = await client.get(f"/api/v1/cards/{UNKNOWN_PAN}")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "CARD_NOT_FOUND"

    async def test_get_invalid_number(self, client):
        response = await client.get("/api/v1/cards/1234")
        assert response.status_code == 422

    async def test_list_cards(self, client, issued_card):
        await client.post("/api/v1/cards", json=card_payload(number=SECOND_PAN))

        response = await client.get("/api/v1/cards")
        assert response.status_code == 200
        numbers = [card["number"] for card in response.json()]
        assert sorted(numbers) == ["****-****-****-1111", "****-****-****-4444"]


class TestUpdateCard:
    """Tests for PATCH /api/v1/cards/{number}."""

    async def test_block_card(self, client, issued_card):
        response = await client.patch(f"/api/v1/cards/{VISA_TEST_PAN}", json={"status": "blocked"})
        assert response.status_code == 200
        assert response.json()["status"] == "blocked"

    async def test_set_available_balance(self, client, issued_card):
        response = await client.patch(f"/api/v1/cards/{VISA_TEST_PAN}", json={"disponible": "10.25"})
        assert response.status_code == 200
        assert response.json()["available_balance"] == "10.25"

    async def test_available_above_limit_rejected(self, client, issued_card):
        response = await client.patch(
            f"/api/v1/cards/{VISA_TEST_PAN}",
            json={"available_balance": "1000.01"},
        )
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "INVALID_AVAILABLE"

        card = await client.get(f"/api/v1/cards/{VISA_TEST_PAN}")
        assert card.json()["available_balance"] == "1000.00"

    async def test_unknown_status_rejected(self, client, issued_card):
        response = await client.patch(f"/api/v1/cards/{VISA_TEST_PAN}", json={"status": "frozen"})
        assert response.status_code == 422
        assert response.json()["error"]["fields"][0]["field"] == "status"

    async def test_empty_update_rejected(self, client, issued_card):
        response = await client.patch(f"/api/v1/cards/{VISA_TEST_PAN}", json={})
        assert response.status_code == 422

    async def test_update_unknown_card(self, client):
        response = await client.patch(f"/api/v1/cards/{UNKNOWN_PAN}", json={"status": "blocked"})
        assert response.status_code == 404
