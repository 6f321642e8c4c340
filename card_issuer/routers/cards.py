"""
Cards router — card issuance, administration, payments and ledger.

Endpoints:
  POST  /api/v1/cards                         — Issue a card
  GET   /api/v1/cards                         — List cards (masked)
  GET   /api/v1/cards/{number}                — Get a card (masked)
  PATCH /api/v1/cards/{number}                — Change status / available balance
  POST  /api/v1/cards/{number}/payments       — Apply a payment (idempotent)
  GET   /api/v1/cards/{number}/transactions   — Ledger rows, newest first

The full card number is only ever accepted, never returned: every response
shows "****-****-****-1234". CVVs are not returned at all.
"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from card_issuer.config import settings
from card_issuer.database import get_db
from card_issuer.dependencies import (
    get_authorization_engine,
    get_credential_verifier,
    get_idempotency_key,
    require_api_key,
)
from card_issuer.exceptions import RequestValidationFailed
from card_issuer.negotiation import pick_aliases, read_body, render, render_error
from card_issuer.schemas.card import (
    CARD_CREATE_ALIASES,
    CARD_UPDATE_ALIASES,
    CardCreateRequest,
    CardResponse,
    CardUpdateRequest,
)
from card_issuer.schemas.common import normalize_pan, parse_request
from card_issuer.schemas.transaction import (
    PAYMENT_ALIASES,
    PaymentRequest,
    PaymentResponse,
    TransactionResponse,
    body_idempotency_key,
    conflict_details,
)
from card_issuer.security import CredentialVerifier
from card_issuer.services import card_service
from card_issuer.services.authorization_service import AuthorizationEngine
from card_issuer.services.decisions import IdempotencyConflict

router = APIRouter(dependencies=[Depends(require_api_key)])


def _card_number(number: str) -> str:
    """Normalize the card number from the path, or fail like a body field would."""
    try:
        return normalize_pan(number)
    except ValueError as exc:
        raise RequestValidationFailed([{"field": "number", "reason": str(exc)}])


def _card_body(card) -> dict:
    return CardResponse.from_card(card, settings.ISSUER_NAME).model_dump(mode="json")


@router.post(
    "/cards",
    status_code=201,
    summary="Issue a card",
)
async def issue_card(
    request: Request,
    db: AsyncSession = Depends(get_db),
    verifier: CredentialVerifier = Depends(get_credential_verifier),
):
    """
    Issue a new card.

    - **number** / **numero**: 16-digit card number passing the Luhn check
    - **holder_name** / **nombre**: card holder
    - **expiration** / **fecha_venc**: YYYYMM, MMYY or MM/YY
    - **cvv**: 3-4 digits (stored only as a keyed digest)
    - **authorized_limit** / **limite**: credit limit
    - **available_balance** / **disponible**: optional, defaults to the limit
    """
    data = await read_body(request)
    payload = parse_request(CardCreateRequest, pick_aliases(data, CARD_CREATE_ALIASES))
    card = await card_service.issue_card(
        db=db,
        verifier=verifier,
        number=payload.number,
        holder_name=payload.holder_name,
        expiration=payload.expiration,
        cvv=payload.cvv,
        authorized_limit=payload.authorized_limit,
        available_balance=payload.available_balance,
        status=payload.status,
    )
    return render(request, "card", _card_body(card), status_code=201)


@router.get(
    "/cards",
    summary="List cards",
)
async def list_cards(
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List issued cards (masked), oldest first, with pagination."""
    cards = await card_service.list_cards(db=db, limit=limit, offset=offset)
    return render(request, "cards", [_card_body(card) for card in cards])


@router.get(
    "/cards/{number}",
    summary="Get a card (masked)",
)
async def get_card(
    number: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Get a card by its full number. Only the last four digits are returned."""
    card = await card_service.get_card(db=db, number=_card_number(number))
    return render(request, "card", _card_body(card))


@router.patch(
    "/cards/{number}",
    summary="Update card status or available balance",
)
async def update_card(
    number: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Update a card.

    - **status** / **estado**: active, blocked, expired (or activa, bloqueada, vencida)
    - **available_balance** / **disponible**: absolute amount in [0, limit]
    """
    card_number = _card_number(number)
    data = await read_body(request)
    payload = parse_request(CardUpdateRequest, pick_aliases(data, CARD_UPDATE_ALIASES))
    card = await card_service.update_card(
        db=db,
        number=card_number,
        status=payload.status,
        available_balance=payload.available_balance,
    )
    return render(request, "card", _card_body(card))


@router.post(
    "/cards/{number}/payments",
    status_code=201,
    summary="Apply a payment to a card",
)
async def apply_payment(
    number: str,
    request: Request,
    idempotency_key: str | None = Depends(get_idempotency_key),
    engine: AuthorizationEngine = Depends(get_authorization_engine),
):
    """
    Credit a payment to the card. The available balance never exceeds the
    authorized limit; any excess is absorbed.

    - **amount** / **monto**: positive decimal, at most 2 fractional digits
    - **reference** / **referencia**: optional, defaults to PAYMENT

    A retried request with the same **Idempotency-Key** returns 200 with
    the card's current available balance and does not credit again.
    """
    card_number = _card_number(number)
    data = await read_body(request)
    payload = parse_request(PaymentRequest, pick_aliases(data, PAYMENT_ALIASES))

    outcome = await engine.apply_payment(
        card_number=card_number,
        amount=payload.amount,
        reference=payload.reference,
        idempotency_key=idempotency_key or body_idempotency_key(data),
    )

    if isinstance(outcome, IdempotencyConflict):
        return render_error(request, 409, outcome.code, conflict_details(outcome))

    body = PaymentResponse.from_decision(outcome, settings.ISSUER_NAME)
    return render(
        request,
        "payment",
        body.model_dump(mode="json"),
        status_code=200 if outcome.replayed else 201,
        headers={"Idempotent-Replayed": "true"} if outcome.replayed else None,
    )


@router.get(
    "/cards/{number}/transactions",
    summary="List a card's transactions",
)
async def list_card_transactions(
    number: str,
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List purchases and payments recorded for a card, newest first."""
    rows = await card_service.list_card_transactions(
        db=db,
        number=_card_number(number),
        limit=limit,
        offset=offset,
    )
    return render(
        request,
        "transactions",
        [TransactionResponse.from_transaction(txn).model_dump(mode="json") for txn in rows],
    )
