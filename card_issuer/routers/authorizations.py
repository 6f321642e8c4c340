"""
Authorizations router — purchase authorization requests from merchants.

Endpoints:
  POST /api/v1/authorizations — Approve or deny a purchase
  GET  /autorizacion          — Legacy terminal form of the same request

Bodies are accepted as JSON or XML (<authorization> / <autorizacion>), with
English or Spanish field names. Responses:
  201 — a new decision was recorded (approved or denied)
  200 — replay of a recorded decision (Idempotent-Replayed: true), or an
        unknown-card denial, which is not recorded
  409 — the Idempotency-Key was first used with different parameters
  503 — transient store failure; retry with the same Idempotency-Key

The legacy GET takes the fields as query parameters and always answers 200
for a decided request: a conflict comes back as an error body, not a 409.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from card_issuer.config import settings
from card_issuer.dependencies import (
    get_authorization_engine,
    get_idempotency_key,
    require_api_key,
)
from card_issuer.negotiation import (
    XML,
    decide_format,
    pick_aliases,
    read_body,
    render,
    render_error,
)
from card_issuer.schemas.common import parse_request
from card_issuer.schemas.transaction import (
    AUTHORIZATION_ALIASES,
    AuthorizationRequest,
    AuthorizationResponse,
    body_idempotency_key,
    conflict_details,
)
from card_issuer.services.authorization_service import AuthorizationEngine
from card_issuer.services.decisions import AuthorizationDecision, IdempotencyConflict

router = APIRouter(dependencies=[Depends(require_api_key)])

# mounted under BASE_PATH only, outside /api/v1
legacy_router = APIRouter(dependencies=[Depends(require_api_key)])


async def _decide(
    engine: AuthorizationEngine,
    data: dict,
    idempotency_key: str | None,
) -> AuthorizationDecision | IdempotencyConflict:
    payload = parse_request(AuthorizationRequest, pick_aliases(data, AUTHORIZATION_ALIASES))
    return await engine.authorize(
        card_number=payload.card,
        secret=payload.cvv,
        amount=payload.amount,
        merchant=payload.merchant,
        idempotency_key=idempotency_key or body_idempotency_key(data),
    )


def _decision_body(decision: AuthorizationDecision) -> dict:
    body = AuthorizationResponse.from_decision(decision, settings.ISSUER_NAME)
    return body.model_dump(mode="json", exclude_none=True)


@router.post(
    "/authorizations",
    status_code=201,
    summary="Authorize a purchase",
)
async def authorize(
    request: Request,
    idempotency_key: str | None = Depends(get_idempotency_key),
    engine: AuthorizationEngine = Depends(get_authorization_engine),
):
    """
    Authorize a purchase against a card.

    - **card** / **tarjeta**: 16-digit card number (spaces and dashes allowed)
    - **cvv** / **num_seguridad**: 3-4 digit security code
    - **amount** / **monto**: positive decimal, at most 2 fractional digits
    - **merchant** / **tienda**: merchant identifier

    Send an **Idempotency-Key** header so a retried request returns the
    original decision instead of charging again.
    """
    data = await read_body(request)
    outcome = await _decide(engine, data, idempotency_key)

    if isinstance(outcome, IdempotencyConflict):
        return render_error(request, 409, outcome.code, conflict_details(outcome))

    headers = {"Idempotent-Replayed": "true"} if outcome.replayed else None
    status_code = 201 if outcome.persisted and not outcome.replayed else 200
    return render(
        request,
        "authorization",
        _decision_body(outcome),
        status_code=status_code,
        headers=headers,
    )


@legacy_router.get("/autorizacion", summary="Authorize a purchase (legacy terminals)")
async def authorize_legacy(
    request: Request,
    idempotency_key: str | None = Depends(get_idempotency_key),
    engine: AuthorizationEngine = Depends(get_authorization_engine),
):
    """
    Query-string authorization for terminals that cannot send a body.

    Example: `GET /autorizacion?tarjeta=4111111111111111&cvv=123&monto=10.00&tienda=SHOP`

    JSON responses are wrapped as {"autorizacion": {...}}; XML uses the
    <autorizacion> root.
    """
    outcome = await _decide(engine, dict(request.query_params), idempotency_key)

    if isinstance(outcome, IdempotencyConflict):
        return render_error(request, 200, outcome.code, conflict_details(outcome))

    headers = {"Idempotent-Replayed": "true"} if outcome.replayed else None
    body = _decision_body(outcome)
    if decide_format(request) == XML:
        return render(request, "autorizacion", body, headers=headers)
    return JSONResponse(content={"autorizacion": body}, headers=headers)
