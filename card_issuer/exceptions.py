"""
Custom exception classes and FastAPI exception handlers.

The service layer raises domain-specific errors without importing HTTP
concepts; the handlers registered here translate them into responses,
rendered as JSON or XML depending on what the caller negotiated.

Business denials and idempotency conflicts are NOT exceptions — the
authorization engine returns them as typed results. Exceptions are reserved
for requests that cannot be served at all.

Exception hierarchy:
    IssuerAPIError (base)
    ├── CardNotFoundError          — no card with that number (404)
    ├── DuplicateCardError         — issuing a card number twice (409)
    ├── InvalidAvailableBalanceError — available outside [0, limit] (422)
    ├── RequestValidationFailed    — malformed request fields (422)
    ├── MalformedBodyError         — body is not parseable XML/JSON (400)
    ├── InvalidApiKeyError         — missing or wrong x-api-key (401)
    ├── ApiKeyNotConfiguredError   — server has no API key set (500)
    └── TransientStoreError        — timeout / lost connection, retryable (503)
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import Response

from card_issuer.negotiation import render_error

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class IssuerAPIError(Exception):
    """Base exception for all Card Issuer API domain errors."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)

    def details(self) -> dict:
        """Extra fields rendered next to the error code."""
        return {}


# ---------------------------------------------------------------------------
# Domain exceptions
# ---------------------------------------------------------------------------

class CardNotFoundError(IssuerAPIError):
    """Raised when no card matches the requested number."""

    status_code = 404
    code = "CARD_NOT_FOUND"

    def __init__(self, last_four: str):
        self.last_four = last_four
        super().__init__(f"Card ending in {last_four} not found")


class DuplicateCardError(IssuerAPIError):
    """Raised when a card number has already been issued."""

    status_code = 409
    code = "CARD_ALREADY_EXISTS"

    def __init__(self, last_four: str):
        self.last_four = last_four
        super().__init__(f"Card ending in {last_four} already exists")


class InvalidAvailableBalanceError(IssuerAPIError):
    """Raised when a balance write would leave 0 <= available <= limit."""

    status_code = 422
    code = "INVALID_AVAILABLE"

    def __init__(self, requested_cents: int, limit_cents: int):
        self.requested_cents = requested_cents
        self.limit_cents = limit_cents
        super().__init__("Available balance must satisfy 0 <= available <= limit")

    def details(self) -> dict:
        return {"reason": "0 <= available <= limit"}


class RequestValidationFailed(IssuerAPIError):
    """
    Raised when request fields fail normalization/validation.

    Attributes:
        fields: List of {"field": name, "reason": CODE} entries.
    """

    status_code = 422
    code = "VALIDATION_ERROR"

    def __init__(self, fields: list[dict]):
        self.fields = fields
        super().__init__("Request validation failed")

    def details(self) -> dict:
        return {"fields": self.fields}


class MalformedBodyError(IssuerAPIError):
    """Raised when an XML or JSON body cannot be parsed."""

    status_code = 400

    def __init__(self, body_format: str):
        self.code = f"INVALID_{body_format}"
        super().__init__(f"Malformed {body_format}")

    def details(self) -> dict:
        return {"reason": self.detail}


class InvalidApiKeyError(IssuerAPIError):
    status_code = 401
    code = "INVALID_API_KEY"

    def __init__(self):
        super().__init__("Missing or invalid API key")


class ApiKeyNotConfiguredError(IssuerAPIError):
    status_code = 500
    code = "API_KEY_NOT_CONFIGURED"

    def __init__(self):
        super().__init__("API key is not configured on the server")


class TransientStoreError(IssuerAPIError):
    """
    Raised when the store times out, drops the connection, or aborts.

    Distinct from a denial: nothing was decided. The whole call is safe to
    retry with the same Idempotency-Key.
    """

    status_code = 503
    code = "STORE_UNAVAILABLE"

    def __init__(self, detail: str = "The card store is temporarily unavailable"):
        super().__init__(detail)


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def _field_name(loc: tuple) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path", "header")]
    return ".".join(parts) or "body"


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers with the FastAPI application.

    Every error body has the shape {"error": {"code": ..., ...details}} in
    JSON, or <error><code>...</code>...</error> in XML.
    """

    @app.exception_handler(IssuerAPIError)
    async def issuer_error_handler(request: Request, exc: IssuerAPIError) -> Response:
        if exc.status_code >= 500:
            logger.error("request_failed", error_type=exc.code, detail=exc.detail)
        return render_error(request, exc.status_code, exc.code, exc.details())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        fields = [
            {"field": _field_name(err.get("loc", ())), "reason": "INVALID_FORMAT"}
            for err in exc.errors()
        ]
        return render_error(request, 422, "VALIDATION_ERROR", {"fields": fields})

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: Exception) -> Response:
        return render_error(request, 404, "NOT_FOUND", {"path": request.url.path})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> Response:
        logger.exception("unhandled_error", error_type=type(exc).__name__)
        return render_error(request, 500, "INTERNAL_ERROR")
