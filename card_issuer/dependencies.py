"""
FastAPI dependencies for authentication and the authorization engine.

Dependencies are reusable functions that FastAPI injects into route handlers:

  require_api_key              (x-api-key header -> None, or 401/500)
  get_credential_verifier      (settings -> CredentialVerifier)
  get_idempotency_resolver     (settings -> IdempotencyResolver)
  get_authorization_engine     (session factory + both above -> AuthorizationEngine)
  get_idempotency_key          (Idempotency-Key header, normalized)

Tests override get_db and get_session_factory, and every engine built per
request picks the overridden factory up through this chain.
"""

from fastapi import Depends, Header, Security
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from card_issuer.config import settings
from card_issuer.database import get_session_factory
from card_issuer.exceptions import ApiKeyNotConfiguredError, InvalidApiKeyError
from card_issuer.schemas.common import normalize_idempotency_key
from card_issuer.security import CredentialVerifier, api_key_matches
from card_issuer.services.authorization_service import AuthorizationEngine
from card_issuer.services.idempotency import IdempotencyResolver

# auto_error=False so a missing key is reported in our error format
api_key_scheme = APIKeyHeader(name="x-api-key", auto_error=False)


async def require_api_key(api_key: str | None = Security(api_key_scheme)) -> None:
    """
    Reject the request unless it carries the configured API key.

    Raises:
        ApiKeyNotConfiguredError: If the server has no API key set.
        InvalidApiKeyError: If the header is missing or wrong.
    """
    configured = settings.API_KEY
    if not configured or not configured.strip():
        raise ApiKeyNotConfiguredError()
    if not api_key_matches(api_key, configured):
        raise InvalidApiKeyError()


def get_credential_verifier() -> CredentialVerifier:
    return CredentialVerifier(settings.CVV_PEPPER)


def get_idempotency_resolver() -> IdempotencyResolver:
    return IdempotencyResolver(retention=settings.idempotency_retention)


def get_authorization_engine(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    verifier: CredentialVerifier = Depends(get_credential_verifier),
    resolver: IdempotencyResolver = Depends(get_idempotency_resolver),
) -> AuthorizationEngine:
    return AuthorizationEngine(
        session_factory=session_factory,
        verifier=verifier,
        resolver=resolver,
        store_timeout=settings.STORE_TIMEOUT_SECONDS,
    )


def get_idempotency_key(
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
) -> str | None:
    """The Idempotency-Key header; routes fall back to a body field when absent."""
    return normalize_idempotency_key(idempotency_key)
