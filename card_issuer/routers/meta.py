"""
Service metadata and probes. None of these require an API key.

  GET /metadata — issuer identity, public host, supported formats
  GET /healthz  — liveness: the process is serving requests
  GET /readyz   — readiness: the card store answers SELECT 1
"""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from card_issuer.config import settings
from card_issuer.database import check_db, get_session_factory
from card_issuer.negotiation import JSON, XML, render

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/metadata", summary="Issuer metadata")
async def metadata(request: Request):
    host = settings.PUBLIC_BASE_URL or f"{str(request.base_url).rstrip('/')}{settings.base_path}"
    body = {
        "issuer_id": settings.ISSUER_ID,
        "issuer": settings.ISSUER_NAME,
        "host": host,
        "formats": [JSON, XML],
        "scripts": {
            "authorization": f"{settings.base_path}/api/v1/authorizations",
            "autorizacion": f"{settings.base_path}/autorizacion",
        },
    }
    return render(request, "metadata", body)


@router.get("/healthz", summary="Liveness probe")
async def healthz():
    return {"ok": True}


@router.get("/readyz", summary="Readiness probe")
async def readyz(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Ready when the card store answers; 503 otherwise so traffic is held back."""
    try:
        await check_db(session_factory)
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("readiness_check_failed", error_type=type(exc).__name__)
        return JSONResponse(status_code=503, content={"ready": False, "error": "store unavailable"})
    return {"ready": True}
