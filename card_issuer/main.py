"""
FastAPI application factory and entry point.

This module creates and configures the FastAPI application:
  1. Logging — structlog JSON output with correlation ids
  2. Lifespan manager — handles startup/shutdown (DB table creation, cleanup)
  3. Middleware — correlation id, request logging, CORS
  4. Exception handlers — maps domain errors to JSON/XML error bodies
  5. Router registration — mounts all API endpoint groups under BASE_PATH

Running locally:
    uvicorn card_issuer.main:app --reload
"""

from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from asgi_correlation_id import CorrelationIdMiddleware
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from card_issuer import models  # noqa: F401  registers tables on Base.metadata
from card_issuer.config import settings
from card_issuer.database import engine, Base
from card_issuer.exceptions import register_exception_handlers
from card_issuer.log_config import configure_logging
from card_issuer.middleware import RequestLoggingMiddleware
from card_issuer.routers import authorizations, cards, meta

configure_logging(settings.LOG_LEVEL)
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
      Creates the SQLite data directory and all database tables if they
      don't exist.

    Shutdown:
      Disposes of the database engine, closing all connections cleanly.
    """
    # --- Startup ---
    database = engine.url.database
    if engine.url.get_backend_name() == "sqlite" and database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("startup", issuer=settings.ISSUER_ID, base_path=settings.base_path or "/")
    yield
    # --- Shutdown ---
    await engine.dispose()
    logger.info("shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Card issuer API: purchase authorization, payments and card administration",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware (the last one added is the outermost)
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Idempotent-Replayed"],
)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware, header_name="X-Request-ID")

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

api_prefix = f"{settings.base_path}/api/v1"

app.include_router(authorizations.router, prefix=api_prefix, tags=["Authorizations"])
app.include_router(cards.router, prefix=api_prefix, tags=["Cards"])
app.include_router(authorizations.legacy_router, prefix=settings.base_path, tags=["Authorizations"])
app.include_router(meta.router, prefix=settings.base_path, tags=["Health"])
