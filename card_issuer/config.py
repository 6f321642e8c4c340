"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. Secrets (API key, CVV pepper, card encryption key) have no defaults
so a deployment cannot start with a guessable value; .env.example provides a
template for developers.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Usage:
    from card_issuer.config import settings
    print(settings.ISSUER_NAME)
"""

from datetime import timedelta

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the Card Issuer API.

    Required fields (no defaults) MUST be set in .env or environment:
      - API_KEY: Shared key expected in the x-api-key header
      - CVV_PEPPER: Server-side key for the CVV digest
      - CARD_ENCRYPTION_KEY: Fernet key for encrypting card numbers at rest
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "Card Issuer API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Optional prefix for every route, e.g. "/VISA" when served behind a proxy
    BASE_PATH: str = ""

    # --- Database ---
    # SQLite for local work; use postgresql+asyncpg://... in production
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/issuer.db"

    # Upper bound for the store work of a single authorization attempt
    STORE_TIMEOUT_SECONDS: float = 10.0

    # --- Authentication ---
    API_KEY: str

    # --- Card secrets ---
    # Generate with: python -c "import secrets; print(secrets.token_hex(32))"
    CVV_PEPPER: str
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    CARD_ENCRYPTION_KEY: str

    # --- Issuer identity ---
    ISSUER_NAME: str = "VISA"
    ISSUER_ID: str = "VISA-EMISOR-LOCAL"
    PUBLIC_BASE_URL: str | None = None

    # --- Idempotency ---
    IDEMPOTENCY_TTL_HOURS: float = 24

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    # --- CORS ---
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]

    @property
    def base_path(self) -> str:
        """BASE_PATH normalized to "" or "/segment" (no trailing slash)."""
        stripped = self.BASE_PATH.strip("/")
        return f"/{stripped}" if stripped else ""

    @property
    def idempotency_retention(self) -> timedelta:
        return timedelta(hours=self.IDEMPOTENCY_TTL_HOURS)


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
