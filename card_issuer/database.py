"""
Database engine, session management, and base model class.

This module sets up SQLAlchemy 2.0 with async support. Key components:

  - engine: The async database engine (connection pool for production DBs)
  - AsyncSessionLocal: Factory for creating async database sessions
  - Base: Declarative base class that all ORM models inherit from
  - get_db(): FastAPI dependency that provides a session per request
  - get_session_factory(): FastAPI dependency for components that manage
    their own transaction boundaries (the authorization engine)
  - check_db(): readiness probe

Session lifecycle:
  Card administration requests get their own session via get_db(). The
  session commits on success and rolls back on exception. Authorizations and
  payments open sessions from the factory themselves, because a lost
  idempotency race has to roll back and re-read inside the same request.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from card_issuer.config import settings


# echo=True in debug mode logs all SQL statements.
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
)

# expire_on_commit=False prevents lazy-load errors after commit:
# without this, accessing attributes on a committed object would trigger
# a synchronous DB call, which fails in async context.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


async def get_db():
    """
    FastAPI dependency that provides a database session.

    The session is committed on success and rolled back on any exception,
    then closed when the request completes.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency returning the session factory (overridden in tests)."""
    return AsyncSessionLocal


async def check_db(session_factory: async_sessionmaker[AsyncSession]) -> bool:
    """Ping the store with SELECT 1. Raises if the store is unreachable."""
    async with session_factory() as session:
        await session.execute(text("SELECT 1"))
    return True
