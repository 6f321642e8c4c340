"""
SQLAlchemy ORM models package.

All models are imported here so that:
  1. Base.metadata knows every table when create_all runs at startup
  2. Other modules can import from card_issuer.models directly
"""

from card_issuer.models.card import Card, CardStatus  # noqa: F401
from card_issuer.models.transaction import (  # noqa: F401
    DenialReason,
    Transaction,
    TransactionKind,
    TransactionStatus,
)
