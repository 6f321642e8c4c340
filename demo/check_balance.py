#!/usr/bin/env python3
"""
Print a card's limit, available balance and status straight from the store.

Usage:
    python demo/check_balance.py 4111111111111111

Reads DATABASE_URL and CARD_ENCRYPTION_KEY the same way the server does.
"""
import asyncio
import json
import re
import sys

from sqlalchemy import select

from card_issuer.database import AsyncSessionLocal, engine
from card_issuer.models.card import Card
from card_issuer.security import fingerprint_pan


async def check(pan: str) -> dict:
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(Card).where(Card.pan_fingerprint == fingerprint_pan(pan)))
        card = result.scalar_one_or_none()
    await engine.dispose()

    if card is None:
        return {"found": False}
    return {
        "found": True,
        "card": card.masked_number,
        "holder_name": card.holder_name,
        "authorized_limit": str(card.authorized_limit),
        "available_balance": str(card.available_balance),
        "status": card.status.value,
    }


def main() -> None:
    if len(sys.argv) != 2:
        print("Usage: python demo/check_balance.py <16-digit card number>", file=sys.stderr)
        sys.exit(1)
    pan = re.sub(r"\D+", "", sys.argv[1])
    if len(pan) != 16:
        print("Invalid card number. Provide 16 digits.", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(asyncio.run(check(pan)), indent=2))


if __name__ == "__main__":
    main()
