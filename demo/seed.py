#!/usr/bin/env python3
"""
Demo seed script — issues sample cards and runs a few purchases through the API.

!! NOT FOR PRODUCTION !!
This script issues cards with known numbers and CVVs. It is intended ONLY
for local demos and terminal integration testing.

Usage:
    # With the API server running on localhost:8000:
    API_KEY=... python demo/seed.py

    # Reset the database and re-seed:
    python demo/seed.py --reset

    # Custom server URL:
    python demo/seed.py --base-url http://localhost:9000

Cards after seeding:
    ┌──────────────────────┬──────┬──────────────┬─────────┐
    │ Number               │ CVV  │ Holder       │ Limit   │
    ├──────────────────────┼──────┼──────────────┼─────────┤
    │ 4111 1111 1111 1111  │ 123  │ ALICE TEST   │ 1500.00 │
    │ 4012 8888 8888 1881  │ 456  │ BOB TEST     │  800.00 │
    │ 5555 5555 5555 4444  │ 789  │ CAROL TEST   │ 2500.00 │
    │ 5105 1051 0510 5100  │ 321  │ DAVE TEST    │  300.00 │ (blocked)
    └──────────────────────┴──────┴──────────────┴─────────┘
"""

import argparse
import asyncio
import os
import random
import uuid

import httpx

BASE_URL = "http://localhost:8000"

# ---------------------------------------------------------------------------
# Demo cards
# ---------------------------------------------------------------------------

CARDS = [
    {"number": "4111111111111111", "cvv": "123", "holder_name": "Alice Test",
     "expiration": "12/28", "authorized_limit": "1500.00"},
    {"number": "4012888888881881", "cvv": "456", "holder_name": "Bob Test",
     "expiration": "07/27", "authorized_limit": "800.00"},
    {"number": "5555555555554444", "cvv": "789", "holder_name": "Carol Test",
     "expiration": "03/29", "authorized_limit": "2500.00"},
    {"number": "5105105105105100", "cvv": "321", "holder_name": "Dave Test",
     "expiration": "01/27", "authorized_limit": "300.00", "status": "blocked"},
]

MERCHANTS = [
    "COFFEE_SHOP",
    "GROCERY_MART",
    "BOOKSTORE",
    "GAS_STATION",
    "PHARMACY",
    "ONLINE_STORE",
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def log(msg: str) -> None:
    print(f"  {msg}")


def api_headers(api_key: str) -> dict:
    return {"x-api-key": api_key, "Accept": "application/json"}


async def issue_card(client: httpx.AsyncClient, base_url: str, card: dict) -> bool:
    resp = await client.post(f"{base_url}/api/v1/cards", json=card)
    if resp.status_code == 409:
        return False
    resp.raise_for_status()
    return True


async def authorize(client: httpx.AsyncClient, base_url: str, card: dict,
                    amount: str, merchant: str) -> dict:
    resp = await client.post(
        f"{base_url}/api/v1/authorizations",
        json={"card": card["number"], "cvv": card["cvv"], "amount": amount, "merchant": merchant},
        headers={"Idempotency-Key": str(uuid.uuid4())},
    )
    resp.raise_for_status()
    return resp.json()


# ---------------------------------------------------------------------------
# Seed logic
# ---------------------------------------------------------------------------

async def seed(base_url: str, api_key: str) -> None:
    async with httpx.AsyncClient(headers=api_headers(api_key), timeout=30) as client:
        print("\nIssuing cards...")
        for card in CARDS:
            created = await issue_card(client, base_url, card)
            state = "issued" if created else "already exists"
            log(f"****-****-****-{card['number'][-4:]} {card['holder_name']}: {state}")

        print("\nRunning purchases...")
        for card in CARDS:
            for _ in range(random.randint(2, 5)):
                amount = f"{random.randint(300, 12_000) / 100:.2f}"
                result = await authorize(client, base_url, card, amount, random.choice(MERCHANTS))
                outcome = result["status"]
                if result.get("reason"):
                    outcome += f" ({result['reason']})"
                log(f"{result['card']} {amount:>8s}: {outcome}")

    print("\n========================================")
    print("  SEED COMPLETE — Demo cards")
    print("========================================")
    print(f"\n  {'Number':<20s} {'CVV':<5s} {'Limit'}")
    print(f"  {'─' * 20} {'─' * 5} {'─' * 8}")
    for card in CARDS:
        print(f"  {card['number']:<20s} {card['cvv']:<5s} {card['authorized_limit']}")
    print()


def reset_database() -> None:
    """Delete the SQLite database file so the server recreates it on restart."""
    db_path = os.path.join(os.path.dirname(__file__), "..", "data", "issuer.db")
    db_path = os.path.normpath(db_path)

    if os.path.exists(db_path):
        os.remove(db_path)
        print(f"\n  Deleted {db_path}")
        print("  Restart the server to recreate empty tables.\n")
    else:
        print(f"\n  No database found at {db_path}\n")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

async def main() -> None:
    parser = argparse.ArgumentParser(
        description="Demo seed script — NOT FOR PRODUCTION",
        epilog="Issues sample cards and runs purchases against them.",
    )
    parser.add_argument(
        "--base-url", default=BASE_URL,
        help=f"Base URL of the running API (default: {BASE_URL})",
    )
    parser.add_argument(
        "--api-key", default=os.environ.get("API_KEY"),
        help="Value for the x-api-key header (default: $API_KEY)",
    )
    parser.add_argument(
        "--reset", action="store_true",
        help="Delete the database file and exit (restart server to recreate)",
    )
    args = parser.parse_args()

    if args.reset:
        reset_database()
        return
    if not args.api_key:
        parser.error("an API key is required (--api-key or $API_KEY)")

    await seed(args.base_url.rstrip("/"), args.api_key)


if __name__ == "__main__":
    asyncio.run(main())
