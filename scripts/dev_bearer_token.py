#!/usr/bin/env python3
"""
Generate a short-lived bearer JWT for local dev/testing.

Useful for scripted API smoke tests (curl) against the billing and payments
endpoints. The token is signed with `JWT_SECRET` (same as the API).

Examples:
  python scripts/dev_bearer_token.py --user-id 3f6c...
  python scripts/dev_bearer_token.py --email owner@store.test --hours 2
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import timedelta

# Ensure any library logs go to stderr so we keep stdout clean for the JWT.
logging.basicConfig(stream=sys.stderr, level=logging.WARNING)
from sqlalchemy import func, select  # noqa: E402


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a local dev bearer JWT.")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--user-id", dest="user_id", type=str, help="User id")
    group.add_argument("--email", dest="email", type=str, help="User email")
    parser.add_argument(
        "--hours", dest="hours", type=float, default=2.0, help="Token TTL in hours"
    )
    return parser.parse_args()


async def _resolve_user_id(args: argparse.Namespace) -> str:
    from app.models.tenant import User
    from app.shared.db.session import async_session_maker, get_engine

    async with async_session_maker() as db:
        query = select(User.id)
        if args.user_id:
            query = query.where(User.id == args.user_id)
        elif args.email:
            query = query.where(func.lower(User.email) == args.email.strip().lower())
        row = (await db.execute(query.limit(1))).first()
    await get_engine().dispose()

    if not row:
        raise SystemExit("No matching user found in DB. Seed a tenant and user first.")
    return str(row[0])


async def main() -> None:
    args = _parse_args()
    from app.shared.core.auth import create_access_token

    user_id = await _resolve_user_id(args)
    print(create_access_token({"sub": user_id}, timedelta(hours=args.hours)))


if __name__ == "__main__":
    asyncio.run(main())
