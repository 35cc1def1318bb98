#!/usr/bin/env python3
"""Seed the plan catalog. Existing plan codes are left untouched."""

import asyncio
from decimal import Decimal

from sqlalchemy import select

from app.models.billing import FREE_PLAN_CODE, Plan, PlanInterval
from app.shared.db.session import async_session_maker, get_engine

DEFAULT_PLANS = [
    {
        "code": FREE_PLAN_CODE,
        "name": "Free",
        "description": "Up to 20 products\nStorefront on a platform subdomain",
        "price": Decimal("0"),
        "sort_order": 0,
    },
    {
        "code": "STARTER",
        "name": "Starter",
        "description": "Up to 500 products\nCustom domain\nMercado Pago checkout",
        "price": Decimal("9999"),
        "sort_order": 10,
    },
    {
        "code": "PRO",
        "name": "Pro",
        "description": "Unlimited products\nCustom domain\nMercado Pago checkout\nPriority support",
        "price": Decimal("24999"),
        "sort_order": 20,
    },
]


async def seed_plans() -> None:
    print("Seeding plans...")
    async with async_session_maker() as db:
        async with db.begin():
            for config in DEFAULT_PLANS:
                res = await db.execute(select(Plan).where(Plan.code == config["code"]))
                if res.scalar_one_or_none() is not None:
                    print(f"  ~ Plan {config['code']} already exists, skipping.")
                    continue
                db.add(
                    Plan(
                        currency="ARS",
                        interval=PlanInterval.MONTH.value,
                        active=True,
                        **config,
                    )
                )
                print(f"  + Added Plan: {config['code']}")
    await get_engine().dispose()


if __name__ == "__main__":
    asyncio.run(seed_plans())
