#!/usr/bin/env python3
"""
Create Mercado Pago preapproval plans for every paid catalog plan.

Examples:
  python scripts/sync_preapproval_plans.py
  python scripts/sync_preapproval_plans.py --include-inactive
"""

from __future__ import annotations

import argparse
import asyncio
import json


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync catalog plans to preapproval plans.")
    parser.add_argument(
        "--include-inactive",
        dest="include_inactive",
        action="store_true",
        help="Also register plans that are not active",
    )
    return parser.parse_args()


async def main() -> None:
    args = _parse_args()
    from app.shared.core.logging import setup_logging
    from app.tasks.billing_tasks import sync_preapproval_plans

    setup_logging()
    result = await sync_preapproval_plans(include_inactive=args.include_inactive)
    print(json.dumps(result))


if __name__ == "__main__":
    asyncio.run(main())
