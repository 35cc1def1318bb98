#!/usr/bin/env python3
"""
Reconcile local subscriptions with Mercado Pago preapprovals.

Same job as the `billing.sync_active_subscriptions` Celery task, for cron hosts
that do not run a worker.

Examples:
  python scripts/billing_subscription_sync.py
"""

from __future__ import annotations

import argparse
import asyncio
import json


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Sync authorized/pending preapprovals into local subscriptions."
    )
    return parser.parse_args()


async def main() -> None:
    _parse_args()
    # Import inside main so settings are read after argument parsing.
    from app.shared.core.logging import setup_logging
    from app.tasks.billing_tasks import sync_active_subscriptions

    setup_logging()
    result = await sync_active_subscriptions()
    print(json.dumps(result))


if __name__ == "__main__":
    asyncio.run(main())
