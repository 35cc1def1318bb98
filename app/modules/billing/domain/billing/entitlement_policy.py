"""Tenant billing snapshot derivation and sync."""

from __future__ import annotations

import structlog

from app.models.billing import Subscription
from app.modules.billing.domain.billing.ports import (
    BillingRepository,
    TenantBillingSnapshot,
)

logger = structlog.get_logger()


def build_tenant_billing_snapshot(subscription: Subscription) -> TenantBillingSnapshot:
    """
    Pure function of a Subscription row (with its plan loaded).

    Period bounds fall back to the row timestamps when the provider has not
    reported billing periods yet.
    """
    return TenantBillingSnapshot(
        tenant_id=subscription.tenant_id,
        billing_status=subscription.status,
        plan_code=subscription.plan.code,
        plan_starts_at=subscription.current_period_start or subscription.created_at,
        plan_ends_at=subscription.current_period_end or subscription.updated_at,
        current_subscription_id=subscription.id,
    )


async def sync_tenant_billing_snapshot(
    repository: BillingRepository, subscription: Subscription, *, source: str
) -> TenantBillingSnapshot:
    """Write the derived snapshot onto the tenant. Idempotent for unchanged input."""
    snapshot = build_tenant_billing_snapshot(subscription)
    await repository.set_tenant_billing_snapshot(snapshot)
    logger.info(
        "billing_entitlement_synced",
        tenant_id=snapshot.tenant_id,
        billing_status=snapshot.billing_status,
        plan_code=snapshot.plan_code,
        subscription_id=snapshot.current_subscription_id,
        source=source,
    )
    return snapshot
