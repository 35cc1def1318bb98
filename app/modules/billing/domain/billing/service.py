"""Subscription lifecycle use cases for tenant billing."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping, Optional

import structlog

from app.models.billing import BillingStatus, Plan, Subscription
from app.models.payments import BILLING_PROVIDER_CODE
from app.models.tenant import Tenant
from app.modules.billing.domain.billing.entitlement_policy import (
    sync_tenant_billing_snapshot,
)
from app.modules.billing.domain.billing.errors import BillingError, BillingErrorCode
from app.modules.billing.domain.billing.ports import BillingRepository, SubscriptionUpsert
from app.modules.billing.domain.billing.provider import (
    CreateSubscriptionInput,
    PreapprovalPlanInput,
    SubscriptionProvider,
    SubscriptionSnapshot,
)
from app.modules.billing.domain.billing.status_mapper import map_preapproval_status
from app.shared.core.config import get_settings
from app.shared.core.mercadopago import as_str_id

logger = structlog.get_logger()

SYNC_STATUS_BUCKETS = ("authorized", "pending")

# Subscriptions whose preapproval can still be amended provider-side.
CHANGEABLE_STATUSES = frozenset(
    {BillingStatus.ACTIVE.value, BillingStatus.TRIALING.value, BillingStatus.PAST_DUE.value}
)


def preapproval_event_id(external_subscription_id: str, webhook_id: Optional[str]) -> str:
    return f"preapproval:{external_subscription_id}:{webhook_id or 'unknown'}"


def extract_preapproval_id(payload: Mapping[str, Any]) -> Optional[str]:
    data = payload.get("data")
    if isinstance(data, Mapping) and "id" in data:
        return as_str_id(data.get("id"))
    return as_str_id(payload.get("data.id")) or as_str_id(payload.get("id"))


@dataclass(frozen=True)
class CreateSubscriptionOutcome:
    subscription_id: Optional[str]
    external_subscription_id: Optional[str]
    init_point: Optional[str]


@dataclass(frozen=True)
class WebhookOutcome:
    tenant_id: Optional[str]
    subscription_id: Optional[str]
    external_subscription_id: str
    duplicate: bool = False


class BillingService:
    def __init__(self, repository: BillingRepository, provider: SubscriptionProvider):
        self.repository = repository
        self.provider = provider
        self.settings = get_settings()

    # ------------------------------------------------------------------
    # Plan validation
    # ------------------------------------------------------------------

    async def _require_plan_by_id(self, plan_id: str) -> Plan:
        plan = await self.repository.get_plan_by_id(plan_id)
        if plan is None:
            raise BillingError(BillingErrorCode.PLAN_NOT_FOUND, "Plan not found")
        return plan

    async def _require_billable_plan(self, plan_code: str) -> Plan:
        plan = await self.repository.get_plan_by_code(plan_code)
        if plan is None:
            raise BillingError(BillingErrorCode.PLAN_NOT_FOUND, "Plan not found")
        if not plan.active:
            raise BillingError(BillingErrorCode.PLAN_INACTIVE, "Selected plan is not active")
        if plan.is_zero_cost:
            raise BillingError(
                BillingErrorCode.PLAN_UNAVAILABLE,
                "The free plan does not require a paid subscription",
            )
        return plan

    def _store_back_url(self, tenant: Tenant) -> Optional[str]:
        if tenant.website:
            return f"{tenant.website.rstrip('/')}/admin/billing"
        return None

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_subscription_by_plan_id(
        self, tenant_id: str, plan_id: str
    ) -> CreateSubscriptionOutcome:
        plan = await self._require_plan_by_id(plan_id)
        return await self.create_subscription_for_tenant(tenant_id, plan.code)

    async def create_subscription_for_tenant(
        self, tenant_id: str, plan_code: str
    ) -> CreateSubscriptionOutcome:
        tenant = await self.repository.get_tenant(tenant_id)
        if tenant is None:
            raise BillingError(BillingErrorCode.TENANT_NOT_FOUND, "Tenant not found")
        owner = await self.repository.get_tenant_owner(tenant_id)
        if owner is None or not owner.email:
            raise BillingError(
                BillingErrorCode.TENANT_NOT_FOUND,
                "Tenant owner has no e-mail address",
                status_code=400,
            )

        plan = await self._require_billable_plan(plan_code)

        if plan.mp_preapproval_plan_id:
            # Plan-anchored preapprovals need a card token server-side; send the
            # payer to the hosted checkout and let the webhook create the row.
            checkout_url = self.provider.build_plan_checkout_url(
                preapproval_plan_id=plan.mp_preapproval_plan_id,
                tenant_id=tenant.id,
                payer_email=owner.email,
            )
            logger.info(
                "billing_plan_checkout_url_built",
                tenant_id=tenant.id,
                plan_code=plan.code,
            )
            return CreateSubscriptionOutcome(None, None, checkout_url)

        result = await self.provider.create_subscription(
            CreateSubscriptionInput(
                tenant_id=tenant.id,
                owner_email=owner.email,
                plan_code=plan.code,
                plan_name=plan.name,
                amount=Decimal(plan.price),
                currency=plan.currency,
                interval=plan.interval,
                trial_days=plan.trial_days,
                back_url=self._store_back_url(tenant),
            )
        )

        if not result.external_subscription_id:
            logger.warning(
                "billing_provider_missing_subscription_id",
                tenant_id=tenant.id,
                plan_id=plan.id,
                has_init_point=bool(result.init_point),
            )
            if result.init_point:
                return CreateSubscriptionOutcome(None, None, result.init_point)
            raise BillingError(
                BillingErrorCode.PROVIDER_ERROR,
                "Provider did not return a subscription id",
            )

        subscription = await self.repository.create_subscription(
            SubscriptionUpsert(
                tenant_id=tenant.id,
                plan_id=plan.id,
                external_subscription_id=result.external_subscription_id,
                status=map_preapproval_status(result.status).value,
                current_period_start=result.current_period_start,
                current_period_end=result.current_period_end,
            )
        )
        await self.repository.add_subscription_event(
            subscription.id,
            "subscription.created",
            {"provider_status": result.status, "init_point": result.init_point},
        )
        await self.repository.commit()

        logger.info(
            "billing_subscription_created",
            tenant_id=tenant.id,
            subscription_id=subscription.id,
            plan_code=plan.code,
        )
        return CreateSubscriptionOutcome(
            subscription.id, result.external_subscription_id, result.init_point
        )

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    async def _resolve_tenant_id(
        self, snapshot: SubscriptionSnapshot, existing: Optional[Subscription]
    ) -> Optional[str]:
        if snapshot.external_reference:
            return snapshot.external_reference
        if existing is not None:
            logger.info("billing_webhook_tenant_from_subscription", tenant_id=existing.tenant_id)
            return existing.tenant_id
        if snapshot.payer_email:
            # Heuristic: may match the wrong tenant if owners share an e-mail
            tenant = await self.repository.find_tenant_by_owner_email(snapshot.payer_email)
            if tenant is not None:
                logger.warning("billing_webhook_tenant_from_payer_email", tenant_id=tenant.id)
                return tenant.id
        return None

    async def _resolve_plan_id(
        self,
        tenant: Tenant,
        snapshot: SubscriptionSnapshot,
        existing: Optional[Subscription],
    ) -> str:
        if existing is not None:
            return existing.plan_id
        current = await self.repository.get_current_subscription(tenant.id)
        if current is not None:
            return current.plan_id
        plan: Optional[Plan] = None
        if snapshot.preapproval_plan_id:
            plan = await self.repository.get_plan_by_preapproval_plan_id(
                snapshot.preapproval_plan_id
            )
        if plan is None and tenant.plan:
            plan = await self.repository.get_plan_by_code(tenant.plan)
        if plan is None:
            raise BillingError(BillingErrorCode.PLAN_NOT_FOUND, "Tenant plan not found")
        return plan.id

    async def handle_preapproval_webhook(self, payload: Mapping[str, Any]) -> WebhookOutcome:
        external_id = extract_preapproval_id(payload)
        if not external_id:
            raise BillingError(
                BillingErrorCode.INVALID_WEBHOOK, "Preapproval webhook without id"
            )
        webhook_id = as_str_id(payload.get("id"))
        event_id = preapproval_event_id(external_id, webhook_id)

        if await self.repository.is_webhook_event_processed(BILLING_PROVIDER_CODE, event_id):
            logger.info("webhook_duplicate_ignored", provider=BILLING_PROVIDER_CODE, event_id=event_id)
            return WebhookOutcome(None, None, external_id, duplicate=True)

        snapshot = await self.provider.get_subscription(external_id)
        logger.info(
            "billing_webhook_snapshot_fetched",
            external_subscription_id=external_id,
            external_reference=snapshot.external_reference,
            status=snapshot.status,
            preapproval_plan_id=snapshot.preapproval_plan_id,
        )

        existing = await self.repository.get_subscription_by_external_id(
            snapshot.external_subscription_id
        )
        tenant_id = await self._resolve_tenant_id(snapshot, existing)
        if not tenant_id:
            logger.warning(
                "billing_webhook_tenant_unresolved",
                external_subscription_id=external_id,
            )
            raise BillingError(
                BillingErrorCode.INVALID_WEBHOOK,
                "Subscription has no external_reference or matching owner e-mail",
            )

        tenant = await self.repository.get_tenant(tenant_id)
        if tenant is None:
            raise BillingError(
                BillingErrorCode.TENANT_NOT_FOUND, "Tenant not found for webhook"
            )

        plan_id = await self._resolve_plan_id(tenant, snapshot, existing)
        subscription = await self.repository.upsert_subscription(
            SubscriptionUpsert(
                tenant_id=tenant.id,
                plan_id=plan_id,
                external_subscription_id=snapshot.external_subscription_id,
                status=map_preapproval_status(snapshot.status).value,
                current_period_start=snapshot.current_period_start,
                current_period_end=snapshot.current_period_end,
                cancel_at_period_end=snapshot.cancel_at_period_end,
            )
        )
        await self.repository.add_subscription_event(
            subscription.id, "preapproval.webhook", snapshot.raw
        )
        await sync_tenant_billing_snapshot(
            self.repository, subscription, source="preapproval_webhook"
        )
        recorded = await self.repository.record_webhook_event(
            tenant_id=tenant.id,
            provider=BILLING_PROVIDER_CODE,
            event_id=event_id,
            event_type="preapproval",
            payload=snapshot.raw,
        )
        if not recorded:
            await self.repository.rollback()
            logger.info("webhook_duplicate_ignored", provider=BILLING_PROVIDER_CODE, event_id=event_id)
            return WebhookOutcome(None, None, external_id, duplicate=True)
        await self.repository.commit()

        logger.info(
            "billing_preapproval_webhook_processed",
            tenant_id=tenant.id,
            subscription_id=subscription.id,
            external_subscription_id=snapshot.external_subscription_id,
            status=subscription.status,
        )
        return WebhookOutcome(tenant.id, subscription.id, snapshot.external_subscription_id)

    # ------------------------------------------------------------------
    # Plan change
    # ------------------------------------------------------------------

    async def change_subscription_plan_by_plan_id(
        self, tenant_id: str, plan_id: str
    ) -> Subscription:
        plan = await self._require_plan_by_id(plan_id)
        return await self.change_subscription_plan(tenant_id, plan.code)

    async def change_subscription_plan(self, tenant_id: str, plan_code: str) -> Subscription:
        plan = await self._require_billable_plan(plan_code)
        current = await self.repository.get_current_subscription(tenant_id)
        if current is None or current.status not in CHANGEABLE_STATUSES:
            raise BillingError(
                BillingErrorCode.SUBSCRIPTION_NOT_FOUND,
                "No active subscription to change plan on",
                details={"billing_status": current.status if current else None},
            )

        # Only the billed amount changes provider-side; the preapproval stays the same.
        await self.provider.change_subscription_plan_amount(
            current.external_subscription_id, Decimal(plan.price), plan.currency
        )
        subscription = await self.repository.upsert_subscription(
            SubscriptionUpsert(
                tenant_id=tenant_id,
                plan_id=plan.id,
                external_subscription_id=current.external_subscription_id,
                status=current.status,
                current_period_start=current.current_period_start,
                current_period_end=current.current_period_end,
                cancel_at_period_end=current.cancel_at_period_end,
            )
        )
        await self.repository.add_subscription_event(
            subscription.id,
            "subscription.plan_changed",
            {"new_plan_code": plan.code, "amount": str(plan.price)},
        )
        await sync_tenant_billing_snapshot(self.repository, subscription, source="plan_change")
        await self.repository.commit()

        logger.info(
            "billing_subscription_plan_changed",
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            plan_code=plan.code,
        )
        return subscription

    # ------------------------------------------------------------------
    # Periodic reconciliation
    # ------------------------------------------------------------------

    async def _sync_one(self, snapshot: SubscriptionSnapshot) -> bool:
        tenant_id = snapshot.external_reference
        if not tenant_id:
            logger.info(
                "subscription_sync_item_skipped",
                reason="missing_external_reference",
                external_subscription_id=snapshot.external_subscription_id,
            )
            return False
        tenant = await self.repository.get_tenant(tenant_id)
        if tenant is None:
            logger.warning(
                "subscription_sync_item_skipped",
                reason="tenant_not_found",
                tenant_id=tenant_id,
                external_subscription_id=snapshot.external_subscription_id,
            )
            return False

        current = await self.repository.get_current_subscription(tenant.id)
        plan_code = current.plan.code if current is not None else tenant.plan
        plan = await self.repository.get_plan_by_code(plan_code) if plan_code else None
        if plan is None:
            logger.warning(
                "subscription_sync_item_skipped",
                reason="plan_not_found",
                tenant_id=tenant.id,
                plan_code=plan_code,
            )
            return False

        subscription = await self.repository.upsert_subscription(
            SubscriptionUpsert(
                tenant_id=tenant.id,
                plan_id=plan.id,
                external_subscription_id=snapshot.external_subscription_id,
                status=map_preapproval_status(snapshot.status).value,
                current_period_start=snapshot.current_period_start,
                current_period_end=snapshot.current_period_end,
                cancel_at_period_end=snapshot.cancel_at_period_end,
            )
        )
        await self.repository.add_subscription_event(
            subscription.id, "subscription.sync", snapshot.raw
        )
        await sync_tenant_billing_snapshot(self.repository, subscription, source="sync_job")
        await self.repository.commit()
        return True

    async def sync_active_subscriptions_job(self) -> dict[str, int]:
        """Reconcile provider authorized/pending preapprovals, one item at a time."""
        processed = 0
        skipped = 0
        for status in SYNC_STATUS_BUCKETS:
            snapshots = await self.provider.search_subscriptions_by_status(status)
            for snapshot in snapshots:
                if await self._sync_one(snapshot):
                    processed += 1
                else:
                    skipped += 1

        logger.info("subscription_sync_completed", processed=processed, skipped=skipped)
        return {"processed": processed, "skipped": skipped}

    async def sync_preapproval_plans(self, *, include_inactive: bool = False) -> dict[str, int]:
        """Make sure every paid plan has a provider preapproval plan id."""
        plans = await self.repository.list_plans(include_inactive=include_inactive)
        created = 0
        updated = 0
        for plan in plans:
            data = PreapprovalPlanInput(
                code=plan.code,
                name=plan.name,
                description=plan.description,
                amount=Decimal(plan.price),
                currency=plan.currency,
                interval=plan.interval,
                trial_days=plan.trial_days,
                preapproval_plan_id=plan.mp_preapproval_plan_id,
            )
            if plan.mp_preapproval_plan_id:
                if not plan.is_zero_cost:
                    await self.provider.update_preapproval_plan(plan.mp_preapproval_plan_id, data)
                    updated += 1
                continue
            provider_plan_id = await self.provider.ensure_preapproval_plan(data)
            if not provider_plan_id:
                continue
            created += 1
            await self.repository.set_plan_preapproval_id(plan.id, provider_plan_id)

        await self.repository.commit()
        logger.info(
            "billing_preapproval_plans_synced",
            created=created,
            updated=updated,
            total=len(plans),
        )
        return {"created": created, "updated": updated, "total": len(plans)}

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def list_public_plans(self) -> list[Plan]:
        return list(await self.repository.list_plans())

    async def list_plans_for_billing(self) -> list[Plan]:
        return list(await self.repository.list_plans())

    async def get_current_subscription(self, tenant_id: str) -> Optional[Subscription]:
        return await self.repository.get_current_subscription(tenant_id)
