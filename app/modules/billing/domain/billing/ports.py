"""Persistence capabilities the billing use cases depend on."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from app.models.billing import Plan, Subscription
from app.models.tenant import Tenant, User


@dataclass(frozen=True)
class SubscriptionUpsert:
    tenant_id: str
    plan_id: str
    external_subscription_id: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class TenantBillingSnapshot:
    tenant_id: str
    billing_status: str
    plan_code: str
    plan_starts_at: Optional[datetime]
    plan_ends_at: Optional[datetime]
    current_subscription_id: str


class BillingRepository(Protocol):
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    async def get_tenant_owner(self, tenant_id: str) -> Optional[User]: ...

    async def find_tenant_by_owner_email(self, email: str) -> Optional[Tenant]: ...

    async def get_plan_by_id(self, plan_id: str) -> Optional[Plan]: ...

    async def get_plan_by_code(self, code: str) -> Optional[Plan]: ...

    async def get_plan_by_preapproval_plan_id(
        self, preapproval_plan_id: str
    ) -> Optional[Plan]: ...

    async def list_plans(self, *, include_inactive: bool = False) -> Sequence[Plan]: ...

    async def set_plan_preapproval_id(self, plan_id: str, preapproval_plan_id: str) -> None: ...

    async def create_subscription(self, data: SubscriptionUpsert) -> Subscription: ...

    async def upsert_subscription(self, data: SubscriptionUpsert) -> Subscription: ...

    async def get_subscription_by_external_id(
        self, external_subscription_id: str
    ) -> Optional[Subscription]: ...

    async def get_current_subscription(self, tenant_id: str) -> Optional[Subscription]: ...

    async def add_subscription_event(
        self, subscription_id: str, event_type: str, payload: Any
    ) -> None: ...

    async def is_webhook_event_processed(self, provider: str, event_id: str) -> bool: ...

    async def record_webhook_event(
        self,
        *,
        tenant_id: Optional[str],
        provider: str,
        event_id: str,
        event_type: str,
        payload: Any,
    ) -> bool: ...

    async def set_tenant_billing_snapshot(self, snapshot: TenantBillingSnapshot) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...
