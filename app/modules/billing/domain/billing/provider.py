"""Subscription provider port and the value types crossing it."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol


@dataclass(frozen=True)
class PreapprovalPlanInput:
    code: str
    name: str
    amount: Decimal
    currency: str
    interval: str
    trial_days: int = 0
    description: Optional[str] = None
    preapproval_plan_id: Optional[str] = None


@dataclass(frozen=True)
class CreateSubscriptionInput:
    tenant_id: str
    owner_email: str
    plan_code: str
    plan_name: str
    amount: Decimal
    currency: str
    interval: str
    trial_days: int = 0
    back_url: Optional[str] = None


@dataclass(frozen=True)
class CreateSubscriptionResult:
    external_subscription_id: Optional[str]
    status: str
    init_point: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Authoritative provider-side view of one preapproval."""

    external_subscription_id: str
    status: str
    external_reference: Optional[str] = None
    payer_email: Optional[str] = None
    preapproval_plan_id: Optional[str] = None
    reason: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    recurring_amount: Optional[Decimal] = None
    recurring_currency: Optional[str] = None
    cancel_at_period_end: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


class SubscriptionProvider(Protocol):
    async def ensure_preapproval_plan(self, plan: PreapprovalPlanInput) -> Optional[str]: ...

    async def update_preapproval_plan(
        self, preapproval_plan_id: str, plan: PreapprovalPlanInput
    ) -> None: ...

    async def create_subscription(
        self, data: CreateSubscriptionInput
    ) -> CreateSubscriptionResult: ...

    def build_plan_checkout_url(
        self, *, preapproval_plan_id: str, tenant_id: str, payer_email: str
    ) -> str: ...

    async def get_subscription(self, external_subscription_id: str) -> SubscriptionSnapshot: ...

    async def change_subscription_plan_amount(
        self, external_subscription_id: str, amount: Decimal, currency: str
    ) -> None: ...

    async def search_subscriptions_by_status(
        self, status: str
    ) -> List[SubscriptionSnapshot]: ...
