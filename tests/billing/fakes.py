"""In-memory subscription provider recording every call."""

from decimal import Decimal
from typing import Any, Optional

from app.modules.billing.domain.billing.provider import (
    CreateSubscriptionInput,
    CreateSubscriptionResult,
    PreapprovalPlanInput,
    SubscriptionSnapshot,
)


class FakeSubscriptionProvider:
    def __init__(
        self,
        *,
        create_result: Optional[CreateSubscriptionResult] = None,
        snapshots: Optional[dict[str, SubscriptionSnapshot]] = None,
        search_results: Optional[dict[str, list[SubscriptionSnapshot]]] = None,
    ):
        self.create_result = create_result or CreateSubscriptionResult(
            external_subscription_id="pre-new",
            status="pending",
            init_point="https://mp.test/subscriptions/checkout?pre=pre-new",
        )
        self.snapshots = snapshots or {}
        self.search_results = search_results or {}
        self.calls: list[tuple[str, Any]] = []

    async def ensure_preapproval_plan(self, plan: PreapprovalPlanInput) -> Optional[str]:
        self.calls.append(("ensure_preapproval_plan", plan))
        if plan.amount <= 0:
            return None
        return plan.preapproval_plan_id or f"mp-plan-{plan.code.lower()}"

    async def update_preapproval_plan(
        self, preapproval_plan_id: str, plan: PreapprovalPlanInput
    ) -> None:
        self.calls.append(("update_preapproval_plan", preapproval_plan_id))

    async def create_subscription(self, data: CreateSubscriptionInput) -> CreateSubscriptionResult:
        self.calls.append(("create_subscription", data))
        return self.create_result

    def build_plan_checkout_url(
        self, *, preapproval_plan_id: str, tenant_id: str, payer_email: str
    ) -> str:
        self.calls.append(("build_plan_checkout_url", preapproval_plan_id))
        return f"https://mp.test/checkout?preapproval_plan_id={preapproval_plan_id}&external_reference={tenant_id}"

    async def get_subscription(self, external_subscription_id: str) -> SubscriptionSnapshot:
        self.calls.append(("get_subscription", external_subscription_id))
        return self.snapshots[external_subscription_id]

    async def change_subscription_plan_amount(
        self, external_subscription_id: str, amount: Decimal, currency: str
    ) -> None:
        self.calls.append(("change_subscription_plan_amount", (external_subscription_id, amount, currency)))

    async def search_subscriptions_by_status(self, status: str) -> list[SubscriptionSnapshot]:
        self.calls.append(("search_subscriptions_by_status", status))
        return self.search_results.get(status, [])

    def called(self, name: str) -> list[Any]:
        return [args for call, args in self.calls if call == name]
