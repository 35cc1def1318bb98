"""Mercado Pago preapproval (recurring billing) client."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional
from urllib.parse import urlencode

import structlog

from app.modules.billing.domain.billing.errors import BillingError, BillingErrorCode
from app.modules.billing.domain.billing.provider import (
    CreateSubscriptionInput,
    CreateSubscriptionResult,
    PreapprovalPlanInput,
    SubscriptionSnapshot,
)
from app.shared.core.config import get_settings
from app.shared.core.mercadopago import (
    MercadoPagoAPIError,
    as_str_id,
    mp_request,
    parse_mp_datetime,
    to_decimal,
)

logger = structlog.get_logger()

SEARCH_PAGE_SIZE = 50


def _is_payer_collector_mismatch(message: str) -> bool:
    lowered = (message or "").lower()
    return "payer and collector" in lowered and "real or test users" in lowered


def _auto_recurring(interval: str, amount: Decimal, currency: str) -> dict[str, Any]:
    yearly = (interval or "").strip().lower() == "year"
    return {
        "frequency": 12 if yearly else 1,
        "frequency_type": "months",
        "transaction_amount": float(amount),
        "currency_id": currency,
    }


def snapshot_from_payload(
    data: dict[str, Any], fallback_id: Optional[str] = None
) -> SubscriptionSnapshot:
    status = str(data.get("status") or "pending")
    auto_recurring = data.get("auto_recurring") or {}
    return SubscriptionSnapshot(
        external_subscription_id=as_str_id(data.get("id")) or fallback_id or "",
        status=status,
        external_reference=as_str_id(data.get("external_reference")),
        payer_email=data.get("payer_email") or None,
        preapproval_plan_id=as_str_id(data.get("preapproval_plan_id")),
        reason=data.get("reason"),
        current_period_start=parse_mp_datetime(data.get("date_created")),
        current_period_end=parse_mp_datetime(data.get("next_payment_date")),
        recurring_amount=to_decimal(auto_recurring.get("transaction_amount")),
        recurring_currency=auto_recurring.get("currency_id"),
        cancel_at_period_end=status == "cancelled",
        raw=data,
    )


class MercadoPagoBillingProvider:
    """Platform-level preapproval client, authenticated with MP_BILLING_ACCESS_TOKEN."""

    def __init__(self, access_token: Optional[str] = None) -> None:
        self.settings = get_settings()
        self._access_token = access_token

    @property
    def access_token(self) -> str:
        token = self._access_token or self.settings.MP_BILLING_ACCESS_TOKEN
        if not token:
            raise BillingError(
                BillingErrorCode.CONFIG_ERROR,
                "MP_BILLING_ACCESS_TOKEN is required for billing",
            )
        return token

    @property
    def _reason_prefix(self) -> str:
        return self.settings.MP_BILLING_REASON_PREFIX or "Pragmatienda"

    @property
    def _default_back_url(self) -> str:
        return self.settings.MP_BILLING_SUCCESS_URL or self.settings.FRONTEND_URL

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            return await mp_request(
                method, path, access_token=self.access_token, json=json, params=params
            )
        except MercadoPagoAPIError as exc:
            raise self._provider_error(exc) from exc

    @staticmethod
    def _provider_error(exc: MercadoPagoAPIError) -> BillingError:
        if _is_payer_collector_mismatch(exc.message):
            return BillingError(
                BillingErrorCode.PROVIDER_ERROR,
                "Mercado Pago rejected payer_email: payer and collector must both be "
                "real or both be test users",
                status_code=400,
                details={"provider_message": exc.message},
            )
        upstream = exc.status_code
        return BillingError(
            BillingErrorCode.PROVIDER_ERROR,
            exc.message or "Mercado Pago billing request failed",
            status_code=upstream if upstream and 400 <= upstream < 600 else 502,
            details={"upstream_status": upstream},
        )

    def _plan_body(self, plan: PreapprovalPlanInput) -> dict[str, Any]:
        return {
            "reason": f"{self._reason_prefix} - {plan.name}",
            "auto_recurring": _auto_recurring(plan.interval, plan.amount, plan.currency),
            "back_url": self._default_back_url,
        }

    async def ensure_preapproval_plan(self, plan: PreapprovalPlanInput) -> Optional[str]:
        """Return the provider plan id for a paid plan, creating it when missing."""
        if plan.amount <= 0:
            return None
        if plan.preapproval_plan_id:
            return plan.preapproval_plan_id

        created = await self._request("POST", "preapproval_plan", json=self._plan_body(plan))
        plan_id = as_str_id(created.get("id"))
        if not plan_id:
            raise BillingError(
                BillingErrorCode.PROVIDER_ERROR,
                "Mercado Pago did not return a preapproval_plan id",
            )
        logger.info("billing_preapproval_plan_created", plan_code=plan.code, plan_id=plan_id)
        return plan_id

    async def update_preapproval_plan(
        self, preapproval_plan_id: str, plan: PreapprovalPlanInput
    ) -> None:
        if plan.amount <= 0:
            return
        await self._request(
            "PUT", f"preapproval_plan/{preapproval_plan_id}", json=self._plan_body(plan)
        )

    async def create_subscription(
        self, data: CreateSubscriptionInput
    ) -> CreateSubscriptionResult:
        body: dict[str, Any] = {
            "reason": f"{self._reason_prefix} - {data.plan_name}",
            "external_reference": data.tenant_id,
            "payer_email": data.owner_email,
            "back_url": data.back_url or self._default_back_url,
            "status": "pending",
            "auto_recurring": _auto_recurring(data.interval, data.amount, data.currency),
        }
        created = await self._create_preapproval_with_fallback(body)
        return CreateSubscriptionResult(
            external_subscription_id=as_str_id(created.get("id")),
            status=str(created.get("status") or "pending"),
            init_point=created.get("init_point"),
            current_period_start=None,
            current_period_end=parse_mp_datetime(created.get("next_payment_date")),
        )

    async def _create_preapproval_with_fallback(
        self, body: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            return await mp_request(
                "POST", "preapproval", access_token=self.access_token, json=body
            )
        except MercadoPagoAPIError as exc:
            if "payer_email" not in body or not _is_payer_collector_mismatch(exc.message):
                raise self._provider_error(exc) from exc
            original = exc

        # Sandbox collectors cannot bill real payers: let the hosted checkout ask for login.
        logger.warning("billing_preapproval_retry_without_payer_email")
        retry_body = {k: v for k, v in body.items() if k != "payer_email"}
        try:
            return await mp_request(
                "POST", "preapproval", access_token=self.access_token, json=retry_body
            )
        except MercadoPagoAPIError as retry_exc:
            retry_message = retry_exc.message.lower()
            if "payer_email" in retry_message and "required" in retry_message:
                raise self._provider_error(original) from retry_exc
            raise self._provider_error(retry_exc) from retry_exc

    def build_plan_checkout_url(
        self, *, preapproval_plan_id: str, tenant_id: str, payer_email: str
    ) -> str:
        query = urlencode(
            {
                "preapproval_plan_id": preapproval_plan_id,
                "external_reference": tenant_id,
                "payer_email": payer_email,
            }
        )
        return f"{self.settings.MP_SUBSCRIPTION_CHECKOUT_URL}?{query}"

    async def get_subscription(self, external_subscription_id: str) -> SubscriptionSnapshot:
        data = await self._request("GET", f"preapproval/{external_subscription_id}")
        return snapshot_from_payload(data, fallback_id=external_subscription_id)

    async def change_subscription_plan_amount(
        self, external_subscription_id: str, amount: Decimal, currency: str
    ) -> None:
        await self._request(
            "PUT",
            f"preapproval/{external_subscription_id}",
            json={
                "auto_recurring": {
                    "transaction_amount": float(amount),
                    "currency_id": currency,
                }
            },
        )

    async def search_subscriptions_by_status(self, status: str) -> list[SubscriptionSnapshot]:
        """Every preapproval in one status bucket, following offset pagination."""
        snapshots: list[SubscriptionSnapshot] = []
        offset = 0
        while True:
            page = await self._request(
                "GET",
                "preapproval/search",
                params={"status": status, "offset": offset, "limit": SEARCH_PAGE_SIZE},
            )
            results = page.get("results") or []
            for row in results:
                if isinstance(row, dict) and as_str_id(row.get("id")):
                    snapshots.append(snapshot_from_payload(row))

            paging = page.get("paging") or {}
            total = int(paging.get("total") or 0)
            offset += len(results)
            if not results or offset >= total:
                break
        return snapshots
