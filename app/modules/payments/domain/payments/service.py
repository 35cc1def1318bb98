"""Store payment use cases: OAuth connection, checkout and payment webhooks."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping

import structlog

from app.modules.payments.domain.payments.errors import PaymentError, PaymentErrorCode
from app.modules.payments.domain.payments.oauth_state import (
    decode_oauth_state,
    encode_oauth_state,
)
from app.modules.payments.domain.payments.ports import PaymentsRepository
from app.modules.payments.domain.payments.provider import (
    CheckoutItem,
    CheckoutRequest,
    CheckoutResult,
    ConnectAccountResult,
    ConnectCallbackResult,
    PaymentProvider,
    WebhookPaymentInput,
    WebhookPaymentResult,
)
from app.modules.payments.domain.payments.registry import PaymentProviderRegistry
from app.shared.core.config import get_settings
from app.shared.core.mercadopago import as_str_id

logger = structlog.get_logger()

INTEGRATION_PAGE_PATH = "/admin/integrations/mercadopago"


def parse_webhook_payload(payload: Mapping[str, Any]) -> WebhookPaymentInput:
    """Normalize a merged query+body notification into the provider's webhook input."""
    event_type = payload.get("type") or payload.get("topic") or ""
    data = payload.get("data")
    payment_id = None
    if isinstance(data, Mapping):
        payment_id = as_str_id(data.get("id"))
    if payment_id is None:
        payment_id = as_str_id(payload.get("data.id"))
    return WebhookPaymentInput(
        webhook_id=as_str_id(payload.get("id")) or "unknown",
        event_type=str(event_type),
        payment_id=payment_id or "",
        provider_user_id=as_str_id(payload.get("user_id")),
    )


class PaymentsService:
    def __init__(
        self,
        registry: PaymentProviderRegistry,
        repository: PaymentsRepository,
        provider_code: str = "MERCADOPAGO",
    ):
        self.registry = registry
        self.repository = repository
        self.provider_code = provider_code
        self.settings = get_settings()

    @property
    def provider(self) -> PaymentProvider:
        return self.registry.resolve(self.provider_code, self.repository)

    async def _assert_admin_context(self, tenant_id: str, actor_id: str) -> None:
        if not await self.repository.is_tenant_admin(tenant_id, actor_id):
            logger.warning(
                "payments_unauthorized_store_context", tenant_id=tenant_id, actor_id=actor_id
            )
            raise PaymentError(
                PaymentErrorCode.UNAUTHORIZED_STORE_CONTEXT,
                "User is not allowed to manage payments for this store",
            )

    async def get_connect_url(self, tenant_id: str, actor_id: str) -> ConnectAccountResult:
        await self._assert_admin_context(tenant_id, actor_id)
        state = encode_oauth_state(tenant_id, actor_id, self.provider_code)
        return self.provider.connect_account(tenant_id=tenant_id, actor_id=actor_id, state=state)

    async def complete_connection(self, code: str, state: str) -> ConnectCallbackResult:
        payload = decode_oauth_state(state, self.provider_code)
        # Role may have changed between connect and callback
        await self._assert_admin_context(payload.tenant_id, payload.actor_id)
        return await self.provider.complete_connection(
            tenant_id=payload.tenant_id,
            actor_id=payload.actor_id,
            authorization_code=code,
        )

    async def create_checkout(
        self, tenant_id: str, order_id: str, idempotency_key: str
    ) -> CheckoutResult:
        order = await self.repository.get_order_for_checkout(tenant_id, order_id)
        if order is None:
            raise PaymentError(PaymentErrorCode.ORDER_NOT_FOUND, "Order not found for checkout")
        if not order.items:
            raise PaymentError(
                PaymentErrorCode.ORDER_NOT_FOUND,
                "Order has no items to charge",
                status_code=400,
            )

        items = [
            CheckoutItem(
                id=item.product_id,
                title=item.product_name or f"Item {item.product_id}",
                quantity=item.quantity,
                unit_price=Decimal(item.unit_price),
                currency=order.currency,
                image=item.product_image,
            )
            for item in order.items
        ]
        result = await self.provider.create_checkout(
            CheckoutRequest(
                tenant_id=order.tenant_id,
                order_id=order.id,
                amount=Decimal(order.total),
                currency=order.currency,
                notification_url=self.settings.webhook_notification_url,
                idempotency_key=idempotency_key,
                items=items,
                payer_email=order.buyer_email,
                marketplace_fee=self.settings.MP_MARKETPLACE_FEE,
            )
        )
        logger.info(
            "payment_checkout_created",
            tenant_id=order.tenant_id,
            order_id=order.id,
            preference_id=result.preference_id,
        )
        return result

    async def handle_webhook(self, payload: Mapping[str, Any]) -> WebhookPaymentResult:
        event = parse_webhook_payload(payload)
        if event.event_type.lower() != "payment" or not event.payment_id:
            raise PaymentError(PaymentErrorCode.INVALID_WEBHOOK, "Invalid Mercado Pago webhook")

        logger.info(
            "payment_webhook_received",
            webhook_id=event.webhook_id,
            event_type=event.event_type,
            action=payload.get("action"),
        )
        return await self.provider.handle_webhook_payment(event)

    async def refresh_token(self, tenant_id: str) -> bool:
        return await self.provider.refresh_token(tenant_id)

    async def get_status(self, tenant_id: str) -> dict[str, bool]:
        account = await self.repository.find_store_account(tenant_id, self.provider_code)
        return {"connected": account is not None}

    def oauth_callback_redirect_url(self, success: bool) -> str:
        frontend = self.settings.FRONTEND_URL.rstrip("/")
        status = "connected" if success else "error"
        return f"{frontend}{INTEGRATION_PAGE_PATH}?status={status}"
