"""Mercado Pago marketplace client: OAuth, checkout preferences and payment webhooks."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import urlencode

import structlog

from app.models.payments import PaymentProviderCode, StorePaymentAccount
from app.modules.payments.domain.payments.errors import PaymentError, PaymentErrorCode
from app.modules.payments.domain.payments.ports import (
    PaymentsRepository,
    PaymentUpsert,
    StoreAccountUpsert,
)
from app.modules.payments.domain.payments.provider import (
    CheckoutRequest,
    CheckoutResult,
    ConnectAccountResult,
    ConnectCallbackResult,
    WebhookPaymentInput,
    WebhookPaymentResult,
)
from app.modules.payments.domain.payments.status_mapper import (
    map_order_payment_status,
    map_public_payment_status,
)
from app.shared.core.config import get_settings
from app.shared.core.mercadopago import MercadoPagoAPIError, as_str_id, mp_request, to_decimal
from app.shared.core.security import decrypt_string, encrypt_string
from app.shared.db.base import as_utc, utcnow

logger = structlog.get_logger()

TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


def payment_event_id(event_type: str, payment_id: str, webhook_id: Optional[str]) -> str:
    return f"{event_type}:{payment_id}:{webhook_id or 'unknown'}"


def needs_refresh(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True iff the token expires within the safety margin. No expiry means no refresh."""
    if expires_at is None:
        return False
    current = now or utcnow()
    return as_utc(expires_at) - current <= TOKEN_REFRESH_MARGIN


def _expires_at(tokens: dict[str, Any], fallback: Optional[datetime]) -> Optional[datetime]:
    expires_in = tokens.get("expires_in")
    if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
        return utcnow() + timedelta(seconds=expires_in)
    return fallback


class MercadoPagoPaymentProvider:
    """Acts on behalf of a connected merchant using that store's OAuth tokens."""

    provider_code = PaymentProviderCode.MERCADOPAGO.value

    def __init__(self, repository: PaymentsRepository):
        self.repository = repository
        self.settings = get_settings()

    def _assert_config(self) -> None:
        s = self.settings
        if not s.MP_CLIENT_ID or not s.MP_CLIENT_SECRET or not s.MP_REDIRECT_URI:
            raise PaymentError(
                PaymentErrorCode.CONFIG_ERROR,
                "Mercado Pago OAuth is not configured (MP_CLIENT_ID, MP_CLIENT_SECRET, MP_REDIRECT_URI)",
            )

    @staticmethod
    def _provider_error(exc: MercadoPagoAPIError, message: str) -> PaymentError:
        return PaymentError(
            PaymentErrorCode.PROVIDER_ERROR,
            message,
            details={"upstream_status": exc.status_code, "provider_message": exc.message},
        )

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def connect_account(
        self, *, tenant_id: str, actor_id: str, state: str
    ) -> ConnectAccountResult:
        self._assert_config()
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.settings.MP_CLIENT_ID,
                "redirect_uri": self.settings.MP_REDIRECT_URI,
                "state": state,
            }
        )
        return ConnectAccountResult(authorization_url=f"{self.settings.MP_AUTH_URL}?{query}")

    async def _token_request(self, body: dict[str, Any], failure_message: str) -> dict[str, Any]:
        self._assert_config()
        payload = {
            "client_id": self.settings.MP_CLIENT_ID,
            "client_secret": self.settings.MP_CLIENT_SECRET,
            **body,
        }
        try:
            tokens = await mp_request("POST", "oauth/token", json=payload)
        except MercadoPagoAPIError as exc:
            raise self._provider_error(exc, failure_message) from exc
        if not tokens.get("access_token"):
            raise PaymentError(
                PaymentErrorCode.PROVIDER_ERROR, "Mercado Pago did not return an access_token"
            )
        return tokens

    async def complete_connection(
        self, *, tenant_id: str, actor_id: str, authorization_code: str
    ) -> ConnectCallbackResult:
        tokens = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": authorization_code,
                "redirect_uri": self.settings.MP_REDIRECT_URI,
            },
            "Mercado Pago OAuth exchange failed",
        )
        provider_user_id = as_str_id(tokens.get("user_id"))
        await self.repository.upsert_store_account(
            StoreAccountUpsert(
                tenant_id=tenant_id,
                provider=self.provider_code,
                access_token_encrypted=encrypt_string(tokens["access_token"]),
                refresh_token_encrypted=(
                    encrypt_string(tokens["refresh_token"])
                    if tokens.get("refresh_token")
                    else None
                ),
                provider_user_id=provider_user_id,
                public_key=tokens.get("public_key"),
                scope=tokens.get("scope"),
                expires_at=_expires_at(tokens, None),
            )
        )
        await self.repository.commit()

        logger.info(
            "oauth_account_connected",
            tenant_id=tenant_id,
            actor_id=actor_id,
            provider=self.provider_code,
            provider_user_id=provider_user_id,
        )
        return ConnectCallbackResult(tenant_id=tenant_id, provider_user_id=provider_user_id)

    async def _refresh_account(self, account: StorePaymentAccount) -> str:
        """Exchange the stored refresh token; omitted response fields keep their previous value."""
        tokens = await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": decrypt_string(account.refresh_token or ""),
            },
            "Mercado Pago token refresh failed",
        )
        await self.repository.upsert_store_account(
            StoreAccountUpsert(
                tenant_id=account.tenant_id,
                provider=self.provider_code,
                access_token_encrypted=encrypt_string(tokens["access_token"]),
                refresh_token_encrypted=(
                    encrypt_string(tokens["refresh_token"])
                    if tokens.get("refresh_token")
                    else account.refresh_token
                ),
                provider_user_id=as_str_id(tokens.get("user_id")) or account.provider_user_id,
                public_key=tokens.get("public_key") or account.public_key,
                scope=tokens.get("scope") or account.scope,
                expires_at=_expires_at(tokens, account.expires_at),
            )
        )
        await self.repository.commit()
        logger.info(
            "provider_token_refreshed", tenant_id=account.tenant_id, provider=self.provider_code
        )
        return str(tokens["access_token"])

    async def get_valid_access_token(self, tenant_id: str) -> str:
        account = await self.repository.find_store_account(tenant_id, self.provider_code)
        if account is None:
            raise PaymentError(
                PaymentErrorCode.ACCOUNT_NOT_CONNECTED,
                "Store has no Mercado Pago account connected",
            )
        if not needs_refresh(account.expires_at):
            return decrypt_string(account.access_token)
        if not account.refresh_token:
            # Best effort: the cached token may still be accepted for a few minutes
            logger.warning("provider_token_expiring_without_refresh", tenant_id=tenant_id)
            return decrypt_string(account.access_token)
        return await self._refresh_account(account)

    async def refresh_token(self, tenant_id: str) -> bool:
        account = await self.repository.find_store_account(tenant_id, self.provider_code)
        if account is None or not account.refresh_token:
            return False
        await self._refresh_account(account)
        return True

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        access_token = await self.get_valid_access_token(request.tenant_id)

        body: dict[str, Any] = {
            "external_reference": request.order_id,
            "notification_url": request.notification_url,
            "items": [
                {
                    "id": item.id,
                    "title": item.title,
                    "quantity": item.quantity,
                    "unit_price": float(item.unit_price),
                    "currency_id": item.currency,
                    **({"picture_url": item.image} if item.image else {}),
                }
                for item in request.items
            ],
        }
        if request.marketplace_fee is not None:
            body["marketplace_fee"] = request.marketplace_fee
        if request.payer_email:
            body["payer"] = {"email": request.payer_email}

        try:
            preference = await mp_request(
                "POST",
                "checkout/preferences",
                access_token=access_token,
                json=body,
                headers={"X-Idempotency-Key": request.idempotency_key},
            )
        except MercadoPagoAPIError as exc:
            raise self._provider_error(exc, "Mercado Pago checkout preference failed") from exc

        checkout_url = preference.get("init_point") or preference.get("sandbox_init_point")
        preference_id = as_str_id(preference.get("id"))
        if not checkout_url or not preference_id:
            raise PaymentError(
                PaymentErrorCode.PROVIDER_ERROR,
                "Mercado Pago did not return a valid preference",
            )
        return CheckoutResult(
            checkout_url=str(checkout_url),
            external_reference=request.order_id,
            preference_id=preference_id,
        )

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    async def _resolve_account(self, event: WebhookPaymentInput) -> StorePaymentAccount:
        account = None
        if event.provider_user_id:
            account = await self.repository.find_store_account_by_provider_user_id(
                event.provider_user_id, self.provider_code
            )
        if account is None:
            existing = await self.repository.find_payment_by_external_id(
                self.provider_code, event.payment_id
            )
            if existing is not None:
                account = await self.repository.find_store_account(
                    existing.tenant_id, self.provider_code
                )
        if account is None:
            raise PaymentError(
                PaymentErrorCode.ACCOUNT_NOT_CONNECTED,
                "No Mercado Pago account matches this webhook",
            )
        return account

    async def handle_webhook_payment(self, event: WebhookPaymentInput) -> WebhookPaymentResult:
        if (event.event_type or "").lower() != "payment" or not event.payment_id:
            raise PaymentError(PaymentErrorCode.INVALID_WEBHOOK, "Unsupported payment webhook")

        event_id = payment_event_id(event.event_type, event.payment_id, event.webhook_id)
        if await self.repository.is_webhook_event_processed(self.provider_code, event_id):
            logger.info("webhook_duplicate_ignored", provider=self.provider_code, event_id=event_id)
            return WebhookPaymentResult(payment_id=event.payment_id, duplicate=True)

        account = await self._resolve_account(event)
        access_token = await self.get_valid_access_token(account.tenant_id)
        try:
            payment = await mp_request(
                "GET", f"v1/payments/{event.payment_id}", access_token=access_token
            )
        except MercadoPagoAPIError as exc:
            raise self._provider_error(exc, "Mercado Pago payment lookup failed") from exc

        order_id = as_str_id(payment.get("external_reference"))
        if not order_id:
            raise PaymentError(
                PaymentErrorCode.INVALID_WEBHOOK,
                "Payment has no external_reference to match an order",
            )
        order = await self.repository.get_order(order_id)
        if order is None or order.tenant_id != account.tenant_id:
            raise PaymentError(
                PaymentErrorCode.ORDER_NOT_FOUND, "Order not found for the webhook's store"
            )

        payment_id = as_str_id(payment.get("id")) or event.payment_id
        provider_status = payment.get("status")
        await self.repository.upsert_payment(
            PaymentUpsert(
                tenant_id=order.tenant_id,
                order_id=order.id,
                provider=self.provider_code,
                external_payment_id=payment_id,
                status=map_public_payment_status(provider_status),
                status_detail=payment.get("status_detail"),
                amount=to_decimal(payment.get("transaction_amount")),
                currency=payment.get("currency_id") or order.currency or "ARS",
                raw_response=payment,
            )
        )
        status_changed = await self.repository.set_order_payment_status(
            order.id,
            map_order_payment_status(provider_status),
            payment_id,
            payment.get("payment_method_id"),
        )
        recorded = await self.repository.record_webhook_event(
            tenant_id=order.tenant_id,
            order_id=order.id,
            provider=self.provider_code,
            event_id=event_id,
            event_type=event.event_type,
            payload=payment,
        )
        if not recorded:
            # A concurrent delivery of this event already committed its effects.
            await self.repository.rollback()
            logger.info("webhook_duplicate_ignored", provider=self.provider_code, event_id=event_id)
            return WebhookPaymentResult(payment_id=payment_id, duplicate=True)
        await self.repository.commit()

        logger.info(
            "payment_webhook_processed",
            tenant_id=order.tenant_id,
            order_id=order.id,
            payment_id=payment_id,
            provider_status=provider_status,
            order_status_changed=status_changed,
        )
        return WebhookPaymentResult(
            payment_id=payment_id, tenant_id=order.tenant_id, order_id=order.id
        )
