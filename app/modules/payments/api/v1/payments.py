"""
Payments API Endpoints - Mercado Pago marketplace integration

Provides:
- POST /payments/webhooks/{provider} - Signed provider notifications (payments + preapprovals)
- GET  /payments/{provider}/connect/{store_id} - Redirect to the OAuth authorize page
- GET  /payments/{provider}/connect-url - Same URL as JSON for SPA clients
- GET  /payments/{provider}/callback - OAuth callback, redirects to the admin UI
- GET  /payments/{provider}/status - Whether the store has an account connected
- POST /payments/{provider}/refresh-token - Force a token refresh
- POST /payments/checkout/{order_id} - Create a checkout preference (Idempotency-Key required)
"""

import json
from typing import Annotated, Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.adapters.sqlalchemy_repository import SqlAlchemyBillingRepository
from app.modules.billing.domain.billing.enforcement import enforce_billing_access
from app.modules.billing.domain.billing.errors import BillingError, BillingErrorCode
from app.modules.billing.domain.billing.mercadopago_client import (
    MercadoPagoBillingProvider,
)
from app.modules.billing.domain.billing.service import BillingService
from app.modules.payments.adapters.sqlalchemy_repository import SqlAlchemyPaymentsRepository
from app.modules.payments.api.v1.payments_models import (
    CheckoutResponse,
    ConnectionStatusResponse,
    ConnectUrlResponse,
    TokenRefreshResponse,
    WebhookAck,
)
from app.modules.payments.domain.payments.errors import PaymentError, PaymentErrorCode
from app.modules.payments.domain.payments.registry import (
    PaymentProviderRegistry,
    build_provider_registry,
    provider_code_for_slug,
)
from app.modules.payments.domain.payments.service import PaymentsService
from app.modules.payments.domain.payments.webhook_security import (
    extract_resource_id,
    verify_webhook_signature,
)
from app.shared.core.auth import CurrentUser, get_current_user, requires_role
from app.shared.core.config import get_settings
from app.shared.core.exceptions import StorefrontException
from app.shared.core.idempotency import IdempotencyContext, requires_idempotency_key
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Payments"])

_provider_registry = build_provider_registry()

# Webhook outcomes acknowledged with 200 so the provider stops redelivering.
IGNORABLE_PAYMENT_CODES = {
    PaymentErrorCode.INVALID_WEBHOOK,
    PaymentErrorCode.ACCOUNT_NOT_CONNECTED,
}


def get_provider_registry() -> PaymentProviderRegistry:
    return _provider_registry


def resolve_provider_code(provider: str) -> str:
    code = provider_code_for_slug(provider)
    if code is None or not get_provider_registry().supports(code):
        raise HTTPException(status_code=404, detail=f"Unknown payment provider: {provider}")
    return code


def get_payments_service(
    provider_code: str = Depends(resolve_provider_code),
    registry: PaymentProviderRegistry = Depends(get_provider_registry),
    db: AsyncSession = Depends(get_db),
) -> PaymentsService:
    return PaymentsService(registry, SqlAlchemyPaymentsRepository(db), provider_code)


def get_default_payments_service(
    registry: PaymentProviderRegistry = Depends(get_provider_registry),
    db: AsyncSession = Depends(get_db),
) -> PaymentsService:
    return PaymentsService(registry, SqlAlchemyPaymentsRepository(db))


async def _read_webhook_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("webhook_body_not_json", path=request.url.path)
        return {}


# ==================== Webhooks ====================


@router.post("/webhooks/{provider}", response_model=WebhookAck)
async def handle_webhook(
    request: Request,
    provider_code: str = Depends(resolve_provider_code),
    registry: PaymentProviderRegistry = Depends(get_provider_registry),
    db: AsyncSession = Depends(get_db),
) -> WebhookAck:
    """
    Verify the signature, then dispatch by notification type.

    Preapproval notifications go to billing; authorized subscription payments
    are acknowledged without processing; everything else is a store payment.
    """
    body = await _read_webhook_body(request)
    query = dict(request.query_params)

    verified = verify_webhook_signature(
        request.headers.get("x-signature"),
        request.headers.get("x-request-id"),
        extract_resource_id(query, body),
        get_settings().MP_WEBHOOK_SECRET,
    )
    if not verified:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    payload: dict[str, Any] = {**query, **(body if isinstance(body, dict) else {})}
    event_type = str(payload.get("type") or payload.get("topic") or "").lower()

    if "preapproval" in event_type:
        billing = BillingService(SqlAlchemyBillingRepository(db), MercadoPagoBillingProvider())
        try:
            outcome = await billing.handle_preapproval_webhook(payload)
        except BillingError as exc:
            if exc.error_code is not BillingErrorCode.INVALID_WEBHOOK:
                raise
            logger.warning("billing_webhook_ignored", reason=exc.message)
            return WebhookAck(ignored=True, reason=exc.code)
        return WebhookAck(duplicate=outcome.duplicate)

    if event_type == "subscription_authorized_payment":
        logger.info("subscription_authorized_payment_ignored", webhook_id=payload.get("id"))
        return WebhookAck(ignored=True, reason="subscription_authorized_payment")

    payments = PaymentsService(registry, SqlAlchemyPaymentsRepository(db), provider_code)
    try:
        result = await payments.handle_webhook(payload)
    except PaymentError as exc:
        if exc.error_code not in IGNORABLE_PAYMENT_CODES:
            raise
        logger.warning("payment_webhook_ignored", code=exc.code, reason=exc.message)
        return WebhookAck(ignored=True, reason=exc.code)
    return WebhookAck(duplicate=result.duplicate)


# ==================== Checkout ====================


@router.post("/checkout/{order_id}", response_model=CheckoutResponse)
async def create_checkout(
    order_id: str,
    user: Annotated[CurrentUser, Depends(enforce_billing_access)],
    idempotency: IdempotencyContext = Depends(requires_idempotency_key("payments.checkout")),
    service: PaymentsService = Depends(get_default_payments_service),
) -> CheckoutResponse:
    """Create a provider checkout preference for a store order."""
    result = await service.create_checkout(user.tenant_id, order_id, idempotency.key)
    response = CheckoutResponse(
        checkout_url=result.checkout_url,
        external_reference=result.external_reference,
        preference_id=result.preference_id,
    )
    await idempotency.complete(200, response.model_dump())
    return response


# ==================== OAuth ====================


@router.get("/{provider}/connect/{store_id}")
async def connect_account(
    store_id: str,
    user: Annotated[CurrentUser, Depends(get_current_user)],
    service: PaymentsService = Depends(get_payments_service),
) -> RedirectResponse:
    result = await service.get_connect_url(store_id, user.id)
    return RedirectResponse(result.authorization_url, status_code=302)


@router.get("/{provider}/connect-url", response_model=ConnectUrlResponse)
async def get_connect_url(
    user: Annotated[CurrentUser, Depends(get_current_user)],
    service: PaymentsService = Depends(get_payments_service),
) -> ConnectUrlResponse:
    result = await service.get_connect_url(user.tenant_id, user.id)
    return ConnectUrlResponse(authorization_url=result.authorization_url)


@router.get("/{provider}/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    service: PaymentsService = Depends(get_payments_service),
) -> RedirectResponse:
    """Provider-initiated. Tokens never reach the browser, only a status flag."""
    if not code or not state:
        logger.warning("oauth_callback_missing_params", has_code=bool(code), has_state=bool(state))
        return RedirectResponse(service.oauth_callback_redirect_url(False), status_code=302)
    try:
        await service.complete_connection(code, state)
    except StorefrontException as exc:
        logger.warning("oauth_callback_failed", code=exc.code, reason=exc.message)
        return RedirectResponse(service.oauth_callback_redirect_url(False), status_code=302)
    return RedirectResponse(service.oauth_callback_redirect_url(True), status_code=302)


@router.get("/{provider}/status", response_model=ConnectionStatusResponse)
async def get_connection_status(
    user: Annotated[CurrentUser, Depends(get_current_user)],
    service: PaymentsService = Depends(get_payments_service),
) -> ConnectionStatusResponse:
    return ConnectionStatusResponse(**await service.get_status(user.tenant_id))


@router.post("/{provider}/refresh-token", response_model=TokenRefreshResponse)
async def refresh_token(
    user: Annotated[CurrentUser, Depends(requires_role("admin"))],
    service: PaymentsService = Depends(get_payments_service),
) -> TokenRefreshResponse:
    return TokenRefreshResponse(refreshed=await service.refresh_token(user.tenant_id))
