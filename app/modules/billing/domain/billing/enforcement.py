"""Billing access gate: allow/deny tenant requests from the cached billing snapshot."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import BillingStatus
from app.models.tenant import Tenant
from app.modules.billing.domain.billing.errors import BillingError, BillingErrorCode
from app.shared.core.auth import CurrentUser, get_current_user
from app.shared.core.config import get_settings
from app.shared.db.base import as_utc, utcnow
from app.shared.db.session import get_db

logger = structlog.get_logger()

PAYMENT_REQUIRED = 402

# Relative to API_PREFIX. Never gated, so a lapsed tenant can still pay.
BYPASS_PATH_PREFIXES = (
    "/public",
    "/payments/mercadopago/callback",
    "/payments/webhooks/mercadopago",
    "/payments/billing",
    "/superadmin",
)


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    status_code: int = 200
    message: Optional[str] = None


ALLOW = AccessDecision(allowed=True)


def _deny(message: str) -> AccessDecision:
    return AccessDecision(allowed=False, status_code=PAYMENT_REQUIRED, message=message)


def is_bypass_path(path: str, api_prefix: str = "/api") -> bool:
    prefix = api_prefix.rstrip("/")
    for allowed in BYPASS_PATH_PREFIXES:
        full = f"{prefix}{allowed}"
        if path == full or path.startswith(full + "/"):
            return True
    return False


def evaluate_billing_access(
    billing_status: Optional[str],
    plan_ends_at: Optional[datetime],
    path: str,
    *,
    now: Optional[datetime] = None,
    allow_past_due: bool = False,
    api_prefix: str = "/api",
) -> AccessDecision:
    """Stateless decision over the tenant's cached billing fields."""
    if is_bypass_path(path, api_prefix):
        return ALLOW

    current = as_utc(now) or utcnow()
    ends_at = as_utc(plan_ends_at)
    within_grace = ends_at is not None and current <= ends_at

    if billing_status in (BillingStatus.ACTIVE.value, BillingStatus.TRIALING.value):
        return ALLOW
    if billing_status == BillingStatus.PAST_DUE.value:
        if allow_past_due:
            return ALLOW
        return _deny("Subscription payment is past due")
    if billing_status == BillingStatus.INACTIVE.value:
        return ALLOW if within_grace else _deny("Subscription is inactive")
    if billing_status in (BillingStatus.CANCELED.value, BillingStatus.EXPIRED.value):
        return ALLOW if within_grace else _deny("Subscription has ended")
    return _deny("Subscription status does not allow access")


async def enforce_billing_access(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    """FastAPI dependency guarding tenant-scoped admin routes."""
    settings = get_settings()
    tenant = await db.get(Tenant, user.tenant_id)
    if tenant is None:
        raise BillingError(BillingErrorCode.TENANT_NOT_FOUND, "Tenant not found")

    decision = evaluate_billing_access(
        tenant.billing_status,
        tenant.plan_ends_at,
        request.url.path,
        allow_past_due=settings.BILLING_ALLOW_PAST_DUE,
        api_prefix=settings.API_PREFIX,
    )
    if not decision.allowed:
        logger.info(
            "billing_access_denied",
            tenant_id=tenant.id,
            billing_status=tenant.billing_status,
            path=request.url.path,
        )
        raise BillingError(
            BillingErrorCode.ACCESS_DENIED,
            decision.message or "Payment required",
            status_code=decision.status_code,
            details={"billing_status": tenant.billing_status},
        )
    return user
