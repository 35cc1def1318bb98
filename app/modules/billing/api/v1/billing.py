"""
Billing API Endpoints - Mercado Pago preapproval subscriptions

Provides:
- POST  /payments/billing/subscriptions - Start a subscription for the tenant
- PATCH /payments/billing/subscriptions/current/plan - Change the billed plan
- GET   /payments/billing/subscriptions/current - Current subscription
- GET   /payments/billing/plans - Plans for the admin billing page
- POST  /payments/billing/sync - Manual reconciliation (store admin)
- POST  /payments/billing/internal/sync - Scheduler-triggered reconciliation
- POST  /payments/billing/plans/sync - Register paid plans with the provider
- GET   /public/plans - Landing page pricing
"""

import secrets
from typing import Annotated, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import Plan
from app.modules.billing.adapters.sqlalchemy_repository import SqlAlchemyBillingRepository
from app.modules.billing.api.v1.billing_models import (
    BillingPlanResponse,
    ChangePlanRequest,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    PreapprovalPlanSyncResponse,
    PublicPlanResponse,
    SubscriptionResponse,
    SubscriptionSyncResponse,
)
from app.modules.billing.domain.billing.mercadopago_client import (
    MercadoPagoBillingProvider,
)
from app.modules.billing.domain.billing.service import BillingService
from app.shared.core.auth import CurrentUser, requires_role
from app.shared.core.config import get_settings
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])
public_router = APIRouter(tags=["Public"])


def get_billing_service(db: AsyncSession = Depends(get_db)) -> BillingService:
    return BillingService(SqlAlchemyBillingRepository(db), MercadoPagoBillingProvider())


async def require_internal_job_secret(
    x_internal_job_secret: Optional[str] = Header(None),
) -> None:
    """Platform-wide jobs are scheduler-triggered, not tenant-user actions."""
    expected_secret = get_settings().INTERNAL_JOB_SECRET
    if not expected_secret or len(expected_secret) < 32:
        raise HTTPException(
            status_code=503,
            detail="INTERNAL_JOB_SECRET is not configured securely. Set a 32+ character secret.",
        )
    if not x_internal_job_secret or not secrets.compare_digest(
        x_internal_job_secret, expected_secret
    ):
        raise HTTPException(status_code=403, detail="Invalid secret")


def _plan_features(plan: Plan) -> List[str]:
    return [line.strip() for line in (plan.description or "").splitlines() if line.strip()]


@router.post("/subscriptions", response_model=CreateSubscriptionResponse)
async def create_subscription(
    body: CreateSubscriptionRequest,
    user: Annotated[CurrentUser, Depends(requires_role("admin"))],
    service: BillingService = Depends(get_billing_service),
) -> CreateSubscriptionResponse:
    """Create a preapproval, or return the hosted checkout URL for the plan."""
    if body.plan_id:
        outcome = await service.create_subscription_by_plan_id(user.tenant_id, body.plan_id)
    else:
        outcome = await service.create_subscription_for_tenant(
            user.tenant_id, str(body.plan_code)
        )
    return CreateSubscriptionResponse(
        subscription_id=outcome.subscription_id,
        external_subscription_id=outcome.external_subscription_id,
        init_point=outcome.init_point,
    )


@router.patch("/subscriptions/current/plan", response_model=SubscriptionResponse)
async def change_plan(
    body: ChangePlanRequest,
    user: Annotated[CurrentUser, Depends(requires_role("admin"))],
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionResponse:
    if body.plan_id:
        subscription = await service.change_subscription_plan_by_plan_id(
            user.tenant_id, body.plan_id
        )
    else:
        subscription = await service.change_subscription_plan(
            user.tenant_id, str(body.plan_code)
        )
    return SubscriptionResponse(
        id=subscription.id,
        plan_id=subscription.plan_id,
        plan=subscription.plan.code,
        status=subscription.status,
        current_period_end=subscription.current_period_end,
    )


@router.get("/subscriptions/current", response_model=Optional[SubscriptionResponse])
async def get_current_subscription(
    user: Annotated[CurrentUser, Depends(requires_role("member"))],
    service: BillingService = Depends(get_billing_service),
) -> Optional[SubscriptionResponse]:
    subscription = await service.get_current_subscription(user.tenant_id)
    if subscription is None:
        return None
    return SubscriptionResponse(
        id=subscription.id,
        plan_id=subscription.plan_id,
        plan=subscription.plan.code,
        status=subscription.status,
        current_period_end=subscription.current_period_end,
    )


@router.get("/plans", response_model=List[BillingPlanResponse])
async def list_billing_plans(
    user: Annotated[CurrentUser, Depends(requires_role("member"))],
    service: BillingService = Depends(get_billing_service),
) -> List[BillingPlanResponse]:
    plans = await service.list_plans_for_billing()
    return [
        BillingPlanResponse(
            id=plan.id,
            name=plan.name,
            price=plan.price,
            interval=plan.interval,
            features=_plan_features(plan),
            active=plan.active,
        )
        for plan in plans
    ]


@router.post("/sync", response_model=SubscriptionSyncResponse)
async def sync_subscriptions(
    user: Annotated[CurrentUser, Depends(requires_role("admin"))],
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionSyncResponse:
    """Manual reconciliation trigger for store admins."""
    logger.info("billing_sync_requested", tenant_id=user.tenant_id, actor_id=user.id)
    result = await service.sync_active_subscriptions_job()
    return SubscriptionSyncResponse(**result)


@router.post("/internal/sync", response_model=SubscriptionSyncResponse)
async def sync_subscriptions_internal(
    _auth: None = Depends(require_internal_job_secret),
    service: BillingService = Depends(get_billing_service),
) -> SubscriptionSyncResponse:
    result = await service.sync_active_subscriptions_job()
    return SubscriptionSyncResponse(**result)


@router.post("/plans/sync", response_model=PreapprovalPlanSyncResponse)
async def sync_plans(
    include_inactive: bool = False,
    _auth: None = Depends(require_internal_job_secret),
    service: BillingService = Depends(get_billing_service),
) -> PreapprovalPlanSyncResponse:
    result = await service.sync_preapproval_plans(include_inactive=include_inactive)
    return PreapprovalPlanSyncResponse(**result)


@public_router.get("/plans", response_model=List[PublicPlanResponse])
async def get_public_plans(
    response: Response,
    service: BillingService = Depends(get_billing_service),
) -> List[PublicPlanResponse]:
    """Active plans for the landing page. No authentication required."""
    response.headers["Cache-Control"] = "public, max-age=300"
    plans = await service.list_public_plans()
    return [
        PublicPlanResponse(
            id=plan.id,
            name=plan.name,
            price=plan.price,
            currency=plan.currency,
            interval=plan.interval,
            description=plan.description,
            trial_days=plan.trial_days,
        )
        for plan in plans
    ]
