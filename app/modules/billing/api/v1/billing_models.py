from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, model_validator


class PlanSelection(BaseModel):
    """Either a plan id or a plan code; the id wins when both are sent."""

    plan_id: Optional[str] = None
    plan_code: Optional[str] = None

    @model_validator(mode="after")
    def _require_plan(self) -> "PlanSelection":
        if not (self.plan_id or self.plan_code):
            raise ValueError("plan_id or plan_code is required")
        return self


class CreateSubscriptionRequest(PlanSelection):
    pass


class ChangePlanRequest(PlanSelection):
    pass


class CreateSubscriptionResponse(BaseModel):
    subscription_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    init_point: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: str
    plan_id: str
    plan: str
    status: str
    current_period_end: Optional[datetime] = None


class PublicPlanResponse(BaseModel):
    id: str
    name: str
    price: Decimal
    currency: str
    interval: str
    description: Optional[str] = None
    trial_days: int = 0


class BillingPlanResponse(BaseModel):
    id: str
    name: str
    price: Decimal
    interval: str
    features: List[str]
    active: bool


class SubscriptionSyncResponse(BaseModel):
    processed: int
    skipped: int


class PreapprovalPlanSyncResponse(BaseModel):
    created: int
    updated: int
    total: int
