"""SQLAlchemy implementation of the billing persistence port."""

import json
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import Plan, Subscription, SubscriptionEvent
from app.models.payments import PaymentEvent
from app.models.tenant import Tenant, User, UserRole
from app.modules.billing.domain.billing.ports import (
    SubscriptionUpsert,
    TenantBillingSnapshot,
)
from app.shared.db.base import utcnow

logger = structlog.get_logger()


def _dump(payload: Any) -> Optional[str]:
    if payload is None:
        return None
    return json.dumps(payload, default=str)


class SqlAlchemyBillingRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # Tenants -----------------------------------------------------------

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        result = await self.db.execute(
            select(Tenant)
            .where(Tenant.id == tenant_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_tenant_owner(self, tenant_id: str) -> Optional[User]:
        result = await self.db.execute(
            select(User)
            .where(User.tenant_id == tenant_id, User.role == UserRole.OWNER.value)
            .order_by(User.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_tenant_by_owner_email(self, email: str) -> Optional[Tenant]:
        result = await self.db.execute(
            select(Tenant)
            .join(User, User.tenant_id == Tenant.id)
            .where(
                func.lower(User.email) == email.strip().lower(),
                User.role == UserRole.OWNER.value,
            )
            .order_by(Tenant.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def set_tenant_billing_snapshot(self, snapshot: TenantBillingSnapshot) -> None:
        await self.db.execute(
            update(Tenant)
            .where(Tenant.id == snapshot.tenant_id)
            .values(
                billing_status=snapshot.billing_status,
                plan=snapshot.plan_code,
                plan_starts_at=snapshot.plan_starts_at,
                plan_ends_at=snapshot.plan_ends_at,
                current_subscription_id=snapshot.current_subscription_id,
                updated_at=utcnow(),
            )
        )

    # Plans -------------------------------------------------------------

    async def get_plan_by_id(self, plan_id: str) -> Optional[Plan]:
        return await self.db.get(Plan, plan_id)

    async def get_plan_by_code(self, code: str) -> Optional[Plan]:
        result = await self.db.execute(select(Plan).where(Plan.code == code))
        return result.scalar_one_or_none()

    async def get_plan_by_preapproval_plan_id(
        self, preapproval_plan_id: str
    ) -> Optional[Plan]:
        result = await self.db.execute(
            select(Plan).where(Plan.mp_preapproval_plan_id == preapproval_plan_id)
        )
        return result.scalars().first()

    async def list_plans(self, *, include_inactive: bool = False) -> Sequence[Plan]:
        query = (
            select(Plan)
            .order_by(Plan.sort_order, Plan.price)
            .execution_options(populate_existing=True)
        )
        if not include_inactive:
            query = query.where(Plan.active.is_(True))
        result = await self.db.execute(query)
        return result.scalars().all()

    async def set_plan_preapproval_id(self, plan_id: str, preapproval_plan_id: str) -> None:
        await self.db.execute(
            update(Plan)
            .where(Plan.id == plan_id)
            .values(mp_preapproval_plan_id=preapproval_plan_id, updated_at=utcnow())
        )

    # Subscriptions -----------------------------------------------------

    async def _load_subscription(self, **criteria: Any) -> Optional[Subscription]:
        query = select(Subscription).execution_options(populate_existing=True)
        for column, value in criteria.items():
            query = query.where(getattr(Subscription, column) == value)
        result = await self.db.execute(query)
        return result.unique().scalar_one_or_none()

    async def _reload_subscription(self, subscription_id: str) -> Subscription:
        """Re-select after a flush so the joined plan reflects plan_id."""
        loaded = await self._load_subscription(id=subscription_id)
        if loaded is None:
            raise RuntimeError(f"Subscription {subscription_id} not visible after flush")
        return loaded

    async def get_subscription_by_external_id(
        self, external_subscription_id: str
    ) -> Optional[Subscription]:
        return await self._load_subscription(
            external_subscription_id=external_subscription_id
        )

    async def get_current_subscription(self, tenant_id: str) -> Optional[Subscription]:
        tenant = await self.get_tenant(tenant_id)
        if tenant is not None and tenant.current_subscription_id:
            current = await self._load_subscription(id=tenant.current_subscription_id)
            if current is not None and current.tenant_id == tenant_id:
                return current

        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.unique().scalar_one_or_none()

    @staticmethod
    def _apply(subscription: Subscription, data: SubscriptionUpsert) -> None:
        subscription.tenant_id = data.tenant_id
        subscription.plan_id = data.plan_id
        subscription.status = data.status
        subscription.current_period_start = data.current_period_start
        subscription.current_period_end = data.current_period_end
        subscription.cancel_at_period_end = data.cancel_at_period_end

    async def create_subscription(self, data: SubscriptionUpsert) -> Subscription:
        subscription = Subscription(external_subscription_id=data.external_subscription_id)
        self._apply(subscription, data)
        self.db.add(subscription)
        await self.db.flush()
        return await self._reload_subscription(subscription.id)

    async def upsert_subscription(self, data: SubscriptionUpsert) -> Subscription:
        """Insert-or-update keyed by external_subscription_id."""
        existing = await self.get_subscription_by_external_id(data.external_subscription_id)
        if existing is None:
            subscription = Subscription(
                external_subscription_id=data.external_subscription_id
            )
            self._apply(subscription, data)
            try:
                async with self.db.begin_nested():
                    self.db.add(subscription)
            except IntegrityError:
                logger.info(
                    "subscription_upsert_race_lost",
                    external_subscription_id=data.external_subscription_id,
                )
                existing = await self.get_subscription_by_external_id(
                    data.external_subscription_id
                )
                if existing is None:
                    raise
            else:
                return await self._reload_subscription(subscription.id)

        self._apply(existing, data)
        await self.db.flush()
        return await self._reload_subscription(existing.id)

    async def add_subscription_event(
        self, subscription_id: str, event_type: str, payload: Any
    ) -> None:
        self.db.add(
            SubscriptionEvent(
                subscription_id=subscription_id,
                type=event_type,
                payload=_dump(payload),
            )
        )
        await self.db.flush()

    # Webhook ledger ----------------------------------------------------

    async def is_webhook_event_processed(self, provider: str, event_id: str) -> bool:
        result = await self.db.execute(
            select(PaymentEvent.id).where(
                PaymentEvent.provider == provider,
                PaymentEvent.event_id == event_id,
                PaymentEvent.processed_at.is_not(None),
            )
        )
        return result.first() is not None

    async def _find_event(self, provider: str, event_id: str) -> Optional[PaymentEvent]:
        result = await self.db.execute(
            select(PaymentEvent).where(
                PaymentEvent.provider == provider, PaymentEvent.event_id == event_id
            )
        )
        return result.scalar_one_or_none()

    async def record_webhook_event(
        self,
        *,
        tenant_id: Optional[str],
        provider: str,
        event_id: str,
        event_type: str,
        payload: Any,
    ) -> bool:
        """False when a concurrent delivery of the same event committed first."""
        event = await self._find_event(provider, event_id)
        if event is not None and event.processed_at is not None:
            return False
        if event is None:
            event = PaymentEvent(provider=provider, event_id=event_id)
            self._apply_event(event, tenant_id, event_type, payload)
            try:
                async with self.db.begin_nested():
                    self.db.add(event)
            except IntegrityError:
                logger.info("webhook_event_race_lost", provider=provider, event_id=event_id)
                if not await self.is_webhook_event_processed(provider, event_id):
                    raise
                return False
            return True
        self._apply_event(event, tenant_id, event_type, payload)
        await self.db.flush()
        return True

    @staticmethod
    def _apply_event(
        event: PaymentEvent, tenant_id: Optional[str], event_type: str, payload: Any
    ) -> None:
        event.tenant_id = tenant_id
        event.event_type = event_type
        event.payload = _dump(payload)
        event.processed_at = utcnow()

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()
