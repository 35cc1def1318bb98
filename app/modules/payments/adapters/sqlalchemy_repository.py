"""SQLAlchemy implementation of the store payments persistence port."""

import json
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.order import Order
from app.models.payments import Payment, PaymentEvent, PaymentStatus, StorePaymentAccount
from app.models.tenant import TENANT_ADMIN_ROLES, User
from app.modules.payments.domain.payments.ports import PaymentUpsert, StoreAccountUpsert
from app.shared.db.base import utcnow

logger = structlog.get_logger()


def _dump(payload: Any) -> Optional[str]:
    if payload is None:
        return None
    return json.dumps(payload, default=str)


class SqlAlchemyPaymentsRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    # Store accounts ----------------------------------------------------

    async def find_store_account(
        self, tenant_id: str, provider: str
    ) -> Optional[StorePaymentAccount]:
        result = await self.db.execute(
            select(StorePaymentAccount)
            .where(
                StorePaymentAccount.tenant_id == tenant_id,
                StorePaymentAccount.provider == provider,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_store_account_by_provider_user_id(
        self, provider_user_id: str, provider: str
    ) -> Optional[StorePaymentAccount]:
        result = await self.db.execute(
            select(StorePaymentAccount)
            .where(
                StorePaymentAccount.provider_user_id == provider_user_id,
                StorePaymentAccount.provider == provider,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _apply_account(account: StorePaymentAccount, data: StoreAccountUpsert) -> None:
        account.access_token = data.access_token_encrypted
        account.refresh_token = data.refresh_token_encrypted
        account.provider_user_id = data.provider_user_id
        account.public_key = data.public_key
        account.scope = data.scope
        account.expires_at = data.expires_at

    async def upsert_store_account(self, data: StoreAccountUpsert) -> StorePaymentAccount:
        account = await self.find_store_account(data.tenant_id, data.provider)
        if account is None:
            account = StorePaymentAccount(tenant_id=data.tenant_id, provider=data.provider)
            self._apply_account(account, data)
            try:
                async with self.db.begin_nested():
                    self.db.add(account)
                return account
            except IntegrityError:
                logger.info("store_account_upsert_race_lost", tenant_id=data.tenant_id)
                account = await self.find_store_account(data.tenant_id, data.provider)
                if account is None:
                    raise
        self._apply_account(account, data)
        await self.db.flush()
        return account

    # Payments ----------------------------------------------------------

    async def find_payment_by_external_id(
        self, provider: str, external_payment_id: str
    ) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(
                Payment.provider == provider,
                Payment.external_payment_id == external_payment_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _apply_payment(payment: Payment, data: PaymentUpsert) -> None:
        payment.tenant_id = data.tenant_id
        payment.order_id = data.order_id
        payment.status = data.status
        payment.status_detail = data.status_detail
        payment.amount = data.amount
        payment.currency = data.currency
        payment.raw_response = _dump(data.raw_response)

    async def upsert_payment(self, data: PaymentUpsert) -> Payment:
        """(provider, external_payment_id) is unique: redeliveries collapse into one row."""
        payment = await self.find_payment_by_external_id(data.provider, data.external_payment_id)
        if payment is None:
            payment = Payment(
                provider=data.provider, external_payment_id=data.external_payment_id
            )
            self._apply_payment(payment, data)
            try:
                async with self.db.begin_nested():
                    self.db.add(payment)
                return payment
            except IntegrityError:
                logger.info(
                    "payment_upsert_race_lost", external_payment_id=data.external_payment_id
                )
                payment = await self.find_payment_by_external_id(
                    data.provider, data.external_payment_id
                )
                if payment is None:
                    raise
        self._apply_payment(payment, data)
        await self.db.flush()
        return payment

    # Orders ------------------------------------------------------------

    async def get_order_for_checkout(self, tenant_id: str, order_id: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order).where(Order.id == order_id, Order.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def get_order(self, order_id: str) -> Optional[Order]:
        return await self.db.get(Order, order_id)

    async def set_order_payment_status(
        self,
        order_id: str,
        status: PaymentStatus,
        payment_reference: Optional[str],
        payment_method: Optional[str],
    ) -> bool:
        """Returns whether the status transitioned. Reference and method always refresh."""
        order = await self.db.get(Order, order_id)
        if order is None:
            return False
        changed = order.payment_status != status.value
        order.payment_reference = payment_reference
        order.payment_method = payment_method
        if changed:
            order.payment_status = status.value
            if status is PaymentStatus.PAID:
                order.paid_at = utcnow()
        await self.db.flush()
        return changed

    # Tenancy -----------------------------------------------------------

    async def is_tenant_admin(self, tenant_id: str, user_id: str) -> bool:
        result = await self.db.execute(
            select(User.id).where(
                User.id == user_id,
                User.tenant_id == tenant_id,
                User.role.in_(TENANT_ADMIN_ROLES),
            )
        )
        return result.first() is not None

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
        order_id: Optional[str],
        provider: str,
        event_id: str,
        event_type: str,
        payload: Any,
    ) -> bool:
        """
        Marks the event processed. Returns False when a concurrent delivery of
        the same (provider, event_id) committed first.
        """
        event = await self._find_event(provider, event_id)
        if event is None:
            event = PaymentEvent(provider=provider, event_id=event_id)
            self._apply_event(event, tenant_id, order_id, event_type, payload)
            try:
                async with self.db.begin_nested():
                    self.db.add(event)
            except IntegrityError:
                logger.info("webhook_event_race_lost", provider=provider, event_id=event_id)
                if not await self.is_webhook_event_processed(provider, event_id):
                    raise
                return False
            return True
        if event.processed_at is not None:
            return False
        self._apply_event(event, tenant_id, order_id, event_type, payload)
        await self.db.flush()
        return True

    @staticmethod
    def _apply_event(
        event: PaymentEvent,
        tenant_id: Optional[str],
        order_id: Optional[str],
        event_type: str,
        payload: Any,
    ) -> None:
        event.tenant_id = tenant_id
        event.order_id = order_id
        event.event_type = event_type
        event.payload = _dump(payload)
        event.processed_at = utcnow()

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()
