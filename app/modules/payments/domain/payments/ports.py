"""Persistence capabilities the store payment use cases depend on."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Protocol

from app.models.order import Order
from app.models.payments import Payment, PaymentStatus, StorePaymentAccount


@dataclass(frozen=True)
class StoreAccountUpsert:
    tenant_id: str
    provider: str
    access_token_encrypted: str
    refresh_token_encrypted: Optional[str] = None
    provider_user_id: Optional[str] = None
    public_key: Optional[str] = None
    scope: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentUpsert:
    tenant_id: str
    order_id: str
    provider: str
    external_payment_id: str
    status: str
    status_detail: Optional[str]
    amount: Optional[Decimal]
    currency: str
    raw_response: Any


class PaymentsRepository(Protocol):
    async def find_store_account(
        self, tenant_id: str, provider: str
    ) -> Optional[StorePaymentAccount]: ...

    async def find_store_account_by_provider_user_id(
        self, provider_user_id: str, provider: str
    ) -> Optional[StorePaymentAccount]: ...

    async def upsert_store_account(self, data: StoreAccountUpsert) -> StorePaymentAccount: ...

    async def find_payment_by_external_id(
        self, provider: str, external_payment_id: str
    ) -> Optional[Payment]: ...

    async def upsert_payment(self, data: PaymentUpsert) -> Payment: ...

    async def get_order_for_checkout(self, tenant_id: str, order_id: str) -> Optional[Order]: ...

    async def get_order(self, order_id: str) -> Optional[Order]: ...

    async def set_order_payment_status(
        self,
        order_id: str,
        status: PaymentStatus,
        payment_reference: Optional[str],
        payment_method: Optional[str],
    ) -> bool: ...

    async def is_tenant_admin(self, tenant_id: str, user_id: str) -> bool: ...

    async def is_webhook_event_processed(self, provider: str, event_id: str) -> bool: ...

    async def record_webhook_event(
        self,
        *,
        tenant_id: Optional[str],
        order_id: Optional[str],
        provider: str,
        event_id: str,
        event_type: str,
        payload: Any,
    ) -> bool: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...
