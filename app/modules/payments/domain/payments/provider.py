"""Store payment provider port and the value types crossing it."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Protocol


@dataclass(frozen=True)
class ConnectAccountResult:
    authorization_url: str


@dataclass(frozen=True)
class ConnectCallbackResult:
    tenant_id: str
    provider_user_id: Optional[str]


@dataclass(frozen=True)
class CheckoutItem:
    id: str
    title: str
    quantity: int
    unit_price: Decimal
    currency: str
    image: Optional[str] = None


@dataclass(frozen=True)
class CheckoutRequest:
    tenant_id: str
    order_id: str
    amount: Decimal
    currency: str
    notification_url: str
    idempotency_key: str
    items: List[CheckoutItem] = field(default_factory=list)
    payer_email: Optional[str] = None
    marketplace_fee: Optional[float] = None


@dataclass(frozen=True)
class CheckoutResult:
    checkout_url: str
    external_reference: str
    preference_id: str


@dataclass(frozen=True)
class WebhookPaymentInput:
    webhook_id: str
    event_type: str
    payment_id: str
    provider_user_id: Optional[str] = None


@dataclass(frozen=True)
class WebhookPaymentResult:
    payment_id: str
    tenant_id: Optional[str] = None
    order_id: Optional[str] = None
    duplicate: bool = False


class PaymentProvider(Protocol):
    provider_code: str

    def connect_account(
        self, *, tenant_id: str, actor_id: str, state: str
    ) -> ConnectAccountResult: ...

    async def complete_connection(
        self, *, tenant_id: str, actor_id: str, authorization_code: str
    ) -> ConnectCallbackResult: ...

    async def get_valid_access_token(self, tenant_id: str) -> str: ...

    async def refresh_token(self, tenant_id: str) -> bool: ...

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutResult: ...

    async def handle_webhook_payment(
        self, event: WebhookPaymentInput
    ) -> WebhookPaymentResult: ...
