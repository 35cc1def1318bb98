import httpx
import pytest
import respx
from sqlalchemy import func, select

from app.models.order import Order
from app.models.payments import Payment, PaymentEvent
from app.modules.payments.adapters.sqlalchemy_repository import SqlAlchemyPaymentsRepository
from app.modules.payments.domain.payments.errors import PaymentError, PaymentErrorCode
from app.modules.payments.domain.payments.mercadopago_client import payment_event_id
from app.modules.payments.domain.payments.registry import build_provider_registry
from app.modules.payments.domain.payments.service import PaymentsService, parse_webhook_payload
from tests.factories import connect_store_account, create_order, create_tenant

PAYMENT_URL = "https://api.mercadopago.com/v1/payments/123"


@pytest.fixture
async def connected_store(db):
    tenant = await create_tenant(db, billing_status="ACTIVE")
    await connect_store_account(db, tenant)
    order = await create_order(db, tenant, total="1500.00")
    await db.commit()
    return tenant, order


def _service(db) -> PaymentsService:
    return PaymentsService(build_provider_registry(), SqlAlchemyPaymentsRepository(db))


def _payload(webhook_id: str = "wh-1") -> dict:
    return {"type": "payment", "id": webhook_id, "user_id": 555001, "data": {"id": "123"}}


def _mp_payment(order_id: str, status: str = "approved") -> dict:
    return {
        "id": 123,
        "status": status,
        "status_detail": "accredited",
        "external_reference": order_id,
        "transaction_amount": 1500.0,
        "currency_id": "ARS",
        "payment_method_id": "visa",
    }


async def _count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


def test_parse_webhook_payload_variants():
    nested = parse_webhook_payload({"type": "payment", "data": {"id": 99}, "id": 7})
    flat = parse_webhook_payload({"topic": "payment", "data.id": "99"})

    assert (nested.event_type, nested.payment_id, nested.webhook_id) == ("payment", "99", "7")
    assert (flat.event_type, flat.payment_id, flat.webhook_id) == ("payment", "99", "unknown")
    assert nested.provider_user_id is None


def test_payment_event_id_format():
    assert payment_event_id("payment", "123", None) == "payment:123:unknown"
    assert payment_event_id("payment", "123", "wh-1") == "payment:123:wh-1"


@respx.mock
async def test_webhook_updates_order_and_records_payment(db, connected_store):
    tenant, order = connected_store
    route = respx.get(PAYMENT_URL).mock(
        return_value=httpx.Response(200, json=_mp_payment(order.id))
    )

    result = await _service(db).handle_webhook(_payload())

    assert route.call_count == 1
    assert route.calls.last.request.headers["Authorization"] == "Bearer APP_USR-store-token"
    assert result.duplicate is False
    assert (result.tenant_id, result.order_id, result.payment_id) == (tenant.id, order.id, "123")

    stored = (await db.execute(select(Order).where(Order.id == order.id))).scalar_one()
    assert stored.payment_status == "PAID"
    assert stored.payment_reference == "123"
    assert stored.payment_method == "visa"
    assert stored.paid_at is not None

    payment = (await db.execute(select(Payment))).scalar_one()
    assert payment.status == "approved"
    assert payment.external_payment_id == "123"
    assert payment.tenant_id == tenant.id

    event = (await db.execute(select(PaymentEvent))).scalar_one()
    assert event.event_id == "payment:123:wh-1"
    assert event.processed_at is not None


@respx.mock
async def test_redelivered_webhook_is_processed_once(db, connected_store):
    _, order = connected_store
    route = respx.get(PAYMENT_URL).mock(
        return_value=httpx.Response(200, json=_mp_payment(order.id))
    )
    service = _service(db)

    await service.handle_webhook(_payload())
    again = await service.handle_webhook(_payload())

    assert again.duplicate is True
    assert route.call_count == 1
    assert await _count(db, Payment) == 1
    assert await _count(db, PaymentEvent) == 1


@respx.mock
async def test_new_notification_for_same_payment_updates_the_single_row(db, connected_store):
    _, order = connected_store
    respx.get(PAYMENT_URL).mock(
        side_effect=[
            httpx.Response(200, json=_mp_payment(order.id, status="in_process")),
            httpx.Response(200, json=_mp_payment(order.id, status="approved")),
        ]
    )
    service = _service(db)

    await service.handle_webhook(_payload("wh-1"))
    await service.handle_webhook(_payload("wh-2"))

    assert await _count(db, Payment) == 1
    assert await _count(db, PaymentEvent) == 2
    payment = (await db.execute(select(Payment))).scalar_one()
    assert payment.status == "approved"


@respx.mock
async def test_payment_for_another_stores_order_is_rejected(db, connected_store):
    other = await create_tenant(db, name="Other Store")
    foreign_order = await create_order(db, other)
    await db.commit()
    respx.get(PAYMENT_URL).mock(
        return_value=httpx.Response(200, json=_mp_payment(foreign_order.id))
    )

    with pytest.raises(PaymentError) as exc_info:
        await _service(db).handle_webhook(_payload())

    assert exc_info.value.error_code is PaymentErrorCode.ORDER_NOT_FOUND
    assert await _count(db, PaymentEvent) == 0


@respx.mock
async def test_payment_without_external_reference_is_invalid(db, connected_store):
    body = _mp_payment("ignored")
    body["external_reference"] = None
    respx.get(PAYMENT_URL).mock(return_value=httpx.Response(200, json=body))

    with pytest.raises(PaymentError) as exc_info:
        await _service(db).handle_webhook(_payload())

    assert exc_info.value.error_code is PaymentErrorCode.INVALID_WEBHOOK


async def test_unknown_merchant_is_not_connected(db, connected_store):
    payload = _payload()
    payload["user_id"] = 999999

    with pytest.raises(PaymentError) as exc_info:
        await _service(db).handle_webhook(payload)

    assert exc_info.value.error_code is PaymentErrorCode.ACCOUNT_NOT_CONNECTED


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "merchant_order", "data": {"id": "1"}},
        {"type": "payment", "data": {}},
        {},
    ],
)
async def test_non_payment_notifications_are_invalid(db, payload):
    with pytest.raises(PaymentError) as exc_info:
        await _service(db).handle_webhook(payload)

    assert exc_info.value.error_code is PaymentErrorCode.INVALID_WEBHOOK
