from types import MappingProxyType
from urllib.parse import parse_qs, urlparse

import pytest

from app.modules.payments.adapters.sqlalchemy_repository import SqlAlchemyPaymentsRepository
from app.modules.payments.domain.payments.errors import PaymentError, PaymentErrorCode
from app.modules.payments.domain.payments.mercadopago_client import MercadoPagoPaymentProvider
from app.modules.payments.domain.payments.oauth_state import decode_oauth_state
from app.modules.payments.domain.payments.registry import (
    PROVIDER_SLUGS,
    PaymentProviderRegistry,
    build_provider_registry,
    provider_code_for_slug,
)
from app.modules.payments.domain.payments.service import PaymentsService
from tests.factories import create_order, create_tenant, create_user


@pytest.fixture
async def store_users(db):
    tenant = await create_tenant(db, billing_status="ACTIVE")
    admin = await create_user(db, tenant, role="admin", email="admin@store.test")
    member = await create_user(db, tenant, role="member", email="staff@store.test")
    await db.commit()
    return tenant, admin, member


def _service(db) -> PaymentsService:
    return PaymentsService(build_provider_registry(), SqlAlchemyPaymentsRepository(db))


async def test_registry_resolves_providers_per_repository(db):
    registry = build_provider_registry()
    repository = SqlAlchemyPaymentsRepository(db)

    provider = registry.resolve("MERCADOPAGO", repository)

    assert isinstance(provider, MercadoPagoPaymentProvider)
    assert provider.repository is repository
    assert registry.codes == frozenset({"MERCADOPAGO"})
    assert registry.supports("MERCADOPAGO")
    assert not registry.supports("STRIPE")


async def test_registry_rejects_unknown_codes(db):
    with pytest.raises(PaymentError) as exc_info:
        build_provider_registry().resolve("STRIPE", SqlAlchemyPaymentsRepository(db))

    assert exc_info.value.error_code is PaymentErrorCode.PROVIDER_ERROR
    assert exc_info.value.status_code == 500


def test_registry_is_immutable():
    factories = {"MERCADOPAGO": MercadoPagoPaymentProvider}
    registry = PaymentProviderRegistry(factories)
    factories["OTHER"] = MercadoPagoPaymentProvider

    assert not registry.supports("OTHER")
    with pytest.raises(TypeError):
        PROVIDER_SLUGS["stripe"] = "STRIPE"  # type: ignore[index]
    assert isinstance(PROVIDER_SLUGS, MappingProxyType)


def test_provider_slugs():
    assert provider_code_for_slug("mercadopago") == "MERCADOPAGO"
    assert provider_code_for_slug(" MercadoPago ") == "MERCADOPAGO"
    assert provider_code_for_slug("paypal") is None


async def test_connect_url_carries_encrypted_state(db, store_users):
    tenant, admin, _ = store_users

    result = await _service(db).get_connect_url(tenant.id, admin.id)

    parsed = urlparse(result.authorization_url)
    query = parse_qs(parsed.query)
    assert result.authorization_url.startswith("https://auth.mercadopago.com/authorization?")
    assert query["response_type"] == ["code"]
    assert query["client_id"] == ["test-client-id"]
    state = decode_oauth_state(query["state"][0], "MERCADOPAGO")
    assert (state.tenant_id, state.actor_id) == (tenant.id, admin.id)


async def test_members_cannot_connect_accounts(db, store_users):
    tenant, _, member = store_users

    with pytest.raises(PaymentError) as exc_info:
        await _service(db).get_connect_url(tenant.id, member.id)

    assert exc_info.value.error_code is PaymentErrorCode.UNAUTHORIZED_STORE_CONTEXT
    assert exc_info.value.status_code == 403


async def test_users_of_other_stores_cannot_connect(db, store_users):
    _, admin, _ = store_users
    other = await create_tenant(db, name="Other")
    await db.commit()

    with pytest.raises(PaymentError) as exc_info:
        await _service(db).get_connect_url(other.id, admin.id)

    assert exc_info.value.error_code is PaymentErrorCode.UNAUTHORIZED_STORE_CONTEXT


async def test_missing_oauth_config_is_a_config_error(db, store_users, monkeypatch):
    tenant, admin, _ = store_users
    service = _service(db)
    monkeypatch.setattr(service.settings, "MP_CLIENT_ID", None)

    with pytest.raises(PaymentError) as exc_info:
        await service.get_connect_url(tenant.id, admin.id)

    assert exc_info.value.error_code is PaymentErrorCode.CONFIG_ERROR


async def test_checkout_requires_an_order_of_the_store(db, store_users):
    tenant, _, _ = store_users
    other = await create_tenant(db, name="Other")
    foreign = await create_order(db, other)
    await db.commit()

    with pytest.raises(PaymentError) as exc_info:
        await _service(db).create_checkout(tenant.id, foreign.id, "idem-key-0001")

    assert exc_info.value.error_code is PaymentErrorCode.ORDER_NOT_FOUND
    assert exc_info.value.status_code == 404


async def test_checkout_requires_items(db, store_users):
    tenant, _, _ = store_users
    order = await create_order(db, tenant, items=0)
    await db.commit()

    with pytest.raises(PaymentError) as exc_info:
        await _service(db).create_checkout(tenant.id, order.id, "idem-key-0001")

    assert exc_info.value.status_code == 400


async def test_checkout_without_connected_account(db, store_users):
    tenant, _, _ = store_users
    order = await create_order(db, tenant)
    await db.commit()

    with pytest.raises(PaymentError) as exc_info:
        await _service(db).create_checkout(tenant.id, order.id, "idem-key-0001")

    assert exc_info.value.error_code is PaymentErrorCode.ACCOUNT_NOT_CONNECTED


async def test_oauth_redirect_urls(db):
    service = _service(db)

    assert service.oauth_callback_redirect_url(True) == (
        "http://localhost:5173/admin/integrations/mercadopago?status=connected"
    )
    assert service.oauth_callback_redirect_url(False).endswith("?status=error")
