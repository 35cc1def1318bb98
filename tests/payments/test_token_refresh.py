from datetime import timedelta

import httpx
import pytest
import respx

from app.modules.payments.adapters.sqlalchemy_repository import SqlAlchemyPaymentsRepository
from app.modules.payments.domain.payments.errors import PaymentError, PaymentErrorCode
from app.modules.payments.domain.payments.mercadopago_client import (
    MercadoPagoPaymentProvider,
    needs_refresh,
)
from app.shared.core.security import decrypt_string
from app.shared.db.base import as_utc, utcnow
from tests.factories import connect_store_account, create_tenant

TOKEN_URL = "https://api.mercadopago.com/oauth/token"


def test_needs_refresh_boundaries():
    now = utcnow()

    assert needs_refresh(None, now) is False
    assert needs_refresh(now + timedelta(minutes=10), now) is False
    assert needs_refresh(now + timedelta(minutes=5, seconds=1), now) is False
    assert needs_refresh(now + timedelta(minutes=5), now) is True
    assert needs_refresh(now + timedelta(minutes=2), now) is True
    assert needs_refresh(now - timedelta(hours=1), now) is True


def test_needs_refresh_treats_naive_datetimes_as_utc():
    now = utcnow()
    naive = (now + timedelta(minutes=2)).replace(tzinfo=None)

    assert needs_refresh(naive, now) is True


@pytest.fixture
async def tenant(db):
    tenant = await create_tenant(db, billing_status="ACTIVE")
    await db.commit()
    return tenant


def _provider(db) -> MercadoPagoPaymentProvider:
    return MercadoPagoPaymentProvider(SqlAlchemyPaymentsRepository(db))


@respx.mock
async def test_fresh_token_is_reused_without_calling_the_provider(db, tenant):
    await connect_store_account(db, tenant, expires_in=timedelta(minutes=10))
    route = respx.post(TOKEN_URL)

    token = await _provider(db).get_valid_access_token(tenant.id)

    assert token == "APP_USR-store-token"
    assert route.call_count == 0


@respx.mock
async def test_token_without_expiry_is_never_refreshed(db, tenant):
    await connect_store_account(db, tenant, expires_in=None)
    route = respx.post(TOKEN_URL)

    assert await _provider(db).get_valid_access_token(tenant.id) == "APP_USR-store-token"
    assert route.call_count == 0


@respx.mock
async def test_expiring_token_is_refreshed_exactly_once(db, tenant):
    account = await connect_store_account(db, tenant, expires_in=timedelta(minutes=2))
    await db.commit()
    route = respx.post(TOKEN_URL).mock(
        return_value=httpx.Response(
            200,
            json={
                "access_token": "APP_USR-new-token",
                "refresh_token": "TG-new-refresh",
                "expires_in": 21600,
                "user_id": 555001,
            },
        )
    )

    token = await _provider(db).get_valid_access_token(tenant.id)

    assert token == "APP_USR-new-token"
    assert route.call_count == 1
    sent = route.calls.last.request
    assert b'"grant_type":"refresh_token"' in sent.content.replace(b" ", b"")
    assert b"TG-refresh-token" in sent.content

    await db.refresh(account)
    assert decrypt_string(account.access_token) == "APP_USR-new-token"
    assert decrypt_string(account.refresh_token) == "TG-new-refresh"
    assert as_utc(account.expires_at) > utcnow() + timedelta(hours=5)


@respx.mock
async def test_refresh_keeps_fields_the_provider_omits(db, tenant):
    account = await connect_store_account(db, tenant, expires_in=timedelta(minutes=1))
    account.public_key = "APP_USR-public"
    await db.commit()
    previous_expiry = account.expires_at
    respx.post(TOKEN_URL).mock(
        return_value=httpx.Response(200, json={"access_token": "APP_USR-rotated"})
    )

    assert await _provider(db).refresh_token(tenant.id) is True

    await db.refresh(account)
    assert decrypt_string(account.refresh_token) == "TG-refresh-token"
    assert account.public_key == "APP_USR-public"
    assert account.provider_user_id == "555001"
    assert as_utc(account.expires_at) == as_utc(previous_expiry)


@respx.mock
async def test_expiring_token_without_refresh_token_returns_cached(db, tenant):
    await connect_store_account(
        db, tenant, refresh_token=None, expires_in=timedelta(minutes=1)
    )
    route = respx.post(TOKEN_URL)

    assert await _provider(db).get_valid_access_token(tenant.id) == "APP_USR-store-token"
    assert route.call_count == 0


async def test_missing_account_is_not_connected(db, tenant):
    with pytest.raises(PaymentError) as exc_info:
        await _provider(db).get_valid_access_token(tenant.id)

    assert exc_info.value.error_code is PaymentErrorCode.ACCOUNT_NOT_CONNECTED
    assert await _provider(db).refresh_token(tenant.id) is False


@respx.mock
async def test_failed_refresh_is_a_provider_error(db, tenant):
    await connect_store_account(db, tenant, expires_in=timedelta(minutes=1))
    respx.post(TOKEN_URL).mock(
        return_value=httpx.Response(400, json={"message": "invalid_grant"})
    )

    with pytest.raises(PaymentError) as exc_info:
        await _provider(db).get_valid_access_token(tenant.id)

    assert exc_info.value.error_code is PaymentErrorCode.PROVIDER_ERROR
    assert exc_info.value.status_code == 502
