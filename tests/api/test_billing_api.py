from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx
from sqlalchemy import select

from app.models.billing import Plan, Subscription
from app.shared.core.config import get_settings
from tests.factories import bearer_headers, create_plan, create_subscription, create_user

API = "/api/payments/billing"
MP_API = "https://api.mercadopago.com"
JOB_SECRET = "s" * 40


@pytest.fixture
async def catalog(db):
    free = await create_plan(db, "FREE", "0", sort_order=0)
    starter = await create_plan(
        db, "STARTER", "9999", sort_order=1, description="Up to 100 products\n\nCustom domain\n"
    )
    pro = await create_plan(db, "PRO", "24999", sort_order=2)
    await create_plan(db, "LEGACY", "4999", sort_order=3, active=False)
    await db.commit()
    return {"FREE": free, "STARTER": starter, "PRO": pro}


# ==================== Public & lifecycle ====================


async def test_public_plans_need_no_auth_and_are_cacheable(async_client, catalog):
    response = await async_client.get("/api/public/plans")

    assert response.status_code == 200
    assert response.headers["Cache-Control"] == "public, max-age=300"
    body = response.json()
    assert [plan["name"] for plan in body] == ["Free", "Starter", "Pro"]
    assert Decimal(body[1]["price"]) == Decimal("9999")
    assert body[1]["currency"] == "ARS"


async def test_health_endpoints(async_client):
    live = await async_client.get("/health/live")
    ready = await async_client.get("/health")

    assert live.json() == {"status": "healthy"}
    assert ready.status_code == 200
    assert ready.json()["database"] == {"status": "up"}


# ==================== Subscriptions ====================


async def test_pre_registered_plan_returns_hosted_checkout(
    db, async_client, owner_headers, store, catalog
):
    tenant, _ = store
    catalog["STARTER"].mp_preapproval_plan_id = "mp-plan-starter"
    await db.commit()

    response = await async_client.post(
        f"{API}/subscriptions", headers=owner_headers, json={"plan_code": "STARTER"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["subscription_id"] is None
    url = urlparse(body["init_point"])
    assert f"{url.scheme}://{url.netloc}{url.path}" == get_settings().MP_SUBSCRIPTION_CHECKOUT_URL
    query = parse_qs(url.query)
    assert query["preapproval_plan_id"] == ["mp-plan-starter"]
    assert query["external_reference"] == [tenant.id]
    assert query["payer_email"] == ["owner@store.test"]


async def test_create_subscription_creates_preapproval(
    db, async_client, owner_headers, store, catalog
):
    tenant, _ = store
    with respx.mock:
        route = respx.post(f"{MP_API}/preapproval").mock(
            return_value=httpx.Response(
                201,
                json={
                    "id": "pre-new",
                    "status": "pending",
                    "init_point": "https://mp.test/subscriptions/pre-new",
                },
            )
        )
        response = await async_client.post(
            f"{API}/subscriptions",
            headers=owner_headers,
            json={"plan_id": catalog["PRO"].id},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["external_subscription_id"] == "pre-new"
    assert body["init_point"] == "https://mp.test/subscriptions/pre-new"
    assert route.call_count == 1

    subscription = (
        await db.execute(select(Subscription).where(Subscription.id == body["subscription_id"]))
    ).unique().scalar_one()
    assert subscription.tenant_id == tenant.id
    assert subscription.plan_id == catalog["PRO"].id
    assert subscription.status == "TRIALING"


async def test_free_plan_cannot_be_subscribed(async_client, owner_headers, store, catalog):
    response = await async_client.post(
        f"{API}/subscriptions", headers=owner_headers, json={"plan_code": "FREE"}
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PLAN_UNAVAILABLE"


async def test_members_cannot_start_subscriptions(db, async_client, store, catalog):
    tenant, _ = store
    member = await create_user(db, tenant, role="member", email="staff@store.test")
    await db.commit()

    response = await async_client.post(
        f"{API}/subscriptions",
        headers=bearer_headers(member.id),
        json={"plan_code": "STARTER"},
    )

    assert response.status_code == 403


async def test_subscription_request_needs_a_plan(async_client, owner_headers, store):
    response = await async_client.post(f"{API}/subscriptions", headers=owner_headers, json={})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_current_subscription(db, async_client, owner_headers, store, catalog):
    tenant, _ = store
    empty = await async_client.get(f"{API}/subscriptions/current", headers=owner_headers)
    assert empty.status_code == 200
    assert empty.json() is None

    await create_subscription(db, tenant, catalog["STARTER"], external_subscription_id="pre-1")
    await db.commit()

    response = await async_client.get(f"{API}/subscriptions/current", headers=owner_headers)

    body = response.json()
    assert body["plan"] == "STARTER"
    assert body["plan_id"] == catalog["STARTER"].id
    assert body["status"] == "ACTIVE"


async def test_change_plan_updates_amount_and_snapshot(
    db, async_client, owner_headers, store, catalog
):
    tenant, _ = store
    await create_subscription(db, tenant, catalog["STARTER"], external_subscription_id="pre-1")
    await db.commit()
    with respx.mock:
        route = respx.put(f"{MP_API}/preapproval/pre-1").mock(
            return_value=httpx.Response(200, json={"id": "pre-1"})
        )
        response = await async_client.patch(
            f"{API}/subscriptions/current/plan",
            headers=owner_headers,
            json={"plan_code": "PRO"},
        )

    assert response.status_code == 200
    assert response.json()["plan"] == "PRO"
    assert route.call_count == 1
    await db.refresh(tenant)
    assert tenant.plan == "PRO"


async def test_billing_plans_list_features(async_client, owner_headers, store, catalog):
    response = await async_client.get(f"{API}/plans", headers=owner_headers)

    assert response.status_code == 200
    starter = next(plan for plan in response.json() if plan["name"] == "Starter")
    assert starter["features"] == ["Up to 100 products", "Custom domain"]
    assert starter["active"] is True
    assert "Legacy" not in [plan["name"] for plan in response.json()]


# ==================== Manual sync ====================


async def test_store_admin_can_trigger_sync(async_client, owner_headers, store):
    with respx.mock:
        route = respx.get(url__startswith=f"{MP_API}/preapproval/search").mock(
            return_value=httpx.Response(200, json={"results": [], "paging": {"total": 0}})
        )
        response = await async_client.post(f"{API}/sync", headers=owner_headers)

    assert response.status_code == 200
    assert response.json() == {"processed": 0, "skipped": 0}
    assert route.call_count == 2


async def test_members_cannot_trigger_sync(db, async_client, store):
    tenant, _ = store
    member = await create_user(db, tenant, role="member", email="clerk@store.test")
    await db.commit()

    response = await async_client.post(f"{API}/sync", headers=bearer_headers(member.id))

    assert response.status_code == 403


async def test_sync_requires_a_bearer_token(async_client):
    response = await async_client.post(
        f"{API}/sync", headers={"X-Internal-Job-Secret": JOB_SECRET}
    )

    assert response.status_code == 401


# ==================== Internal jobs ====================


async def test_internal_sync_without_configured_secret_is_unavailable(async_client, monkeypatch):
    monkeypatch.setattr(get_settings(), "INTERNAL_JOB_SECRET", "too-short")

    response = await async_client.post(
        f"{API}/internal/sync", headers={"X-Internal-Job-Secret": "too-short"}
    )

    assert response.status_code == 503


async def test_internal_sync_with_wrong_secret_is_forbidden(async_client, monkeypatch):
    monkeypatch.setattr(get_settings(), "INTERNAL_JOB_SECRET", JOB_SECRET)

    response = await async_client.post(f"{API}/internal/sync", headers={"X-Internal-Job-Secret": "nope"})

    assert response.status_code == 403


async def test_internal_sync_reconciles_both_status_buckets(async_client, monkeypatch):
    monkeypatch.setattr(get_settings(), "INTERNAL_JOB_SECRET", JOB_SECRET)
    with respx.mock:
        route = respx.get(url__startswith=f"{MP_API}/preapproval/search").mock(
            return_value=httpx.Response(200, json={"results": [], "paging": {"total": 0}})
        )
        response = await async_client.post(
            f"{API}/internal/sync", headers={"X-Internal-Job-Secret": JOB_SECRET}
        )

    assert response.status_code == 200
    assert response.json() == {"processed": 0, "skipped": 0}
    statuses = [call.request.url.params["status"] for call in route.calls]
    assert statuses == ["authorized", "pending"]


async def test_plan_sync_registers_paid_plans(db, async_client, monkeypatch, catalog):
    monkeypatch.setattr(get_settings(), "INTERNAL_JOB_SECRET", JOB_SECRET)
    catalog["PRO"].mp_preapproval_plan_id = "mp-plan-pro"
    await db.commit()
    with respx.mock:
        create = respx.post(f"{MP_API}/preapproval_plan").mock(
            return_value=httpx.Response(201, json={"id": "mp-plan-starter"})
        )
        update = respx.put(f"{MP_API}/preapproval_plan/mp-plan-pro").mock(
            return_value=httpx.Response(200, json={"id": "mp-plan-pro"})
        )
        response = await async_client.post(
            f"{API}/plans/sync", headers={"X-Internal-Job-Secret": JOB_SECRET}
        )

    assert response.status_code == 200
    assert response.json() == {"created": 1, "updated": 1, "total": 3}
    assert create.call_count == 1
    assert update.call_count == 1
    starter = (
        await db.execute(
            select(Plan)
            .where(Plan.code == "STARTER")
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert starter.mp_preapproval_plan_id == "mp-plan-starter"
