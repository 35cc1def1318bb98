from datetime import timedelta

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.idempotency import IdempotencyKey
from app.shared.core.exceptions import IdempotencyKeyError
from app.shared.core.idempotency import (
    IdempotencyLedger,
    IdempotencyState,
    hash_request_body,
    normalize_idempotency_key,
)
from app.shared.db.base import utcnow

TENANT = "tenant-idem"
SCOPE = "payments.checkout"


def test_request_hash_ignores_key_order():
    assert hash_request_body({"a": 1, "b": 2}) == hash_request_body({"b": 2, "a": 1})
    assert hash_request_body(None) == hash_request_body({})
    assert hash_request_body({"a": 1}) != hash_request_body({"a": 2})


@pytest.mark.parametrize("raw", [None, "", "   ", "short", "x" * 129])
def test_invalid_keys_are_rejected(raw):
    with pytest.raises(IdempotencyKeyError):
        normalize_idempotency_key(raw)


def test_key_is_trimmed():
    assert normalize_idempotency_key("  order-key-0001 ") == "order-key-0001"


async def test_first_request_claims_the_key(db):
    ledger = IdempotencyLedger(db)

    outcome = await ledger.begin(
        tenant_id=TENANT, scope=SCOPE, key="key-00000001", request_body={"order": 1}
    )

    assert outcome.state is IdempotencyState.NEW
    assert outcome.record_id


async def test_duplicate_while_processing_is_in_progress(db):
    ledger = IdempotencyLedger(db)
    await ledger.begin(tenant_id=TENANT, scope=SCOPE, key="key-00000002", request_body={})

    outcome = await ledger.begin(
        tenant_id=TENANT, scope=SCOPE, key="key-00000002", request_body={}
    )

    assert outcome.state is IdempotencyState.IN_PROGRESS


async def test_completed_request_replays_verbatim(db):
    ledger = IdempotencyLedger(db)
    first = await ledger.begin(
        tenant_id=TENANT, scope=SCOPE, key="key-00000003", request_body={"x": 1}
    )
    await ledger.complete(first.record_id, 201, {"checkout_url": "https://mp.test/1"})

    replay = await ledger.begin(
        tenant_id=TENANT, scope=SCOPE, key="key-00000003", request_body={"x": 1}
    )

    assert replay.state is IdempotencyState.REPLAY
    assert replay.response_status == 201
    assert replay.response_body == {"checkout_url": "https://mp.test/1"}


async def test_different_payload_is_a_conflict(db):
    ledger = IdempotencyLedger(db)
    await ledger.begin(tenant_id=TENANT, scope=SCOPE, key="key-00000004", request_body={"x": 1})

    outcome = await ledger.begin(
        tenant_id=TENANT, scope=SCOPE, key="key-00000004", request_body={"x": 2}
    )

    assert outcome.state is IdempotencyState.CONFLICT


async def test_keys_are_scoped_per_tenant_and_scope(db):
    ledger = IdempotencyLedger(db)
    await ledger.begin(tenant_id=TENANT, scope=SCOPE, key="key-00000005", request_body={})

    other_tenant = await ledger.begin(
        tenant_id="another-tenant", scope=SCOPE, key="key-00000005", request_body={}
    )
    other_scope = await ledger.begin(
        tenant_id=TENANT, scope="billing.create", key="key-00000005", request_body={}
    )

    assert other_tenant.state is IdempotencyState.NEW
    assert other_scope.state is IdempotencyState.NEW


async def test_expired_key_behaves_as_absent(db):
    ledger = IdempotencyLedger(db)
    first = await ledger.begin(
        tenant_id=TENANT, scope=SCOPE, key="key-00000006", request_body={"x": 1}
    )
    await ledger.complete(first.record_id, 200, {"ok": True})
    await db.execute(
        update(IdempotencyKey)
        .where(IdempotencyKey.id == first.record_id)
        .values(expires_at=utcnow() - timedelta(minutes=1))
    )
    await db.commit()

    outcome = await ledger.begin(
        tenant_id=TENANT, scope=SCOPE, key="key-00000006", request_body={"x": 2}
    )

    assert outcome.state is IdempotencyState.NEW
    assert outcome.record_id != first.record_id
    rows = (
        await db.execute(select(IdempotencyKey).where(IdempotencyKey.key == "key-00000006"))
    ).scalars().all()
    assert len(rows) == 1


async def test_concurrent_insert_loser_reads_the_winner(db, async_engine):
    winner = IdempotencyLedger(db)
    await winner.begin(tenant_id=TENANT, scope=SCOPE, key="key-00000007", request_body={})

    session_maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as other_session:
        loser = IdempotencyLedger(other_session)
        real_find = loser._find
        calls = 0

        async def _miss_first_lookup(*args):
            nonlocal calls
            calls += 1
            if calls == 1:
                return None
            return await real_find(*args)

        loser._find = _miss_first_lookup
        outcome = await loser.begin(
            tenant_id=TENANT, scope=SCOPE, key="key-00000007", request_body={}
        )

    assert outcome.state is IdempotencyState.IN_PROGRESS
    assert calls == 2
