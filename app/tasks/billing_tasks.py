import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Coroutine, cast

import structlog
from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.adapters.sqlalchemy_repository import SqlAlchemyBillingRepository
from app.modules.billing.domain.billing.mercadopago_client import (
    MercadoPagoBillingProvider,
)
from app.modules.billing.domain.billing.service import BillingService
from app.shared.core.http import close_http_client, init_http_client
from app.shared.db.session import async_session_maker, get_engine

logger = structlog.get_logger()

DB_SESSION_ACQUIRE_TIMEOUT_SECONDS = 10.0


@asynccontextmanager
async def _open_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Open a DB session, bounding only the connection acquisition."""
    session = async_session_maker()
    try:
        async with asyncio.timeout(DB_SESSION_ACQUIRE_TIMEOUT_SECONDS):
            await session.connection()
    except asyncio.TimeoutError as exc:
        await session.close()
        logger.error("db_session_acquisition_failed", error=str(exc), type="TimeoutError")
        raise
    try:
        yield session
    finally:
        await session.close()


# Helper to run async code in sync Celery task
def run_async(task_or_coro: Any, *args: Any, **kwargs: Any) -> Any:
    """
    Run an async callable/coroutine from sync code.

    Supported call patterns:
    - run_async(coroutine)
    - run_async(callable, *args, **kwargs)
    """
    if asyncio.iscoroutine(task_or_coro) or inspect.isawaitable(task_or_coro):
        return asyncio.run(cast(Coroutine[Any, Any, Any], task_or_coro))

    if callable(task_or_coro):
        return asyncio.run(task_or_coro(*args, **kwargs))

    raise TypeError("run_async expects an awaitable or a callable async function")


async def _with_billing_service(operation: str, **kwargs: Any) -> dict[str, int]:
    """Each task run owns its event loop, so pooled connections are disposed after use."""
    await init_http_client()
    try:
        async with _open_db_session() as db:
            service = BillingService(
                SqlAlchemyBillingRepository(db), MercadoPagoBillingProvider()
            )
            result: dict[str, int] = await getattr(service, operation)(**kwargs)
            return result
    finally:
        await close_http_client()
        await get_engine().dispose()


async def sync_active_subscriptions() -> dict[str, int]:
    return await _with_billing_service("sync_active_subscriptions_job")


async def sync_preapproval_plans(include_inactive: bool = False) -> dict[str, int]:
    return await _with_billing_service(
        "sync_preapproval_plans", include_inactive=include_inactive
    )


@shared_task(
    name="billing.sync_active_subscriptions",
    autoretry_for=(Exception,),
    retry_kwargs={"max_retries": 3, "countdown": 30},
    retry_backoff=True,
)  # type: ignore[untyped-decorator]
def sync_active_subscriptions_task() -> dict[str, int]:
    logger.info("billing_task_started", task="sync_active_subscriptions")
    result: dict[str, int] = run_async(sync_active_subscriptions)
    logger.info("billing_task_completed", task="sync_active_subscriptions", **result)
    return result


@shared_task(
    name="billing.sync_preapproval_plans",
    autoretry_for=(Exception,),
    retry_kwargs={"max_retries": 3, "countdown": 30},
    retry_backoff=True,
)  # type: ignore[untyped-decorator]
def sync_preapproval_plans_task(include_inactive: bool = False) -> dict[str, int]:
    logger.info("billing_task_started", task="sync_preapproval_plans")
    result: dict[str, int] = run_async(sync_preapproval_plans, include_inactive)
    logger.info("billing_task_completed", task="sync_preapproval_plans", **result)
    return result
