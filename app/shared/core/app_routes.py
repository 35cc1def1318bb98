from typing import Annotated, Any

import structlog
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.shared.db.session import get_db

logger = structlog.get_logger()

# Relative to API_PREFIX
_REQUIRED_API_PREFIXES = {
    "/payments",
    "/payments/billing",
    "/public",
}


def _validate_router_registry(routes: list[tuple[Any, str]], api_prefix: str) -> None:
    seen_prefixes: set[str] = set()
    for router, prefix in routes:
        route_list = getattr(router, "routes", None)
        if not isinstance(route_list, list) or not route_list:
            raise RuntimeError("Router registry includes an empty router definition")
        if not prefix.startswith("/"):
            raise RuntimeError(f"Router prefix must start with '/': {prefix!r}")
        if prefix in seen_prefixes:
            raise RuntimeError(f"Duplicate router prefix registered: {prefix}")
        seen_prefixes.add(prefix)

    expected = {f"{api_prefix}{p}" for p in _REQUIRED_API_PREFIXES}
    missing_prefixes = sorted(expected - seen_prefixes)
    if missing_prefixes:
        raise RuntimeError(
            "Router registry is missing required API prefixes: "
            + ", ".join(missing_prefixes)
        )


def register_lifecycle_routes(
    app: FastAPI,
    *,
    app_name: str,
    version: str,
) -> None:
    """Register lifecycle and health endpoints."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        """Root endpoint for basic reachability."""
        return {"status": "ok", "app": app_name, "version": version}

    @app.get("/health/live", tags=["Lifecycle"])
    async def liveness_check() -> dict[str, str]:
        """Fast liveness check without dependencies."""
        return {"status": "healthy"}

    @app.get("/health", tags=["Lifecycle"])
    async def health_check(db: Annotated[AsyncSession, Depends(get_db)]) -> Any:
        """Readiness check for load balancers: the database must answer."""
        try:
            await db.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.error("health_check_database_down", error=str(exc))
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "database": {"status": "down"}},
            )
        return {"status": "healthy", "database": {"status": "up"}}


def register_api_routers(app: FastAPI, api_prefix: str) -> None:
    """Register API route modules in one place to keep app entrypoint focused."""
    from app.modules.billing.api.v1.billing import public_router
    from app.modules.billing.api.v1.billing import router as billing_router
    from app.modules.payments.api.v1.payments import router as payments_router

    prefix = api_prefix.rstrip("/")
    # Billing first: its literal segment must win over /payments/{provider}/...
    routes: list[tuple[Any, str]] = [
        (billing_router, f"{prefix}/payments/billing"),
        (payments_router, f"{prefix}/payments"),
        (public_router, f"{prefix}/public"),
    ]

    _validate_router_registry(routes, prefix)

    for router, router_prefix in routes:
        app.include_router(router, prefix=router_prefix)
