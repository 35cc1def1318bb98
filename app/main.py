import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import IdempotentReplay, StorefrontException
from app.shared.core.http import close_http_client, init_http_client
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from app.shared.db.session import get_engine

# Configure logging
setup_logging()
settings = get_settings()
logger = structlog.get_logger()

IDEMPOTENT_REPLAY_HEADER = "Idempotent-Replayed"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    # Singleton HTTP client shared by the provider clients
    await init_http_client()

    yield

    logger.info("app_shutting_down")
    # Close HTTP pool first (prevents new provider calls while shutting down)
    await close_http_client()

    await get_engine().dispose()
    logger.info("db_engine_disposed")


storefront_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
# Uvicorn requires 'app' name by default in start parameters.
app: FastAPI = storefront_app

__all__ = ["app", "storefront_app", "lifespan"]


@storefront_app.exception_handler(StorefrontException)
async def storefront_exception_handler(
    request: Request, exc: StorefrontException
) -> JSONResponse:
    """Handle domain exceptions (billing, payments, idempotency)."""
    return handle_exception(request, exc)


@storefront_app.exception_handler(IdempotentReplay)
async def idempotent_replay_handler(request: Request, exc: IdempotentReplay) -> JSONResponse:
    """Replay the first execution's response verbatim."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.body,
        headers={IDEMPOTENT_REPLAY_HEADER: "true"},
    )


@storefront_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    is_prod = settings.ENVIRONMENT.lower() in {"production", "staging"}
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if is_prod and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": detail_text,
                "code": "HTTP_ERROR",
                "id": None,
                "details": None,
            }
        },
        headers=getattr(exc, "headers", None),
    )


@storefront_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "The request body or parameters are invalid.",
                "code": "VALIDATION_ERROR",
                "id": None,
                "details": _sanitize_errors(exc.errors()),
            }
        },
    )


@storefront_app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Handle business logic ValueErrors via central governance."""
    return handle_exception(request, exc)


@storefront_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled exceptions: sanitized 500 with a correlatable error id."""
    return handle_exception(request, exc)


register_lifecycle_routes(
    storefront_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)

# Middleware is processed in REVERSE order of addition.
storefront_app.add_middleware(SecurityHeadersMiddleware)
storefront_app.add_middleware(RequestIDMiddleware)

# CORS - added LAST so it processes FIRST
storefront_app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-Request-ID"],
)

register_api_routers(storefront_app, settings.API_PREFIX)
