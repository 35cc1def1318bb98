"""
Unified error governance.

Classifies exceptions, logs them with structure and renders the standard
``{"error": {...}}`` envelope used by every admin-facing endpoint.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from app.shared.core.config import ENV_PRODUCTION, ENV_STAGING, get_settings
from app.shared.core.exceptions import StorefrontException

logger = structlog.get_logger()

# Domain codes whose message is meant for the admin UI and stays visible in production.
SAFE_CODES = {
    "TENANT_NOT_FOUND",
    "PLAN_NOT_FOUND",
    "PLAN_INACTIVE",
    "PLAN_UNAVAILABLE",
    "SUBSCRIPTION_NOT_FOUND",
    "ACCOUNT_NOT_CONNECTED",
    "INVALID_STATE",
    "UNAUTHORIZED_STORE_CONTEXT",
    "ORDER_NOT_FOUND",
    "ACCESS_DENIED",
    "idempotency_conflict",
    "idempotency_in_progress",
    "idempotency_key_invalid",
}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """Classifies and records exceptions, returning a standardized JSON response."""
    error_id = error_id or str(uuid4())
    settings = get_settings()
    is_prod = settings.ENVIRONMENT.lower() in (ENV_PRODUCTION, ENV_STAGING)

    if isinstance(exc, StorefrontException):
        app_exc = exc
    elif isinstance(exc, ValueError):
        app_exc = StorefrontException(
            message="Invalid request parameters" if is_prod else str(exc),
            code="value_error",
            status_code=400,
        )
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        # Never leak internal detail for unanticipated failures.
        app_exc = StorefrontException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    log_method = logger.error if app_exc.status_code >= 500 else logger.warning
    log_method(
        "api_error",
        error_id=error_id,
        code=app_exc.code,
        message=app_exc.message,
        status_code=app_exc.status_code,
        path=request.url.path,
        details=app_exc.details,
    )

    message = app_exc.message
    response_details: Optional[Dict[str, Any]] = app_exc.details or None
    if is_prod and app_exc.code not in SAFE_CODES:
        message = "An error occurred while processing your request"
        response_details = None

    return JSONResponse(
        status_code=app_exc.status_code,
        content={
            "error": {
                "message": message,
                "code": app_exc.code,
                "id": error_id,
                "details": response_details,
            }
        },
    )
