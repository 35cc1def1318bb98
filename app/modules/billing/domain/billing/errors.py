from enum import Enum
from typing import Any, Dict, Optional

from app.shared.core.exceptions import StorefrontException


class BillingErrorCode(str, Enum):
    CONFIG_ERROR = "CONFIG_ERROR"
    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
    PLAN_NOT_FOUND = "PLAN_NOT_FOUND"
    PLAN_INACTIVE = "PLAN_INACTIVE"
    PLAN_UNAVAILABLE = "PLAN_UNAVAILABLE"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    INVALID_WEBHOOK = "INVALID_WEBHOOK"
    ACCESS_DENIED = "ACCESS_DENIED"


DEFAULT_STATUS: Dict[BillingErrorCode, int] = {
    BillingErrorCode.CONFIG_ERROR: 500,
    BillingErrorCode.TENANT_NOT_FOUND: 404,
    BillingErrorCode.PLAN_NOT_FOUND: 404,
    BillingErrorCode.PLAN_INACTIVE: 400,
    BillingErrorCode.PLAN_UNAVAILABLE: 400,
    BillingErrorCode.SUBSCRIPTION_NOT_FOUND: 404,
    BillingErrorCode.PROVIDER_ERROR: 502,
    BillingErrorCode.INVALID_WEBHOOK: 400,
    BillingErrorCode.ACCESS_DENIED: 402,
}


class BillingError(StorefrontException):
    """Subscription billing failure carrying a stable code from BillingErrorCode."""

    def __init__(
        self,
        code: BillingErrorCode,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message,
            code=code.value,
            status_code=status_code or DEFAULT_STATUS[code],
            details=details,
        )
        self.error_code = code
