from enum import Enum
from typing import Any, Dict, Optional

from app.shared.core.exceptions import StorefrontException


class PaymentErrorCode(str, Enum):
    CONFIG_ERROR = "CONFIG_ERROR"
    ACCOUNT_NOT_CONNECTED = "ACCOUNT_NOT_CONNECTED"
    INVALID_STATE = "INVALID_STATE"
    UNAUTHORIZED_STORE_CONTEXT = "UNAUTHORIZED_STORE_CONTEXT"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    INVALID_WEBHOOK = "INVALID_WEBHOOK"
    PROVIDER_ERROR = "PROVIDER_ERROR"


DEFAULT_STATUS: Dict[PaymentErrorCode, int] = {
    PaymentErrorCode.CONFIG_ERROR: 500,
    PaymentErrorCode.ACCOUNT_NOT_CONNECTED: 404,
    PaymentErrorCode.INVALID_STATE: 400,
    PaymentErrorCode.UNAUTHORIZED_STORE_CONTEXT: 403,
    PaymentErrorCode.ORDER_NOT_FOUND: 404,
    PaymentErrorCode.INVALID_WEBHOOK: 400,
    PaymentErrorCode.PROVIDER_ERROR: 502,
}


class PaymentError(StorefrontException):
    """Store payment failure carrying a stable code from PaymentErrorCode."""

    def __init__(
        self,
        code: PaymentErrorCode,
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
