"""Store Payment Services."""

from app.modules.payments.domain.payments.errors import PaymentError, PaymentErrorCode
from app.modules.payments.domain.payments.registry import (
    PaymentProviderRegistry,
    build_provider_registry,
)
from app.modules.payments.domain.payments.service import PaymentsService


__all__ = [
    "PaymentsService",
    "PaymentError",
    "PaymentErrorCode",
    "PaymentProviderRegistry",
    "build_provider_registry",
]
