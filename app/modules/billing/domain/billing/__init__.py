"""Billing Services."""

from app.modules.billing.domain.billing.errors import BillingError, BillingErrorCode
from app.modules.billing.domain.billing.mercadopago_client import (
    MercadoPagoBillingProvider,
)
from app.modules.billing.domain.billing.service import BillingService


__all__ = [
    "BillingService",
    "BillingError",
    "BillingErrorCode",
    "MercadoPagoBillingProvider",
]
