from typing import Optional

from app.models.payments import PaymentStatus

_ORDER_PAYMENT_STATUS = {
    "approved": PaymentStatus.PAID,
    "rejected": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELED,
    "cancelled_by_user": PaymentStatus.CANCELED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.REFUNDED,
    "authorized": PaymentStatus.AUTHORIZED,
    "in_process": PaymentStatus.REQUIRES_ACTION,
    "expired": PaymentStatus.EXPIRED,
}

# Provider status -> public Payment.status; everything unlisted reads as pending.
_PUBLIC_PAYMENT_STATUS = {
    "approved": "approved",
    "rejected": "rejected",
    "cancelled": "cancelled",
    "cancelled_by_user": "cancelled",
    "refunded": "refunded",
    "charged_back": "refunded",
}


def _normalize(status: Optional[str]) -> str:
    return status.strip().lower() if isinstance(status, str) else ""


def map_order_payment_status(status: Optional[str]) -> PaymentStatus:
    """Total mapping from a provider payment status to the order payment status."""
    return _ORDER_PAYMENT_STATUS.get(_normalize(status), PaymentStatus.PENDING)


def map_public_payment_status(status: Optional[str]) -> str:
    return _PUBLIC_PAYMENT_STATUS.get(_normalize(status), "pending")
