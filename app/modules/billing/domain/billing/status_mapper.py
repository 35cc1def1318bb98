from typing import Optional

from app.models.billing import BillingStatus

_PREAPPROVAL_STATUS = {
    "authorized": BillingStatus.ACTIVE,
    "pending": BillingStatus.TRIALING,
    "paused": BillingStatus.PAST_DUE,
    "cancelled": BillingStatus.CANCELED,
    "expired": BillingStatus.EXPIRED,
}


def map_preapproval_status(status: Optional[str]) -> BillingStatus:
    """Total mapping from a provider preapproval status to BillingStatus."""
    if not isinstance(status, str):
        return BillingStatus.INACTIVE
    return _PREAPPROVAL_STATUS.get(status.strip().lower(), BillingStatus.INACTIVE)
