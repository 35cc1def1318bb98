from app.modules.billing.api.v1.billing import public_router, router
from app.modules.billing.domain.billing.service import BillingService

__all__ = ["router", "public_router", "BillingService"]
