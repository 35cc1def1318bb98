from app.modules.payments.api.v1.payments import router
from app.modules.payments.domain.payments.service import PaymentsService

__all__ = ["router", "PaymentsService"]
