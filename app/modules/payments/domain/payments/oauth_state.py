"""
Encrypted OAuth ``state`` blob.

The callback is provider-initiated and unauthenticated, so the state carries
the tenant and actor that started the flow. It is sealed with the credential
vault and only trusted after decryption and a freshness check.
"""

import time
from typing import Optional

import structlog
from pydantic import BaseModel, ValidationError

from app.modules.payments.domain.payments.errors import PaymentError, PaymentErrorCode
from app.shared.core.exceptions import DecryptionError
from app.shared.core.security import decrypt_string, encrypt_string

logger = structlog.get_logger()

OAUTH_STATE_TTL_SECONDS = 10 * 60


class OAuthState(BaseModel):
    tenant_id: str
    actor_id: str
    provider: str
    issued_at: float


def encode_oauth_state(
    tenant_id: str, actor_id: str, provider: str, *, now: Optional[float] = None
) -> str:
    payload = OAuthState(
        tenant_id=tenant_id,
        actor_id=actor_id,
        provider=provider,
        issued_at=time.time() if now is None else now,
    )
    return encrypt_string(payload.model_dump_json())


def decode_oauth_state(
    state: Optional[str], expected_provider: str, *, now: Optional[float] = None
) -> OAuthState:
    """Any failure collapses into INVALID_STATE; the reason is only logged."""
    invalid = PaymentError(PaymentErrorCode.INVALID_STATE, "Invalid or expired OAuth state")
    if not state:
        raise invalid
    try:
        payload = OAuthState.model_validate_json(decrypt_string(state))
    except (DecryptionError, ValidationError) as exc:
        logger.warning("oauth_state_rejected", reason=type(exc).__name__)
        raise invalid from exc

    if not payload.tenant_id or not payload.actor_id or payload.provider != expected_provider:
        logger.warning("oauth_state_rejected", reason="payload_mismatch")
        raise invalid
    current = time.time() if now is None else now
    if current - payload.issued_at > OAUTH_STATE_TTL_SECONDS:
        logger.warning("oauth_state_rejected", reason="expired", tenant_id=payload.tenant_id)
        raise invalid
    return payload
