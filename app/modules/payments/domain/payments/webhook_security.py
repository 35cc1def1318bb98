"""Mercado Pago webhook signature verification (x-signature / x-request-id)."""

import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class SignatureParts:
    ts: str
    v1: str


def parse_signature_header(header: Optional[str]) -> SignatureParts:
    """Parse ``ts=<ts>,v1=<hex>``. Unknown or malformed parts are ignored."""
    values: dict[str, str] = {}
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if sep and key and value:
            values[key.strip()] = value.strip()
    return SignatureParts(ts=values.get("ts", ""), v1=values.get("v1", ""))


def _id_value(value: Any) -> str:
    if isinstance(value, bool):
        return ""
    if isinstance(value, (str, int)):
        return str(value)
    return ""


def extract_resource_id(query: Mapping[str, Any], body: Any) -> str:
    """Query ``data.id``, then body ``data.id`` (string or number), then query ``id``."""
    from_query = query.get("data.id")
    if isinstance(from_query, str) and from_query:
        return from_query
    if isinstance(body, Mapping):
        data = body.get("data")
        if isinstance(data, Mapping):
            from_body = _id_value(data.get("id"))
            if from_body:
                return from_body
    plain = query.get("id")
    if isinstance(plain, str):
        return plain
    return ""


def build_manifest(resource_id: str, request_id: str, ts: str) -> str:
    return f"id:{resource_id};request-id:{request_id};ts:{ts};"


def _safe_equal_hex(expected: str, provided: str) -> bool:
    try:
        expected_bytes = bytes.fromhex(expected)
        provided_bytes = bytes.fromhex(provided)
    except ValueError:
        return False
    if len(expected_bytes) != len(provided_bytes):
        return False
    return hmac.compare_digest(expected_bytes, provided_bytes)


def verify_webhook_signature(
    signature_header: Optional[str],
    request_id: Optional[str],
    resource_id: Optional[str],
    secret: Optional[str],
) -> bool:
    """
    Authenticate a webhook delivery against the shared secret.

    With no secret configured every delivery is accepted (local development).
    Otherwise the header, request id, ``ts``, ``v1`` and resource id are all
    required and ``v1`` must equal HMAC-SHA256(secret, manifest) in hex.
    """
    secret = (secret or "").strip()
    if not secret:
        logger.debug("webhook_signature_check_skipped", reason="no_secret_configured")
        return True

    if not signature_header or not request_id:
        logger.warning("webhook_signature_missing_headers")
        return False

    parts = parse_signature_header(signature_header)
    if not parts.ts or not parts.v1 or not resource_id:
        logger.warning(
            "webhook_signature_incomplete",
            has_ts=bool(parts.ts),
            has_v1=bool(parts.v1),
            has_resource_id=bool(resource_id),
        )
        return False

    expected = hmac.new(
        secret.encode(),
        build_manifest(resource_id, request_id, parts.ts).encode(),
        hashlib.sha256,
    ).hexdigest()

    is_valid = _safe_equal_hex(expected, parts.v1)
    if not is_valid:
        logger.warning("webhook_invalid_signature", provided_sig=parts.v1[:8] + "...")
    return is_valid
