"""Low-level Mercado Pago REST helpers shared by the payments and billing clients."""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx
import structlog

from app.shared.core.config import get_settings
from app.shared.core.http import get_http_client

logger = structlog.get_logger()


class MercadoPagoAPIError(Exception):
    """Transport-level failure or non-2xx answer from the Mercado Pago API."""

    def __init__(
        self, message: str, status_code: Optional[int] = None, payload: Any = None
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


def describe_error_payload(payload: Any) -> str:
    """Flatten message / error / cause descriptions into one searchable string."""
    parts: list[str] = []

    def _push(value: Any) -> None:
        if isinstance(value, str) and value.strip() and value.strip() not in parts:
            parts.append(value.strip())

    if isinstance(payload, str):
        _push(payload)
    elif isinstance(payload, dict):
        _push(payload.get("message"))
        _push(payload.get("error"))
        _push(payload.get("description"))
        causes = payload.get("cause")
        if isinstance(causes, dict):
            causes = [causes]
        if isinstance(causes, list):
            for cause in causes:
                if isinstance(cause, dict):
                    _push(cause.get("description"))
                    _push(cause.get("code"))
                    _push(cause.get("message"))
    return " | ".join(parts)


async def mp_request(
    method: str,
    path: str,
    *,
    access_token: Optional[str] = None,
    json: Optional[dict[str, Any]] = None,
    params: Optional[dict[str, Any]] = None,
    headers: Optional[dict[str, str]] = None,
) -> dict[str, Any]:
    settings = get_settings()
    request_headers = {"Content-Type": "application/json"}
    if access_token:
        request_headers["Authorization"] = f"Bearer {access_token}"
    if headers:
        request_headers.update(headers)

    client = get_http_client()
    try:
        response = await client.request(
            method,
            f"{settings.MP_API_URL.rstrip('/')}/{path.lstrip('/')}",
            headers=request_headers,
            json=json,
            params=params,
            timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as exc:
        logger.error("mercadopago_api_transport_error", path=path, error=str(exc))
        raise MercadoPagoAPIError(f"Mercado Pago request failed: {exc}") from exc

    if response.is_error:
        try:
            error_payload: Any = response.json()
        except ValueError:
            error_payload = response.text
        logger.warning(
            "mercadopago_api_error",
            path=path,
            status_code=response.status_code,
            error=describe_error_payload(error_payload),
        )
        raise MercadoPagoAPIError(
            describe_error_payload(error_payload) or f"HTTP {response.status_code}",
            status_code=response.status_code,
            payload=error_payload,
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise MercadoPagoAPIError(
            "Mercado Pago returned a non-JSON body", status_code=response.status_code
        ) from exc
    if not isinstance(payload, dict):
        raise MercadoPagoAPIError(
            "Invalid Mercado Pago response payload type",
            status_code=response.status_code,
        )
    return payload


def parse_mp_datetime(value: Any) -> Optional[datetime]:
    """Mercado Pago timestamps are ISO-8601 with offset, e.g. 2026-01-01T10:00:00.000-04:00."""
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def as_str_id(value: Any) -> Optional[str]:
    """Provider ids arrive as strings or numbers; booleans and blanks are not ids."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, str)) and str(value).strip():
        return str(value).strip()
    return None
