"""
Async HTTP client shared infrastructure.

One httpx.AsyncClient is shared by the FastAPI lifespan, Celery tasks and
scripts so provider calls reuse connection pools.
"""

from typing import Optional
import httpx
import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()

_client: Optional[httpx.AsyncClient] = None


def _build_client() -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.PROVIDER_HTTP_TIMEOUT_SECONDS, connect=10.0),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        headers={"User-Agent": f"{settings.APP_NAME}/{settings.VERSION}"},
    )


def get_http_client() -> httpx.AsyncClient:
    """Returns the global shared httpx.AsyncClient, creating it lazily."""
    global _client
    if _client is None:
        logger.warning(
            "http_client_lazy_initialized", msg="Client was not pre-initialized"
        )
        _client = _build_client()
    return _client


async def init_http_client() -> None:
    global _client
    if _client is not None:
        logger.warning("http_client_already_initialized")
        return
    _client = _build_client()
    logger.info("http_client_initialized")


async def close_http_client() -> None:
    """Gracefully shuts down the global client, flushing its connection pool."""
    global _client
    if _client is None:
        return
    await _client.aclose()
    _client = None
    logger.info("http_client_closed")
