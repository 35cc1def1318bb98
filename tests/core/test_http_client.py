import httpx
import respx

from app.shared.core.config import get_settings
from app.shared.core.http import close_http_client, get_http_client, init_http_client


async def test_http_client_singleton():
    """get_http_client returns one shared instance until closed."""
    await init_http_client()
    client1 = get_http_client()
    client2 = get_http_client()

    assert client1 is client2
    assert isinstance(client1, httpx.AsyncClient)
    assert client1.is_closed is False

    await close_http_client()
    assert client1.is_closed is True
    # Lazy re-init after close
    client3 = get_http_client()
    assert client3 is not client1
    assert client3.is_closed is False


async def test_init_twice_keeps_the_first_client():
    await init_http_client()
    first = get_http_client()
    await init_http_client()

    assert get_http_client() is first


async def test_http_client_uses_provider_settings():
    settings = get_settings()
    await init_http_client()
    client = get_http_client()

    assert client.timeout.read == settings.PROVIDER_HTTP_TIMEOUT_SECONDS
    assert client.timeout.connect == 10.0
    assert client.headers["User-Agent"] == f"{settings.APP_NAME}/{settings.VERSION}"

    with respx.mock:
        respx.get("https://api.mercadopago.com/ping").mock(return_value=httpx.Response(200))
        response = await client.get("https://api.mercadopago.com/ping")
        assert response.status_code == 200


async def test_close_without_client_is_a_noop():
    await close_http_client()
    await close_http_client()
