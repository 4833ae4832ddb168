"""
- Authentication and token renewal
- Retry policy per status code
- Response caching
- Platform listing pagination
"""

import httpx
import pytest
import respx

from romshelf.api.cache import ResponseCache
from romshelf.api.client import PLATFORM_PAGE_SIZE, MetadataClient
from romshelf.api.error_handler import (
    AuthenticationError,
    MissingCredentialsError,
    PayloadTooLargeError,
)
from romshelf.api.gate import RequestGate

TOKEN_URL = "https://id.twitch.tv/oauth2/token"
GAMES_URL = "https://api.igdb.com/v4/games"
PLATFORMS_URL = "https://api.igdb.com/v4/platforms"


def _base_config(**runtime):
    return {
        "metadata_api": {
            "client_id": "client",
            "client_secret": "secret",
            "request_timeout": 5,
        },
        "rate_limit": {
            "max_retries": 2,
            "initial_backoff_seconds": 0,
        },
        "runtime": dict(runtime),
    }


def _token(value="tok"):
    return httpx.Response(200, json={"access_token": value, "expires_in": 3600})


def _games():
    return [{"id": 1, "name": "Contra"}]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_query_authenticates_and_sends_headers():
    async with RequestGate(refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(), gate, client=http_client)

        with respx.mock:
            token_route = respx.post(TOKEN_URL).mock(return_value=_token())
            games_route = respx.post(GAMES_URL).mock(return_value=httpx.Response(200, json=_games()))

            result = await client.query("games", 'fields id,name; where name = "Contra";')

        assert result == _games()
        assert token_route.call_count == 1
        request = games_route.calls.last.request
        assert request.headers["Client-ID"] == "client"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.content == b'fields id,name; where name = "Contra";'
        assert client.get_stats()["api_calls"] == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_expired_token_is_renewed_once():
    async with RequestGate(refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(), gate, client=http_client)

        with respx.mock:
            token_route = respx.post(TOKEN_URL).mock(side_effect=[_token("old"), _token("new")])
            respx.post(GAMES_URL).mock(side_effect=[
                httpx.Response(401),
                httpx.Response(200, json=_games()),
            ])

            result = await client.query("games", "q")

        assert result == _games()
        assert token_route.call_count == 2
        assert client.access_token == "new"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_token_rejected_after_renewal_is_fatal():
    async with RequestGate(refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(), gate, client=http_client)

        with respx.mock:
            respx.post(TOKEN_URL).mock(side_effect=[_token("a"), _token("b")])
            respx.post(GAMES_URL).respond(401)

            with pytest.raises(AuthenticationError):
                await client.query("games", "q")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_token_endpoint_rejection():
    async with RequestGate(refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(), gate, client=http_client)

        with respx.mock:
            respx.post(TOKEN_URL).respond(403)

            with pytest.raises(AuthenticationError):
                await client.authenticate()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_credentials_in_online_mode():
    config = _base_config()
    config["metadata_api"]["client_secret"] = ""

    async with RequestGate(refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(config, gate, client=http_client)
        with pytest.raises(MissingCredentialsError):
            await client.query("games", "q")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rate_limited_calls_back_off_and_retry():
    async with RequestGate(refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(), gate, client=http_client)

        with respx.mock:
            respx.post(TOKEN_URL).mock(return_value=_token())
            route = respx.post(GAMES_URL).mock(side_effect=[
                httpx.Response(429),
                httpx.Response(200, json=_games()),
            ])

            result = await client.query("games", "q")

        assert result == _games()
        assert route.call_count == 2
        assert gate.get_stats()["rate_limit_hits"] == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rate_limit_gives_up_after_max_retries():
    async with RequestGate(requests_per_second=10, refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(), gate, client=http_client)

        with respx.mock:
            respx.post(TOKEN_URL).mock(return_value=_token())
            route = respx.post(GAMES_URL).respond(429)

            result = await client.query("games", "q")

        assert result == []
        # First attempt plus two retries
        assert route.call_count == 3
        assert client.failed_calls == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_payload_too_large_is_raised():
    async with RequestGate(refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(), gate, client=http_client)

        with respx.mock:
            respx.post(TOKEN_URL).mock(return_value=_token())
            respx.post(GAMES_URL).respond(413)

            with pytest.raises(PayloadTooLargeError):
                await client.query("games", "q")


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(400),
    httpx.Response(500),
    httpx.Response(200, json={"not": "a list"}),
])
async def test_recoverable_failures_return_empty(response):
    async with RequestGate(refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(), gate, client=http_client)

        with respx.mock:
            respx.post(TOKEN_URL).mock(return_value=_token())
            respx.post(GAMES_URL).mock(return_value=response)

            assert await client.query("games", "q") == []

        assert client.failed_calls == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transport_errors_return_empty():
    async with RequestGate(refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(), gate, client=http_client)

        with respx.mock:
            respx.post(TOKEN_URL).mock(return_value=_token())
            respx.post(GAMES_URL).mock(side_effect=httpx.ConnectError("refused"))

            assert await client.query("games", "q") == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cached_query_skips_the_network():
    cache = ResponseCache(durable=None)
    async with RequestGate(refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(), gate, client=http_client, cache=cache)

        with respx.mock:
            respx.post(TOKEN_URL).mock(return_value=_token())
            route = respx.post(GAMES_URL).mock(return_value=httpx.Response(200, json=_games()))

            first = await client.query("games", "fields id;  limit 5;")
            second = await client.query("games", "fields id; limit 5;")

        assert first == second == _games()
        assert route.call_count == 1
        assert client.api_calls == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_offline_mode_makes_no_requests():
    async with RequestGate(refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(offline_mode=True), gate, client=http_client)

        with respx.mock:
            assert await client.authenticate() is None
            assert await client.query("games", "q") == []
            assert await client.fetch_platforms() == []

        assert client.api_calls == 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_platform_listing_is_paged():
    first_page = [{"id": i, "name": f"Platform {i}"} for i in range(PLATFORM_PAGE_SIZE)]
    first_page[19] = {"id": 19, "name": "Super Nintendo Entertainment System", "alternative_name": "SNES"}
    second_page = [{"id": 900, "name": "Vectrex"}]

    async with RequestGate(requests_per_second=10, refill_interval=60) as gate, httpx.AsyncClient() as http_client:
        client = MetadataClient(_base_config(), gate, client=http_client)

        with respx.mock:
            respx.post(TOKEN_URL).mock(return_value=_token())
            route = respx.post(PLATFORMS_URL).mock(side_effect=[
                httpx.Response(200, json=first_page),
                httpx.Response(200, json=second_page),
            ])

            registry = await client.fetch_platform_registry()

        assert route.call_count == 2
        assert b"offset 500;" in route.calls.last.request.content
        assert registry.lookup("snes") == 19
        assert registry.lookup("Vectrex") == 900
