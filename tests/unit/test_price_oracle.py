"""
Unit tests for the spot price client: retries, bad reads and the pool-ratio fallback.
"""
import json
from decimal import Decimal
from unittest.mock import AsyncMock

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from repositioner.config.config import PriceConfig, TokenConfig
from repositioner.data.price_oracle import BadPriceRead, PriceOracleClient
from repositioner.domain.models import PricePair
from repositioner.exceptions import ErrorKind, PriceUnavailableError


def _client(no_sleep) -> PriceOracleClient:
    return PriceOracleClient(PriceConfig(), TokenConfig(), sleep=no_sleep)


def _payload(price_x, price_y):
    tokens = TokenConfig()
    return {
        tokens.token_x_mint: {"usdPrice": price_x},
        tokens.token_y_mint: {"usdPrice": price_y},
    }


@pytest.mark.asyncio
async def test_fetch_returns_live_pair(no_sleep):
    client = _client(no_sleep)
    client._fetch_once = AsyncMock(return_value=PricePair(Decimal("60000"), Decimal("150")))

    pair = await client.fetch_prices()

    assert pair.price_x == Decimal("60000")
    assert not pair.estimated
    assert client._fetch_once.await_count == 1


@pytest.mark.asyncio
async def test_no_fallback_raises_after_exactly_max_attempts(no_sleep):
    client = _client(no_sleep)
    client._fetch_once = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))

    with pytest.raises(PriceUnavailableError) as exc_info:
        await client.fetch_prices(max_attempts=3)

    assert client._fetch_once.await_count == 3
    assert exc_info.value.kind == ErrorKind.RPC_ERROR
    assert isinstance(exc_info.value.last_error, aiohttp.ClientConnectionError)
    # 1s then 2s between the three attempts
    assert no_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_fallback_pool_price_yields_estimated_pair(no_sleep):
    client = _client(no_sleep)
    client._fetch_once = AsyncMock(side_effect=BadPriceRead("No price returned for zBTC"))

    pair = await client.fetch_prices(fallback_pool_price=Decimal("300"))

    assert pair.estimated
    assert pair.price_y == Decimal("200")
    assert pair.price_x == Decimal("60000")
    assert client._fetch_once.await_count == 3


@pytest.mark.asyncio
async def test_zero_fallback_is_not_usable(no_sleep):
    client = _client(no_sleep)
    client._fetch_once = AsyncMock(side_effect=BadPriceRead("zero"))

    with pytest.raises(PriceUnavailableError):
        await client.fetch_prices(max_attempts=1, fallback_pool_price=Decimal("0"))


def test_zero_price_is_a_bad_read():
    tokens = TokenConfig()
    with pytest.raises(BadPriceRead):
        PriceOracleClient._extract_price(_payload(0, 150), tokens.token_x_mint, "zBTC")


def test_missing_token_is_a_bad_read():
    tokens = TokenConfig()
    with pytest.raises(BadPriceRead):
        PriceOracleClient._extract_price({}, tokens.token_y_mint, "SOL")


def test_extract_price_parses_numbers_and_strings():
    tokens = TokenConfig()
    payload = _payload("61234.5", 151.25)
    assert PriceOracleClient._extract_price(payload, tokens.token_x_mint, "zBTC") == Decimal("61234.5")
    assert PriceOracleClient._extract_price(payload, tokens.token_y_mint, "SOL") == Decimal("151.25")


# ---- over HTTP ----

async def _serve(body: str, status: int = 200):
    hits = []

    async def handler(request):
        hits.append(request.query.get("ids"))
        return web.Response(text=body, status=status, content_type="text/html")

    app = web.Application()
    app.router.add_get("/price", handler)
    server = TestServer(app)
    await server.start_server()
    return server, hits


def _http_client(server, no_sleep) -> PriceOracleClient:
    config = PriceConfig(api_url=str(server.make_url("/price")))
    return PriceOracleClient(config, TokenConfig(), sleep=no_sleep)


@pytest.mark.asyncio
async def test_http_live_pair(no_sleep):
    server, hits = await _serve(json.dumps(_payload(60000, 150)))
    try:
        pair = await _http_client(server, no_sleep).fetch_prices()
    finally:
        await server.close()

    assert (pair.price_x, pair.price_y, pair.estimated) == (Decimal("60000"), Decimal("150"), False)
    tokens = TokenConfig()
    assert hits == [f"{tokens.token_x_mint},{tokens.token_y_mint}"]


@pytest.mark.asyncio
async def test_non_json_body_is_retried_then_estimated(no_sleep):
    server, hits = await _serve("<html>bad gateway</html>")
    try:
        pair = await _http_client(server, no_sleep).fetch_prices(fallback_pool_price=Decimal("300"))
    finally:
        await server.close()

    assert len(hits) == 3
    assert pair.estimated
    assert pair.price_x == Decimal("60000")
    assert pair.price_y == Decimal("200")


@pytest.mark.asyncio
async def test_non_json_body_without_fallback_is_unavailable(no_sleep):
    server, _ = await _serve("<html>bad gateway</html>")
    try:
        with pytest.raises(PriceUnavailableError) as exc_info:
            await _http_client(server, no_sleep).fetch_prices()
    finally:
        await server.close()

    assert isinstance(exc_info.value.last_error, BadPriceRead)
    assert exc_info.value.last_error.message == "Price API returned invalid JSON"


@pytest.mark.asyncio
async def test_http_error_status_is_retried(no_sleep):
    server, hits = await _serve("upstream down", status=502)
    try:
        with pytest.raises(PriceUnavailableError):
            await _http_client(server, no_sleep).fetch_prices(max_attempts=2)
    finally:
        await server.close()

    assert len(hits) == 2


@pytest.mark.asyncio
async def test_zero_attempts_is_rejected(no_sleep):
    client = _client(no_sleep)
    client._fetch_once = AsyncMock()

    with pytest.raises(ValueError):
        await client.fetch_prices(max_attempts=0)

    client._fetch_once.assert_not_awaited()
