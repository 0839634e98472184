from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from btc_portfolio.integration.exchange_rates import ExchangeRateClient
from btc_portfolio.integration.price_feed import PriceFeedClient, parse_simple_price


def _json_response(payload: dict) -> MagicMock:
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = payload
    return response


def _mock_client(*responses) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.is_closed = False
    mock_client.get = AsyncMock(side_effect=list(responses))
    return mock_client


SIMPLE_PRICE = {"bitcoin": {"usd": 50000, "usd_24h_change": 25}}


def test_parse_simple_price_derives_absolute_change() -> None:
    quote = parse_simple_price(SIMPLE_PRICE)
    assert quote.price == Decimal("50000")
    assert quote.change_percent_24h == Decimal("25")
    # 50000 is 25% above 40000.
    assert quote.change_24h == Decimal("10000")
    assert quote.currency == "USD"


def test_parse_simple_price_without_change() -> None:
    quote = parse_simple_price({"bitcoin": {"usd": 42000.5}})
    assert quote.price == Decimal("42000.5")
    assert quote.change_24h == 0


@pytest.mark.anyio
async def test_price_feed_uses_cache_within_ttl() -> None:
    mock_client = _mock_client(_json_response(SIMPLE_PRICE))
    feed = PriceFeedClient(url="http://feed.test/simple/price", client=mock_client, cache_ttl=60)

    first = await feed.get_current_price()
    second = await feed.get_current_price()

    assert first is second
    assert mock_client.get.call_count == 1
    _, kwargs = mock_client.get.call_args
    assert kwargs["params"]["ids"] == "bitcoin"


@pytest.mark.anyio
async def test_price_feed_cache_ttl_expires() -> None:
    mock_client = _mock_client(
        _json_response(SIMPLE_PRICE),
        _json_response({"bitcoin": {"usd": 51000, "usd_24h_change": 0}}),
    )
    feed = PriceFeedClient(url="http://feed.test", client=mock_client, cache_ttl=1)

    with patch(
        "btc_portfolio.integration.price_feed.monotonic",
        side_effect=[0.0, 2.0, 2.0, 2.0],
    ):
        first = await feed.get_current_price()
        second = await feed.get_current_price()

    assert first.price == Decimal("50000")
    assert second.price == Decimal("51000")
    assert mock_client.get.call_count == 2


@pytest.mark.anyio
async def test_price_feed_returns_stale_quote_on_error() -> None:
    mock_client = _mock_client(
        _json_response(SIMPLE_PRICE),
        httpx.ConnectError("offline"),
    )
    feed = PriceFeedClient(url="http://feed.test", client=mock_client, cache_ttl=0)

    first = await feed.get_current_price()
    second = await feed.get_current_price()

    assert second is first
    assert mock_client.get.call_count == 2


@pytest.mark.anyio
async def test_price_feed_without_any_quote_returns_none() -> None:
    mock_client = _mock_client(httpx.ConnectError("offline"))
    feed = PriceFeedClient(url="http://feed.test", client=mock_client, cache_ttl=60)
    assert await feed.get_current_price() is None


@pytest.mark.anyio
async def test_price_feed_refresh_invalidates() -> None:
    mock_client = _mock_client(
        _json_response(SIMPLE_PRICE),
        _json_response({"bitcoin": {"usd": 60000}}),
    )
    feed = PriceFeedClient(url="http://feed.test", client=mock_client, cache_ttl=60)

    await feed.get_current_price()
    feed.refresh(url="http://other.test")
    quote = await feed.get_current_price()

    assert feed.url == "http://other.test"
    assert quote.price == Decimal("60000")
    assert mock_client.get.call_args.args[0] == "http://other.test"


@pytest.mark.anyio
async def test_price_feed_creates_client_lazily() -> None:
    with patch("httpx.AsyncClient") as mock_client_cls:
        mock_client = _mock_client(_json_response(SIMPLE_PRICE))
        mock_client_cls.return_value = mock_client

        feed = PriceFeedClient(url="http://feed.test", cache_ttl=60)
        quote = await feed.get_current_price()
        await feed.aclose()

    assert quote.price == Decimal("50000")
    mock_client_cls.assert_called_once()
    mock_client.aclose.assert_awaited_once()


@pytest.mark.anyio
async def test_exchange_rate_same_currency_skips_network() -> None:
    mock_client = _mock_client()
    rates = ExchangeRateClient(url="http://fx.test", client=mock_client, cache_ttl=60)
    assert await rates.get_rate("usd", "USD") == Decimal(1)
    mock_client.get.assert_not_called()


@pytest.mark.anyio
async def test_exchange_rate_table_cached_per_base() -> None:
    mock_client = _mock_client(_json_response({"rates": {"USD": 1.1, "chf": 0.95}}))
    rates = ExchangeRateClient(url="http://fx.test/", client=mock_client, cache_ttl=60)

    assert await rates.get_rate("EUR", "USD") == Decimal("1.1")
    assert await rates.get_rate("EUR", "CHF") == Decimal("0.95")
    assert await rates.get_rate("EUR", "JPY") is None

    assert mock_client.get.call_count == 1
    assert mock_client.get.call_args.args[0] == "http://fx.test/EUR"


@pytest.mark.anyio
async def test_exchange_rate_error_without_cache() -> None:
    mock_client = _mock_client(httpx.ReadTimeout("slow"))
    rates = ExchangeRateClient(url="http://fx.test", client=mock_client, cache_ttl=60)
    assert await rates.get_rate("EUR", "USD") is None


@pytest.mark.anyio
async def test_exchange_rate_stale_table_on_error() -> None:
    mock_client = _mock_client(
        _json_response({"rates": {"USD": 1.2}}),
        httpx.ConnectError("offline"),
    )
    rates = ExchangeRateClient(url="http://fx.test", client=mock_client, cache_ttl=0)

    assert await rates.get_rate("EUR", "USD") == Decimal("1.2")
    assert await rates.get_rate("EUR", "USD") == Decimal("1.2")
    assert mock_client.get.call_count == 2
