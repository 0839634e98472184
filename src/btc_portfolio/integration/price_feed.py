import asyncio
import os
from decimal import Decimal
from time import monotonic
from typing import Any

import httpx

from btc_portfolio.core import settings
from btc_portfolio.domain.dates import utcnow
from btc_portfolio.integration._http import LazyAsyncClient
from btc_portfolio.logger import get_logger
from btc_portfolio.models import PriceQuote

logger = get_logger(__name__)

DEFAULT_PRICE_FEED_URL = "https://api.coingecko.com/api/v3/simple/price"
DEFAULT_PRICE_CACHE_TTL_SECONDS = 60.0


def parse_simple_price(data: dict[str, Any]) -> PriceQuote:
    """Build a quote from a CoinGecko ``simple/price`` payload (USD leg)."""
    bitcoin = data["bitcoin"]
    price = Decimal(str(bitcoin["usd"]))
    change_percent = Decimal(str(bitcoin.get("usd_24h_change") or 0))
    # The feed reports a percentage; the absolute move is derived from it.
    previous = price / (1 + change_percent / 100) if change_percent > -100 else price
    return PriceQuote(
        price=price,
        change_24h=price - previous,
        change_percent_24h=change_percent,
        currency="USD",
        fetched_at=utcnow(),
    )


class PriceFeedClient:
    def __init__(
        self,
        url: str | None = None,
        client: httpx.AsyncClient | None = None,
        cache_ttl: float | None = None,
    ):
        self.url = url or os.getenv("PRICE_FEED_URL") or DEFAULT_PRICE_FEED_URL
        self._http = LazyAsyncClient(client)
        self._cache_lock = asyncio.Lock()
        self._quote: PriceQuote | None = None
        self._quote_expires_at = 0.0
        if cache_ttl is None:
            cache_ttl = settings.get_env_float("PRICE_CACHE_TTL", DEFAULT_PRICE_CACHE_TTL_SECONDS)
        self._cache_ttl = max(0.0, cache_ttl)

    def refresh(self, url: str | None = None) -> None:
        self.url = url or os.getenv("PRICE_FEED_URL") or DEFAULT_PRICE_FEED_URL
        self._quote = None
        self._quote_expires_at = 0.0
        self._cache_ttl = max(
            0.0,
            settings.get_env_float("PRICE_CACHE_TTL", DEFAULT_PRICE_CACHE_TTL_SECONDS),
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _get_cached_quote(self, *, allow_stale: bool = False) -> PriceQuote | None:
        if self._quote is None:
            return None
        if allow_stale:
            return self._quote
        if self._cache_ttl <= 0 or monotonic() >= self._quote_expires_at:
            return None
        return self._quote

    def _cache_quote(self, quote: PriceQuote) -> None:
        self._quote = quote
        self._quote_expires_at = monotonic() + self._cache_ttl

    async def get_current_price(self) -> PriceQuote | None:
        cached = self._get_cached_quote()
        if cached is not None:
            return cached

        async with self._cache_lock:
            cached = self._get_cached_quote()
            if cached is not None:
                return cached

            client = await self._http.get()
            try:
                response = await client.get(
                    self.url,
                    params={
                        "ids": "bitcoin",
                        "vs_currencies": "usd",
                        "include_24hr_change": "true",
                    },
                )
                response.raise_for_status()
                quote = parse_simple_price(response.json())
            except Exception as exc:
                stale = self._get_cached_quote(allow_stale=True)
                logger.error(
                    "[PRICE] Error fetching BTC price: %s (stale quote available: %s)",
                    exc,
                    stale is not None,
                )
                return stale

            self._cache_quote(quote)
            logger.debug("[PRICE] BTC/USD %s (%s%% 24h)", quote.price, quote.change_percent_24h)
            return quote
