import asyncio
import os
from decimal import Decimal
from time import monotonic

import httpx

from btc_portfolio.core import settings
from btc_portfolio.integration._http import LazyAsyncClient
from btc_portfolio.logger import get_logger

logger = get_logger(__name__)

DEFAULT_EXCHANGE_RATE_URL = "https://open.er-api.com/v6/latest"
DEFAULT_EXCHANGE_RATE_TTL_SECONDS = 3600.0


class ExchangeRateClient:
    """Current fiat exchange rates, one cached table per base currency."""

    def __init__(
        self,
        url: str | None = None,
        client: httpx.AsyncClient | None = None,
        cache_ttl: float | None = None,
    ):
        self.url = (url or os.getenv("EXCHANGE_RATE_URL") or DEFAULT_EXCHANGE_RATE_URL).rstrip("/")
        self._http = LazyAsyncClient(client)
        self._cache_lock = asyncio.Lock()
        self._tables: dict[str, tuple[float, dict[str, Decimal]]] = {}
        if cache_ttl is None:
            cache_ttl = settings.get_env_float("EXCHANGE_RATE_TTL", DEFAULT_EXCHANGE_RATE_TTL_SECONDS)
        self._cache_ttl = max(0.0, cache_ttl)

    def refresh(self, url: str | None = None) -> None:
        base = url or os.getenv("EXCHANGE_RATE_URL") or DEFAULT_EXCHANGE_RATE_URL
        self.url = base.rstrip("/")
        self._tables.clear()
        self._cache_ttl = max(
            0.0,
            settings.get_env_float("EXCHANGE_RATE_TTL", DEFAULT_EXCHANGE_RATE_TTL_SECONDS),
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _get_cached_table(self, base: str, *, allow_stale: bool = False) -> dict[str, Decimal] | None:
        entry = self._tables.get(base)
        if entry is None:
            return None
        expires_at, table = entry
        if allow_stale:
            return table
        if self._cache_ttl <= 0 or monotonic() >= expires_at:
            return None
        return table

    async def _get_table(self, base: str) -> dict[str, Decimal] | None:
        cached = self._get_cached_table(base)
        if cached is not None:
            return cached

        async with self._cache_lock:
            cached = self._get_cached_table(base)
            if cached is not None:
                return cached

            client = await self._http.get()
            try:
                response = await client.get(f"{self.url}/{base}")
                response.raise_for_status()
                raw_rates = response.json().get("rates") or {}
                table = {
                    code.upper(): Decimal(str(value))
                    for code, value in raw_rates.items()
                }
            except Exception as exc:
                stale = self._get_cached_table(base, allow_stale=True)
                logger.error("[FX] Error fetching %s rates: %s", base, exc)
                return stale

            self._tables[base] = (monotonic() + self._cache_ttl, table)
            logger.info("[FX] Cached %s rates for base %s", len(table), base)
            return table

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal | None:
        source = from_currency.upper()
        target = to_currency.upper()
        if source == target:
            return Decimal(1)
        table = await self._get_table(source)
        if not table:
            return None
        return table.get(target)
