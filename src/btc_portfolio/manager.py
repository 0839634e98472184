import asyncio
from collections.abc import Iterable
from decimal import Decimal
from typing import Any, Protocol

from btc_portfolio.core import settings
from btc_portfolio.logger import get_logger
from btc_portfolio.models import BTC, PriceQuote, Transaction
from btc_portfolio.services.currency import RateProvider, RateTable, build_rate_table
from btc_portfolio.services.dca_analysis import DCAAnalysis, analyze_dca
from btc_portfolio.services.portfolio import MarketSnapshot, PortfolioMetrics, calculate_portfolio
from btc_portfolio.storage.ledger import LedgerStore

logger = get_logger(__name__)

QUOTE_CURRENCY = "USD"

SUMMARY_FIELDS = (
    "main_currency",
    "total_btc",
    "current_btc_price",
    "portfolio_value",
    "total_invested",
    "total_received",
    "unrealized_pnl",
    "realized_pnl",
    "total_pnl",
    "roi",
    "total_transactions",
    "used_fallback_price",
    "last_updated",
)


class PriceFeed(Protocol):
    async def get_current_price(self) -> PriceQuote | None: ...


def _ledger_currencies(transactions: Iterable[Transaction]) -> set[str]:
    currencies = {QUOTE_CURRENCY}
    for tx in transactions:
        currencies.add(tx.currency)
        if tx.fee_currency != BTC:
            currencies.add(tx.fee_currency)
    return currencies


class PortfolioService:
    """Reads owner snapshots from the store and runs the calculations on them."""

    def __init__(
        self,
        store: LedgerStore,
        price_feed: PriceFeed | None = None,
        rate_provider: RateProvider | None = None,
    ):
        self.store = store
        self.price_feed = price_feed
        self.rate_provider = rate_provider

    async def _get_quote(self) -> PriceQuote | None:
        if self.price_feed is None:
            return None
        try:
            return await self.price_feed.get_current_price()
        except Exception as exc:
            logger.error("[PRICE] Price feed failed: %s", exc)
            return None

    async def get_btc_price(self, currency: str) -> Decimal | None:
        """Current BTC price in ``currency``, or None when the feed has nothing."""
        quote = await self._get_quote()
        if quote is None:
            return None
        rates = await build_rate_table(self.rate_provider, [quote.currency], currency)
        return quote.price * rates.rate(quote.currency)

    async def build_market(
        self,
        transactions: list[Transaction],
    ) -> tuple[MarketSnapshot, RateTable]:
        currencies = settings.get_reporting_currencies()
        rates = await build_rate_table(
            self.rate_provider,
            _ledger_currencies(transactions),
            currencies.main,
        )
        quote = await self._get_quote()
        used_fallback = quote is None
        if quote is None:
            fallback = settings.get_fallback_btc_price()
            logger.warning("[PRICE] No BTC price available, using fallback %s %s", fallback, QUOTE_CURRENCY)
            quote = PriceQuote(price=fallback, currency=QUOTE_CURRENCY)

        quote_rate = rates.rate(quote.currency)
        secondary_price = None
        if currencies.secondary and currencies.secondary != currencies.main:
            secondary_rates = await build_rate_table(
                self.rate_provider,
                [quote.currency],
                currencies.secondary,
            )
            secondary_price = quote.price * secondary_rates.rate(quote.currency)

        market = MarketSnapshot(
            btc_price=quote.price * quote_rate,
            change_24h=quote.change_24h * quote_rate,
            change_percent_24h=quote.change_percent_24h,
            used_fallback_price=used_fallback,
            secondary_currency=currencies.secondary,
            secondary_btc_price=secondary_price,
        )
        return market, rates

    async def calculate_metrics(self, owner_id: str, *, detailed: bool = False) -> PortfolioMetrics:
        transactions = self.store.list_transactions(owner_id)
        wallets = self.store.list_wallets(owner_id)
        market, rates = await self.build_market(transactions)
        return await asyncio.to_thread(
            calculate_portfolio,
            transactions,
            market=market,
            rates=rates,
            wallets=wallets,
            detailed=detailed,
        )

    async def analyze_dca(self, owner_id: str) -> DCAAnalysis:
        transactions = self.store.list_transactions(owner_id)
        market, rates = await self.build_market(transactions)
        return await asyncio.to_thread(
            analyze_dca,
            transactions,
            current_price=market.btc_price,
            rates=rates,
        )

    async def refresh_summary(self, owner_id: str) -> dict[str, Any]:
        metrics = await self.calculate_metrics(owner_id)
        summary = metrics.model_dump(mode="json", include=set(SUMMARY_FIELDS))
        await asyncio.to_thread(self.store.save_summary, owner_id, summary)
        logger.info(
            "[PORTFOLIO] Summary refreshed for %s: %s BTC, value %s %s",
            owner_id,
            summary["total_btc"],
            summary["portfolio_value"],
            summary["main_currency"],
        )
        return summary

    async def get_summary(self, owner_id: str) -> dict[str, Any]:
        summary = self.store.get_summary(owner_id)
        if summary is None:
            summary = await self.refresh_summary(owner_id)
        return summary
