import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from btc_portfolio.api.routes import config, portfolio, recurring, transactions, wallets
from btc_portfolio.core import settings
from btc_portfolio.integration.exchange_rates import ExchangeRateClient
from btc_portfolio.integration.price_feed import PriceFeedClient
from btc_portfolio.logger import get_logger, setup_logging
from btc_portfolio.manager import PortfolioService
from btc_portfolio.services.recurring import RecurringPlanService
from btc_portfolio.services.scheduler import DCAScheduler
from btc_portfolio.storage.ledger import LedgerStore

logger = get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        store = LedgerStore(data_path=os.path.join(settings.DATA_DIR, settings.LEDGER_FILENAME))
        price_feed = PriceFeedClient()
        exchange_rates = ExchangeRateClient()
        portfolio_service = PortfolioService(
            store=store,
            price_feed=price_feed,
            rate_provider=exchange_rates,
        )
        plans = RecurringPlanService(store=store)
        scheduler = DCAScheduler(
            store,
            plans,
            portfolio_service,
            interval_seconds=settings.get_scheduler_interval(),
            auto_tags=settings.get_auto_dca_tags(),
        )

        app.state.store = store
        app.state.price_feed = price_feed
        app.state.exchange_rates = exchange_rates
        app.state.portfolio = portfolio_service
        app.state.plans = plans
        app.state.scheduler = scheduler

        if settings.get_env_bool("SCHEDULER_ENABLED", True):
            scheduler.start()
        else:
            logger.info("SCHEDULER_ENABLED is off. Recurring plans only run on manual execution.")

        logger.info("Services initialized.")
        try:
            yield
        finally:
            logger.info("Service shutting down.")
            await scheduler.stop()
            await price_feed.aclose()
            await exchange_rates.aclose()

    app = FastAPI(title="BTC Portfolio Engine", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(portfolio.router)
    app.include_router(transactions.router)
    app.include_router(wallets.router)
    app.include_router(recurring.router)
    app.include_router(config.router)

    return app


app = create_app()
