from typing import Annotated

from fastapi import Header, HTTPException, Request

from btc_portfolio.manager import PortfolioService
from btc_portfolio.services.recurring import RecurringPlanService
from btc_portfolio.services.scheduler import DCAScheduler
from btc_portfolio.storage.ledger import LedgerStore


def get_owner_id(owner_id: Annotated[str, Header(alias="X-Owner-Id", min_length=1)]) -> str:
    return owner_id


def get_store(request: Request) -> LedgerStore:
    store = getattr(request.app.state, "store", None)
    if not store:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return store


def get_portfolio_service(request: Request) -> PortfolioService:
    service = getattr(request.app.state, "portfolio", None)
    if not service:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return service


def get_plan_service(request: Request) -> RecurringPlanService:
    service = getattr(request.app.state, "plans", None)
    if not service:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return service


def get_scheduler(request: Request) -> DCAScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if not scheduler:
        raise HTTPException(status_code=500, detail="Scheduler not initialized")
    return scheduler
