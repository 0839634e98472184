from typing import Annotated, Any

from fastapi import APIRouter, Depends

from btc_portfolio.api.dependencies import get_owner_id, get_portfolio_service
from btc_portfolio.manager import PortfolioService
from btc_portfolio.services.dca_analysis import DCAAnalysis
from btc_portfolio.services.portfolio import PortfolioMetrics

router = APIRouter()


@router.get("/api/portfolio-metrics", response_model=PortfolioMetrics)
async def portfolio_metrics(
    owner_id: Annotated[str, Depends(get_owner_id)],
    service: Annotated[PortfolioService, Depends(get_portfolio_service)],
    detailed: bool = False,
) -> PortfolioMetrics:
    return await service.calculate_metrics(owner_id, detailed=detailed)


@router.get("/api/portfolio-summary")
async def portfolio_summary(
    owner_id: Annotated[str, Depends(get_owner_id)],
    service: Annotated[PortfolioService, Depends(get_portfolio_service)],
    refresh: bool = False,
) -> dict[str, Any]:
    if refresh:
        return await service.refresh_summary(owner_id)
    return await service.get_summary(owner_id)


@router.get("/api/dca-analysis", response_model=DCAAnalysis)
async def dca_analysis(
    owner_id: Annotated[str, Depends(get_owner_id)],
    service: Annotated[PortfolioService, Depends(get_portfolio_service)],
) -> DCAAnalysis:
    return await service.analyze_dca(owner_id)
