import asyncio
from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from btc_portfolio.api.dependencies import get_owner_id, get_portfolio_service, get_store
from btc_portfolio.api.schemas import TransactionListResponse
from btc_portfolio.domain.dates import ensure_utc
from btc_portfolio.logger import get_logger
from btc_portfolio.manager import PortfolioService
from btc_portfolio.models import Transaction, TransactionDraft, TransactionKind, TransactionUpdate
from btc_portfolio.storage.ledger import LedgerStore

router = APIRouter()
logger = get_logger(__name__)


async def _refresh_summary(service: PortfolioService, owner_id: str) -> None:
    # The write has landed; a failed refresh leaves the previous summary in place.
    try:
        await service.refresh_summary(owner_id)
    except Exception:
        logger.exception("[PORTFOLIO] Summary refresh failed for %s.", owner_id)


@router.get("/api/transactions", response_model=TransactionListResponse)
async def list_transactions(
    owner_id: Annotated[str, Depends(get_owner_id)],
    store: Annotated[LedgerStore, Depends(get_store)],
    wallet_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    kind: TransactionKind | None = None,
) -> TransactionListResponse:
    transactions = store.list_transactions(
        owner_id,
        wallet_id=wallet_id,
        start=ensure_utc(start_date) if start_date else None,
        end=ensure_utc(end_date) if end_date else None,
        kind=kind,
    )
    return TransactionListResponse(transactions=transactions, total=len(transactions))


@router.post("/api/transactions", response_model=Transaction, status_code=201)
async def create_transaction(
    draft: TransactionDraft,
    owner_id: Annotated[str, Depends(get_owner_id)],
    store: Annotated[LedgerStore, Depends(get_store)],
    service: Annotated[PortfolioService, Depends(get_portfolio_service)],
) -> Transaction:
    tx = await asyncio.to_thread(store.add_transaction, owner_id, draft)
    await _refresh_summary(service, owner_id)
    return tx


@router.get("/api/transactions/{tx_id}", response_model=Transaction)
async def get_transaction(
    tx_id: str,
    owner_id: Annotated[str, Depends(get_owner_id)],
    store: Annotated[LedgerStore, Depends(get_store)],
) -> Transaction:
    tx = store.get_transaction(owner_id, tx_id)
    if tx is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return tx


@router.put("/api/transactions/{tx_id}", response_model=Transaction)
async def update_transaction(
    tx_id: str,
    update: TransactionUpdate,
    owner_id: Annotated[str, Depends(get_owner_id)],
    store: Annotated[LedgerStore, Depends(get_store)],
    service: Annotated[PortfolioService, Depends(get_portfolio_service)],
) -> Transaction:
    tx = await asyncio.to_thread(store.update_transaction, owner_id, tx_id, update)
    if tx is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    await _refresh_summary(service, owner_id)
    return tx
