import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends

from btc_portfolio.api.dependencies import get_owner_id, get_store
from btc_portfolio.api.schemas import WalletListResponse
from btc_portfolio.models import Wallet, WalletDraft
from btc_portfolio.storage.ledger import LedgerStore

router = APIRouter()


@router.get("/api/wallets", response_model=WalletListResponse)
async def list_wallets(
    owner_id: Annotated[str, Depends(get_owner_id)],
    store: Annotated[LedgerStore, Depends(get_store)],
) -> WalletListResponse:
    return WalletListResponse(wallets=store.list_wallets(owner_id))


@router.post("/api/wallets", response_model=Wallet, status_code=201)
async def create_wallet(
    draft: WalletDraft,
    owner_id: Annotated[str, Depends(get_owner_id)],
    store: Annotated[LedgerStore, Depends(get_store)],
) -> Wallet:
    return await asyncio.to_thread(store.add_wallet, owner_id, draft)
