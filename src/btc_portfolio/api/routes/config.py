import asyncio
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from btc_portfolio.api.schemas import ConfigUpdateRequest
from btc_portfolio.core.configuration import (
    apply_config_updates,
    apply_runtime_updates,
    build_config_context,
)

router = APIRouter()


@router.get("/api/config")
async def get_config() -> dict[str, Any]:
    return build_config_context()


@router.post("/api/config")
async def update_config(payload: ConfigUpdateRequest, request: Request) -> dict[str, Any]:
    errors, updates = await asyncio.to_thread(apply_config_updates, payload.values)
    if errors:
        raise HTTPException(status_code=400, detail=build_config_context(field_errors=errors))
    apply_runtime_updates(request.app, updates)
    return {"updated": sorted(updates), "config": build_config_context()}
