from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from ....core.ports.services import IceConfigProvider
from ..deps.containers import get_ice_provider

router = APIRouter(prefix="/api/v1/webrtc", tags=["webrtc"])


@router.get("/ice-servers")
async def ice_servers(
    identity: str | None = Query(default=None, max_length=128),
    provider: IceConfigProvider = Depends(get_ice_provider),
) -> dict:  # type: ignore[override]
    # identity попадает в username краткоживущих TURN кредов
    return await provider.get_servers(identity)
