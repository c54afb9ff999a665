from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from ....application.use_cases.signaling import SessionRouter
from ...schemas.api import CallOut, CallsOut, ErrorResponse, PresenceOut
from ..deps.containers import get_session_router

router = APIRouter(prefix="/api/v1", tags=["presence"])


@router.get("/presence", response_model=PresenceOut)
async def presence(relay: SessionRouter = Depends(get_session_router)) -> PresenceOut:
    return PresenceOut(users=relay.roster())


@router.get("/calls", response_model=CallsOut)
async def calls(relay: SessionRouter = Depends(get_session_router)) -> CallsOut:
    return CallsOut(calls=relay.calls())


@router.get("/calls/{call_id}", response_model=CallOut, responses={404: {"model": ErrorResponse}})
async def call_detail(call_id: UUID, relay: SessionRouter = Depends(get_session_router)) -> CallOut:
    return CallOut(**relay.call(call_id))
