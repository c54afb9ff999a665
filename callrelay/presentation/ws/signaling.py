from __future__ import annotations

"""WebSocket канал сигнализации звонков.

Один JSON объект на кадр, поле ``type`` задаёт вид сообщения:
 - presence: login / logout / presence-query / ping
 - 1:1: call-offer / call-answer / call-reject / ice-candidate
 - conference: join-invite / invite-accept / invite-reject / participant-joined / participant-left / leave-call
 - in-call: in-call-tone

Исходящие: online-users, user-joined, user-left, ice-servers, incoming-call,
call-answered, call-rejected, ice-candidate, incoming-invite, invite-accepted,
invite-rejected, invite-cancelled, new-participant-joined, participant-left,
in-call-tone, call-timeout, invite-timeout, logged-out, pong, error.

Авторизации нет: identity передаётся клиентом в login как есть.
"""

import contextlib
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ...application.use_cases.signaling import SessionRouter
from ...core.ports.services import Connection
from ...infrastructure import metrics
from ..api.deps.containers import get_session_router

router = APIRouter()
logger = logging.getLogger(__name__)


class WebSocketConnection(Connection):
    """Adapts a Starlette WebSocket to the core ``Connection`` port."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    @property
    def label(self) -> str:
        return f"ws-{id(self.websocket):x}"

    async def send(self, payload: dict[str, Any]) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.send_json(payload)
        except Exception as e:  # fire-and-forget: no retry, no buffering
            logger.warning("WS_SEND_FAIL conn=%s type=%s err=%s", self.label, payload.get("type"), e)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        with contextlib.suppress(Exception):
            await self.websocket.close(code=code, reason=reason)


@router.websocket("/ws/signaling")
async def ws_signaling(websocket: WebSocket, relay: SessionRouter = Depends(get_session_router)):
    await websocket.accept()
    conn = WebSocketConnection(websocket)
    metrics.WS_CONNECTIONS.inc()
    metrics.ACTIVE_WS.inc()
    logger.info("WS_CONNECT conn=%s client=%s", conn.label, websocket.client)
    try:
        while True:
            try:
                msg = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            except RuntimeError:
                # сокет уже закрыт сервером (например, вытеснен новым login)
                break
            except KeyError:
                msg = ""  # бинарный кадр
            try:
                data: Any = json.loads(msg)
            except ValueError:
                data = msg  # не JSON объект: роутер ответит malformed-message
            await relay.handle(conn, data)
    finally:
        metrics.ACTIVE_WS.dec()
        await relay.disconnect(conn)
