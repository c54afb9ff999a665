from __future__ import annotations

from typing import Any

import pytest

from callrelay.application.use_cases.signaling import SessionRouter
from callrelay.core.ports.services import Connection, IceConfigProvider
from callrelay.core.services.calls import CallSessionTracker
from callrelay.core.services.presence import PresenceRegistry


class FakeConnection(Connection):
    """In-memory connection: records every payload the relay sends."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.sent: list[dict[str, Any]] = []
        self.closed: tuple[int, str] | None = None

    @property
    def label(self) -> str:
        return self.name

    async def send(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def of_type(self, type_: str) -> list[dict[str, Any]]:
        return [p for p in self.sent if p.get("type") == type_]

    def types(self) -> list[str]:
        return [p.get("type") for p in self.sent]


class StaticIceProvider(IceConfigProvider):
    def __init__(self) -> None:
        self.calls: list[str | None] = []

    async def get_servers(self, identity: str | None = None) -> dict[str, Any]:
        self.calls.append(identity)
        return {"iceServers": [{"urls": ["stun:stun.example.org:3478"]}]}


@pytest.fixture
def make_conn():
    return FakeConnection


@pytest.fixture
def relay() -> SessionRouter:
    return SessionRouter(PresenceRegistry(), CallSessionTracker())


@pytest.fixture
def login(relay, make_conn):
    async def _login(name: str, router: SessionRouter | None = None) -> FakeConnection:
        conn = make_conn(name)
        await (router or relay).handle(conn, {"type": "login", "identity": name})
        conn.sent.clear()
        return conn

    return _login


@pytest.fixture
def ice_provider() -> StaticIceProvider:
    return StaticIceProvider()
