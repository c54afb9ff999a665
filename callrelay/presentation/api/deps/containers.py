from __future__ import annotations

from starlette.requests import HTTPConnection

from ....application.use_cases.signaling import SessionRouter
from ....core.ports.services import IceConfigProvider
from ....core.services.calls import CallPolicy, CallSessionTracker
from ....core.services.presence import PresenceRegistry
from ....infrastructure.config import Settings, get_settings
from ....infrastructure.ice.provider import EnvIceConfigProvider


def build_session_router(settings: Settings | None = None, ice_provider: IceConfigProvider | None = None) -> SessionRouter:
    """One router (registry + tracker) per application instance."""
    s = settings or get_settings()
    tracker = None
    if s.SESSION_TRACKING_ENABLED:
        tracker = CallSessionTracker(CallPolicy(allow_concurrent_calls=s.ALLOW_CONCURRENT_CALLS))
    return SessionRouter(
        PresenceRegistry(max_identity_length=s.MAX_IDENTITY_LENGTH),
        tracker,
        ice_provider=ice_provider or EnvIceConfigProvider(s),
        ring_timeout=s.RING_TIMEOUT_SEC,
        evict_superseded=s.EVICT_SUPERSEDED_LOGIN,
    )


# Works for both HTTP requests and WebSocket connections
def get_session_router(conn: HTTPConnection) -> SessionRouter:
    return conn.app.state.session_router


def get_ice_provider(conn: HTTPConnection) -> IceConfigProvider:
    return conn.app.state.ice_provider
