from __future__ import annotations

import base64
import hashlib
import hmac
import time
from typing import Any, Callable

from ...core.ports.services import IceConfigProvider
from ..config import Settings, get_settings


def turn_rest_credentials(secret: str, identity: str, ttl_sec: int, now: float | None = None) -> tuple[str, str]:
    """Time-limited TURN credentials (TURN REST API / coturn ``use-auth-secret``).

    username = "<unix expiry>:<identity>", credential = base64(HMAC-SHA1(secret, username)).
    """
    expiry = int(now if now is not None else time.time()) + ttl_sec
    username = f"{expiry}:{identity}"
    digest = hmac.new(secret.encode("utf-8"), username.encode("utf-8"), hashlib.sha1).digest()
    return username, base64.b64encode(digest).decode("ascii")


class EnvIceConfigProvider(IceConfigProvider):
    """
    Отдаёт структуру WebRTC ICE из Settings:
      - STUN_SERVERS: список STUN URL
      - TURN_URLS / TURN_URL: TURN серверы
      - TURN_SECRET: краткоживущие креды на каждый логин, иначе TURN_USERNAME/TURN_PASSWORD
    """

    def __init__(self, settings: Settings | None = None, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings or get_settings()
        self._clock = clock

    async def get_servers(self, identity: str | None = None) -> dict[str, Any]:
        s = self.settings
        ice: list[dict[str, Any]] = []
        if s.STUN_SERVERS:
            ice.append({"urls": list(s.STUN_SERVERS)})

        turn_urls = list(s.TURN_URLS or ([s.TURN_URL] if s.TURN_URL else []))
        if turn_urls:
            if s.TURN_SECRET:
                username, credential = turn_rest_credentials(
                    s.TURN_SECRET, identity or "anonymous", s.TURN_CREDENTIAL_TTL_SEC, now=self._clock()
                )
                ice.append({"urls": turn_urls, "username": username, "credential": credential})
            elif s.TURN_USERNAME and s.TURN_PASSWORD:
                ice.append({"urls": turn_urls, "username": s.TURN_USERNAME, "credential": s.TURN_PASSWORD})

        config: dict[str, Any] = {"iceServers": ice}
        if s.ICE_TRANSPORT_POLICY:
            config["iceTransportPolicy"] = s.ICE_TRANSPORT_POLICY
        return config
