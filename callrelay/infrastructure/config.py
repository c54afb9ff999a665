from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    # App
    APP_NAME: str = "CallRelay"
    APP_ENV: str = "dev"
    API_PREFIX: str = "/api/v1"
    HOST: str = "0.0.0.0"
    PORT: int = 5000
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: List[str] = Field(default_factory=lambda: ["http://localhost:5173", "http://localhost:5000"])  # type: ignore[assignment]

    # WebRTC ICE
    STUN_SERVERS: List[str] = Field(default_factory=lambda: ["stun:stun.l.google.com:19302"])  # type: ignore[assignment]
    # Поддерживаем как одиночный TURN_URL, так и список TURN_URLS для UDP/TCP
    TURN_URLS: List[str] | None = None  # type: ignore[assignment]
    TURN_URL: str | None = None
    # Static TURN credentials (used when TURN_SECRET is not set)
    TURN_USERNAME: str | None = None
    TURN_PASSWORD: str | None = None
    # Shared secret for time-limited TURN REST credentials (coturn use-auth-secret)
    TURN_SECRET: str | None = None
    TURN_CREDENTIAL_TTL_SEC: int = 3600
    ICE_TRANSPORT_POLICY: str | None = None

    # Signaling core
    SESSION_TRACKING_ENABLED: bool = True
    ALLOW_CONCURRENT_CALLS: bool = False
    # 0 disables the ring / invite timeout
    RING_TIMEOUT_SEC: float = 0.0
    # True: a second login with the same identity closes the older socket (code 4000)
    EVICT_SUPERSEDED_LOGIN: bool = False
    MAX_IDENTITY_LENGTH: int = 128


@lru_cache()
def get_settings() -> Settings:
    s = Settings()
    # allow comma-separated env for lists
    if isinstance(s.CORS_ORIGINS, str):  # type: ignore[unreachable]
        s.CORS_ORIGINS = [x.strip() for x in s.CORS_ORIGINS.split(",") if x.strip()]  # type: ignore[attr-defined]
    if isinstance(s.STUN_SERVERS, str):  # type: ignore[unreachable]
        s.STUN_SERVERS = [x.strip() for x in s.STUN_SERVERS.split(",") if x.strip()]  # type: ignore[attr-defined]
    # Нормализуем TURN_URLS / TURN_URL
    if isinstance(s.TURN_URLS, str):  # type: ignore[unreachable]
        s.TURN_URLS = [x.strip() for x in s.TURN_URLS.split(",") if x.strip()]  # type: ignore[attr-defined]
    if not s.TURN_URLS and s.TURN_URL:
        s.TURN_URLS = [s.TURN_URL]
    return s
