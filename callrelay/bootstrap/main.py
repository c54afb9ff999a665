from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..infrastructure import metrics
from ..infrastructure.config import Settings, get_settings
from ..infrastructure.ice.provider import EnvIceConfigProvider
from ..infrastructure.logging import configure_logging
from ..presentation.api.deps.containers import build_session_router
from ..presentation.api.routers import presence as presence_router
from ..presentation.api.routers import webrtc as webrtc_router
from ..presentation.docs import get_openapi_tags
from ..presentation.errors import setup_error_handlers
from ..presentation.ws import signaling as ws_signaling


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # висящие ring/invite таймеры не должны пережить приложение
    await app.state.session_router.shutdown()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    # В проде отключаем публичный доступ к документации и схеме
    is_docs_enabled = settings.APP_ENV in {"dev", "test"}
    app = FastAPI(
        title=settings.APP_NAME,
        description="WebRTC call-signaling relay: presence, offer/answer/ICE routing, conference membership",
        version="0.1.0",
        docs_url="/docs" if is_docs_enabled else None,
        redoc_url="/redoc" if is_docs_enabled else None,
        openapi_url="/openapi.json" if is_docs_enabled else None,
        openapi_tags=get_openapi_tags(),
        lifespan=lifespan,
    )

    ice_provider = EnvIceConfigProvider(settings)
    app.state.settings = settings
    app.state.ice_provider = ice_provider
    app.state.session_router = build_session_router(settings, ice_provider)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # Security headers middleware: add common HTTP security headers to every response.
    @app.middleware("http")
    async def security_headers_middleware(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if settings.APP_ENV not in {"dev", "test"}:
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains; preload")
        return response

    setup_error_handlers(app)

    @app.middleware("http")
    async def request_id_timing_middleware(request, call_next):  # type: ignore[override]
        req_id = str(uuid.uuid4())
        start = time.perf_counter()
        request.state.request_id = req_id  # type: ignore[attr-defined]
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000.0
        path_label = request.url.path
        logging.getLogger("app.request").info(
            "request",
            extra={
                "request_id": req_id,
                "method": request.method,
                "path": path_label,
                "status": response.status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        metrics.REQUEST_COUNT.labels(request.method, path_label, response.status_code).inc()
        metrics.REQ_LATENCY.labels(request.method, path_label).observe(duration_ms)
        response.headers.setdefault("X-Request-ID", req_id)
        response.headers.setdefault("Server-Timing", f"app;dur={duration_ms:.2f}")
        return response

    # Routers
    app.include_router(presence_router.router)
    app.include_router(webrtc_router.router)

    # WS
    app.include_router(ws_signaling.router)

    @app.get("/healthz", tags=["health"])
    async def healthz():
        return {"status": "ok"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("callrelay.bootstrap.asgi:app", host=settings.HOST, port=settings.PORT, log_config=None)
