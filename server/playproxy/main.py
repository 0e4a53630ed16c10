from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import ConfigError, Settings, load_settings
from .coordinator import ResolutionCoordinator
from .proxy import StreamProxy
from .resolver import YtDlpResolver
from .routers.download import router as download_router
from .routers.playback import router as playback_router
from .store import LockManager, ResolutionCache, build_store


USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    timeout = httpx.Timeout(settings.upstream_timeout_s, connect=10.0)
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT, "Referer": "https://www.youtube.com/"},
    )


def create_app(
    *,
    settings: Optional[Settings] = None,
    store=None,
    resolver=None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    try:
        settings = settings or load_settings()
    except ConfigError as err:
        message = str(err)
        app = FastAPI(title="playproxy", version="0.1.0")

        # App still starts, but surfaces a clear startup configuration error.
        @app.get("/healthz")
        def _healthz_failed() -> JSONResponse:
            return JSONResponse(
                status_code=500,
                content={"error": {"code": "CONFIG_ERROR", "message": message}},
            )

        return app

    logging.basicConfig(
        level=logging.INFO if settings.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    store = store if store is not None else build_store(settings.redis_url)
    resolver = resolver if resolver is not None else YtDlpResolver(
        timeout_s=settings.resolve_timeout_s
    )
    http_client = http_client if http_client is not None else build_http_client(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await http_client.aclose()
        await store.close()

    app = FastAPI(title="playproxy", version="0.1.0", lifespan=lifespan)

    cache = ResolutionCache(
        store, stream_ttl_s=settings.stream_ttl_s, search_ttl_s=settings.search_ttl_s
    )
    locks = LockManager(store, ttl_s=settings.lock_ttl_s)
    coordinator = ResolutionCoordinator(cache, locks, resolver)
    app.state.settings = settings
    app.state.store = store
    app.state.cache = cache
    app.state.resolver = resolver
    app.state.coordinator = coordinator
    app.state.proxy = StreamProxy(
        coordinator,
        http_client,
        content_type=settings.stream_content_type,
        chunk_size=settings.stream_chunk_size,
        wait_attempts=settings.resolve_wait_attempts,
        wait_interval_s=settings.resolve_wait_interval_s,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.client_origin],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Length", "Content-Range", "Accept-Ranges"],
    )

    @app.get("/healthz")
    def healthz() -> dict:
        return {"ok": True}

    app.include_router(playback_router)
    app.include_router(download_router)
    return app


app = create_app()
