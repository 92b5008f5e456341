"""Entry point for the emby-302 FastAPI application.

Usage:
    EMBY302_CONFIG=/app/config.yml uvicorn --factory app.main:create_app --host 0.0.0.0 --port 8095
    python -m app.main
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI

from app.api.dispatch import Dispatcher
from app.api.dispatch import router as dispatch_router
from app.config import ConfigError, Settings, get_settings
from app.emby import http_client
from app.emby.filters import ClientFilter
from app.emby.path_map import PathMapper
from app.emby.playback import MediaPathResolver
from app.emby.reverse_proxy import ReverseProxy
from app.emby.websocket_proxy import WebSocketProxy


logger = logging.getLogger("emby_302")


def _configure_logging() -> None:
    """Initialize structured logging once for the service."""

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("emby_302").setLevel(logging.INFO)


def build_dispatcher(settings: Settings, client: httpx.AsyncClient) -> Dispatcher:
    """Wire the pipeline components from one immutable settings object."""

    return Dispatcher(
        settings=settings,
        client_filter=ClientFilter.from_config(settings.client_filter),
        mapper=PathMapper(settings.emby.strm.path_map),
        resolver=MediaPathResolver(settings.emby, client),
        proxy=ReverseProxy(settings.emby.base_url, client),
        websocket_proxy=WebSocketProxy(settings.emby.base_url),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create a new FastAPI instance routing every request through the dispatcher."""

    _configure_logging()
    settings = settings or get_settings()
    client = http_client.create_http_client()

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        try:
            yield
        finally:
            await client.aclose()

    # docs/openapi routes would shadow upstream paths
    application = FastAPI(
        title="emby-302",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    application.state.settings = settings
    application.state.dispatcher = build_dispatcher(settings, client)
    application.include_router(dispatch_router)
    logger.info(
        "emby-302 configured",
        extra={"upstream": settings.emby.base_url, "rules": len(settings.emby.strm.path_map)},
    )
    return application


def main() -> None:
    _configure_logging()
    logger.info("Starting emby-302...")
    try:
        settings = get_settings()
    except ConfigError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    logger.info("Listening on http://0.0.0.0:%s", settings.server.port)
    uvicorn.run("app.main:create_app", factory=True, host="0.0.0.0", port=settings.server.port, reload=False)


if __name__ == "__main__":
    main()
