"""API proxy FastAPI application.

Creates the proxy service, wires one relay route per configured target, and
exposes health and Prometheus metrics endpoints.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from proxyai.api.routes import build_router
from proxyai.core.config import Settings
from proxyai.metrics.prometheus import metrics_router
from proxyai.services.proxy import build_upstream_client


def create_app(settings: Settings, client: httpx.AsyncClient | None = None) -> FastAPI:
    """Build the app around `settings`; the upstream client is shared by all relays."""
    upstream = client if client is not None else build_upstream_client()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Keeps the upstream connection pool open for the lifetime of the app."""
        try:
            yield
        finally:
            await upstream.aclose()

    # No docs routes; every path under a prefix is relayed.
    app = FastAPI(
        title="API Proxy",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.upstream = upstream
    app.include_router(build_router(settings, upstream))
    app.include_router(metrics_router)
    return app
