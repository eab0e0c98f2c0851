"""API routes for the proxy.

Binds every configured path prefix to its own relay handler and exposes the
liveness endpoint, which never touches the relay.
"""
from __future__ import annotations

from logging import getLogger

import httpx
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from proxyai.core.config import Settings
from proxyai.services.proxy import RelayHandler

log = getLogger("API-Proxy.API")

RELAY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


async def health_check():
    """Liveness probe."""
    return PlainTextResponse("OK")


def build_router(settings: Settings, client: httpx.AsyncClient) -> APIRouter:
    """Register one relay handler per target prefix, plus GET /health."""
    router = APIRouter()
    router.add_api_route("/health", health_check, methods=["GET"], include_in_schema=False)

    for target in settings.targets:
        handler = RelayHandler(target, settings, client)
        router.add_api_route(
            f"{target.path_prefix}{{path:path}}",
            handler.handle,
            methods=RELAY_METHODS,
            include_in_schema=False,
        )
        log.info("Registered handler for %s -> %s", target.path_prefix, target.target_host)

    return router
