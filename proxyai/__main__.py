"""Process entry point: ``python -m proxyai`` or the ``proxyai`` console script."""
from __future__ import annotations

import logging
import sys
from typing import Sequence

import uvicorn

from proxyai.core.config import load_settings, log_settings, split_listen_addr
from proxyai.core.logging import setup_logging
from proxyai.main import create_app

log = logging.getLogger("API-Proxy")

# In-flight relays get this long to finish after SIGINT/SIGTERM.
SHUTDOWN_GRACE_S = 10


def main(argv: Sequence[str] | None = None) -> int:
    settings = load_settings(argv)
    setup_logging(settings.debug)
    log_settings(settings)

    host, port = split_listen_addr(settings.listen_addr)
    config = uvicorn.Config(
        create_app(settings),
        host=host,
        port=port,
        timeout_keep_alive=settings.read_header_timeout_s,
        timeout_graceful_shutdown=SHUTDOWN_GRACE_S,
        log_config=None,
        access_log=settings.debug,
    )
    server = uvicorn.Server(config)

    log.info("Starting multi-API proxy server on %s", settings.listen_addr)
    server.run()
    if not server.started:
        log.error("Server failed to start")
        return 1
    log.info("Server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
