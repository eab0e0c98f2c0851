# tests/test_proxy_connectivity.py
import time
import socket
import threading
from contextlib import closing

import anyio
import pytest
import httpx
import uvicorn

from proxyai.core.config import Settings
from proxyai.main import create_app
from proxyai.models.schemas import ProxyTarget

# --- helpers ---------------------------------------------------------------

def _free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]

class _BgServer:
    """Run a uvicorn server in a background thread; stop with should_exit=True."""
    def __init__(self, app, host: str, port: int):
        self.config = uvicorn.Config(app, host=host, port=port, log_level="error")
        self.server = uvicorn.Server(self.config)
        self.thread = threading.Thread(target=self.server.run, daemon=True)

    def start(self):
        self.thread.start()
        # Wait until port is accepting connections
        deadline = time.time() + 5
        while time.time() < deadline:
            try:
                with socket.create_connection((self.config.host, self.config.port), timeout=0.25):
                    return
            except OSError:
                time.sleep(0.05)
        raise RuntimeError("Server failed to start")

    def stop(self):
        self.server.should_exit = True
        self.thread.join(timeout=3)

# --- mock LLM upstream ------------------------------------------------------

def _make_upstream(release: threading.Event) -> httpx.AsyncClient:
    """Upstream that sends one event, then holds the stream open until `release` is set."""
    async def events():
        yield b"data: one\n\n"
        await anyio.to_thread.run_sync(release.wait)
        yield b"data: two\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/chat/completions":
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=events())
        return httpx.Response(404, headers={"content-length": "0"}, stream=httpx.ByteStream(b""))

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))

# --- tests ----------------------------------------------------------------

@pytest.mark.anyio
async def test_events_reach_client_while_upstream_stream_is_open():
    release = threading.Event()
    settings = Settings(targets=(ProxyTarget(path_prefix="/openai/", target_host="api.openai.com"),))
    port = _free_port()
    server = _BgServer(create_app(settings, client=_make_upstream(release)), "127.0.0.1", port)
    server.start()
    try:
        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}") as client:
            health = await client.get("/health")
            assert health.status_code == 200
            assert health.text == "OK"

            async with client.stream("POST", "/openai/v1/chat/completions", json={"stream": True}) as resp:
                assert resp.status_code == 200
                assert resp.headers["content-type"] == "text/event-stream"
                assert resp.headers["cache-control"] == "no-cache"

                chunks = resp.aiter_raw()
                # The first event must arrive while the upstream is still blocked.
                with anyio.fail_after(3):
                    first = await chunks.__anext__()
                assert first == b"data: one\n\n"

                release.set()
                rest = b"".join([chunk async for chunk in chunks])
                assert rest == b"data: two\n\n"
    finally:
        release.set()
        server.stop()


@pytest.mark.anyio
async def test_upstream_status_is_relayed_over_real_connection():
    release = threading.Event()
    settings = Settings(targets=(ProxyTarget(path_prefix="/openai/", target_host="api.openai.com"),))
    port = _free_port()
    server = _BgServer(create_app(settings, client=_make_upstream(release)), "127.0.0.1", port)
    server.start()
    try:
        async with httpx.AsyncClient(base_url=f"http://127.0.0.1:{port}") as client:
            resp = await client.get("/openai/v1/unknown")
            assert resp.status_code == 404
            assert resp.content == b""
    finally:
        server.stop()
