"""Reverse-proxy relay engine.

Builds the upstream request for a prefix-bound target, sends it on the shared
HTTP pool and relays the upstream response back to the client, flushing after
every chunk when the response is an event stream.

A relay moves through RECEIVED -> BUILDING_UPSTREAM_REQUEST ->
AWAITING_UPSTREAM_RESPONSE -> RELAYING_BODY -> COMPLETE; construction and
transport failures end it in FAILED with a 500 (or 504 when the deadline
expired). Nothing is retried.
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator

import anyio
import httpx
from fastapi import Request, Response
from fastapi.responses import PlainTextResponse
from starlette.datastructures import MutableHeaders
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from proxyai.core.config import Settings
from proxyai.metrics.prometheus import RELAY_BYTES, RELAY_DURATION, RELAY_FAILURES, RELAY_REQUESTS
from proxyai.models.schemas import ProxyTarget
from proxyai.services.headers import filtered_copy
from proxyai.services.origin import client_ip, scheme
from proxyai.services.resolver import request_path, resolve, upstream_url
from proxyai.services.sink import ASGIResponseSink, Flusher, ResponseSink

log = logging.getLogger("API-Proxy.Relay")

CHUNK_SIZE = 4096
MAX_BODY_LOG = 4096
HANDSHAKE_TIMEOUT_S = 10.0
MAX_IDLE_CONNECTIONS = 100
IDLE_CONN_TIMEOUT_S = 90.0
EVENT_STREAM = "text/event-stream"
SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key", "x-goog-api-key"})

_flush_warning_logged = False


class RelayState(str, enum.Enum):
    RECEIVED = "RECEIVED"
    BUILDING_UPSTREAM_REQUEST = "BUILDING_UPSTREAM_REQUEST"
    AWAITING_UPSTREAM_RESPONSE = "AWAITING_UPSTREAM_RESPONSE"
    RELAYING_BODY = "RELAYING_BODY"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


@dataclass
class RelayContext:
    """State of one relay; owned by the task handling that request."""

    request_id: str
    start_time: float
    inbound: Request
    target: ProxyTarget
    deadline: float = float("inf")
    upstream_request: httpx.Request | None = None
    upstream_response: httpx.Response | None = None
    bytes_transferred: int = 0
    is_streaming: bool = False
    state: RelayState = RelayState.RECEIVED
    body_consumed: anyio.Event = field(default_factory=anyio.Event)

    def remaining(self) -> float:
        return max(self.deadline - anyio.current_time(), 0.0)

    def elapsed(self) -> float:
        return time.monotonic() - self.start_time


def build_upstream_client() -> httpx.AsyncClient:
    """Create the upstream connection pool shared by every relay.

    The client has no total timeout; each relay bounds itself with its own
    deadline. Only connection setup (TCP + TLS handshake) is capped here.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(None, connect=HANDSHAKE_TIMEOUT_S),
        limits=httpx.Limits(
            max_connections=None,
            max_keepalive_connections=MAX_IDLE_CONNECTIONS,
            keepalive_expiry=IDLE_CONN_TIMEOUT_S,
        ),
        follow_redirects=False,
        trust_env=False,
    )


async def wait_for_disconnect(receive: Receive) -> None:
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


def _has_body(request: Request) -> bool:
    if "transfer-encoding" in request.headers:
        return True
    try:
        return int(request.headers.get("content-length", "0")) > 0
    except ValueError:
        return False


class RelayHandler:
    """Relays every request under one path prefix to that prefix's upstream host."""

    def __init__(self, target: ProxyTarget, settings: Settings, client: httpx.AsyncClient):
        self.target = target
        self.settings = settings
        self.client = client

    async def handle(self, request: Request) -> Response:
        ctx = RelayContext(
            request_id=f"{request.method}-{time.time_ns()}",
            start_time=time.monotonic(),
            inbound=request,
            target=self.target,
        )
        RELAY_REQUESTS.labels(target=self.target.path_prefix).inc()

        if self.settings.debug:
            self._log_request_details(ctx)
            try:
                content = await self._read_body(ctx)
            except ClientDisconnect as e:
                return self._fail(ctx, 500, "Failed to read request body: client disconnected", "client_disconnect", e)
        else:
            log.info(
                "[%s] Incoming request: %s %s -> %s",
                ctx.request_id, request.method, request.url.path, self.target.target_host,
            )
            content = self._stream_body(ctx)

        ctx.state = RelayState.BUILDING_UPSTREAM_REQUEST
        suffix, host = resolve(self.target, request_path(request.scope, self.target.path_prefix))
        url = upstream_url(host, suffix, request.url.query)
        ctx.deadline = anyio.current_time() + self.settings.request_timeout_s
        try:
            ctx.upstream_request = self._build_upstream_request(ctx, url, content)
        except (httpx.InvalidURL, ValueError) as e:
            return self._fail(ctx, 500, f"Failed to create request: {e}", "construction", e)

        ctx.state = RelayState.AWAITING_UPSTREAM_RESPONSE
        log.info("[%s] Sending request to %s", ctx.request_id, url)
        try:
            ctx.upstream_response = await self._send(ctx)
        except TimeoutError as e:
            return self._fail(ctx, 504, "Request timed out", "timeout", e)
        except ClientDisconnect as e:
            return self._fail(ctx, 500, "Client disconnected", "client_disconnect", e)
        except (httpx.HTTPError, OSError) as e:
            return self._fail(ctx, 500, f"Failed to execute request: {e}", "transport", e)

        upstream = ctx.upstream_response
        if self.settings.debug:
            log.debug(
                "[%s] Received response: status=%d, content-type=%s, content-length=%s",
                ctx.request_id, upstream.status_code,
                upstream.headers.get("content-type", ""), upstream.headers.get("content-length", ""),
            )
        ctx.state = RelayState.RELAYING_BODY
        response = RelayResponse(ctx)
        if ctx.is_streaming and self.settings.debug:
            log.debug("[%s] Streaming response as SSE", ctx.request_id)
        return response

    def _log_request_details(self, ctx: RelayContext) -> None:
        r = ctx.inbound
        log.debug(
            "[%s] Incoming request: %s %s (target: %s)",
            ctx.request_id, r.method, r.url.path, self.target.target_host,
        )
        log.debug("[%s] Request headers:", ctx.request_id)
        for name, value in r.headers.items():
            shown = "[REDACTED]" if name.lower() in SENSITIVE_HEADERS else value
            log.debug("[%s]   %s: %s", ctx.request_id, name, shown)
        log.debug("[%s] Query params: %s", ctx.request_id, r.url.query)
        log.debug("[%s] Content-Length: %s", ctx.request_id, r.headers.get("content-length", "-1"))
        log.debug("[%s] Remote addr: %s", ctx.request_id, r.scope.get("client"))

    async def _read_body(self, ctx: RelayContext) -> bytes | None:
        # Debug only: the whole body is held in memory so it can be logged.
        body = await ctx.inbound.body()
        ctx.body_consumed.set()
        if not body:
            return None
        text = body[:MAX_BODY_LOG].decode("utf-8", errors="replace")
        if len(body) > MAX_BODY_LOG:
            log.debug("[%s] Request body (%d bytes, truncated): %s...", ctx.request_id, len(body), text)
        else:
            log.debug("[%s] Request body (%d bytes): %s", ctx.request_id, len(body), text)
        return body

    def _stream_body(self, ctx: RelayContext) -> AsyncIterator[bytes] | None:
        if not _has_body(ctx.inbound):
            ctx.body_consumed.set()
            return None

        async def body() -> AsyncIterator[bytes]:
            async for chunk in ctx.inbound.stream():
                if chunk:
                    yield chunk
            ctx.body_consumed.set()

        return body()

    def _build_upstream_request(
        self, ctx: RelayContext, url: str, content: bytes | AsyncIterator[bytes] | None
    ) -> httpx.Request:
        inbound = ctx.inbound
        headers = filtered_copy(MutableHeaders(), inbound.headers.items(), exclude=("connection",))
        if not self.settings.disable_forwarded_headers:
            headers["x-forwarded-for"] = client_ip(inbound)
            headers["x-forwarded-proto"] = scheme(inbound)
        headers["host"] = self.target.target_host

        request = self.client.build_request(inbound.method, url, headers=headers.raw, content=content)
        # Accept-Encoding goes upstream only if the client sent it.
        if "accept-encoding" not in inbound.headers:
            request.headers.pop("accept-encoding", None)
        return request

    async def _send(self, ctx: RelayContext) -> httpx.Response:
        """Send the upstream request under the deadline, cancelling it if the client goes away."""
        response: httpx.Response | None = None
        error: Exception | None = None
        disconnected = False

        async def send_upstream(scope: anyio.CancelScope) -> None:
            nonlocal response, error
            try:
                response = await self.client.send(ctx.upstream_request, stream=True)
            except Exception as e:
                error = e
            finally:
                scope.cancel()

        async def watch_client(scope: anyio.CancelScope) -> None:
            nonlocal disconnected
            await ctx.body_consumed.wait()
            await wait_for_disconnect(ctx.inbound.receive)
            disconnected = True
            log.warning("[%s] Client disconnected while waiting for upstream", ctx.request_id)
            scope.cancel()

        try:
            with anyio.fail_after(ctx.remaining()):
                async with anyio.create_task_group() as tg:
                    tg.start_soon(send_upstream, tg.cancel_scope)
                    tg.start_soon(watch_client, tg.cancel_scope)
        except BaseException:
            if response is not None:
                with anyio.CancelScope(shield=True):
                    await response.aclose()
            raise

        if error is not None:
            raise error
        if disconnected:
            if response is not None:
                await response.aclose()
            raise ClientDisconnect()
        return response

    def _fail(
        self,
        ctx: RelayContext,
        status_code: int,
        message: str,
        kind: str,
        exc: BaseException | None = None,
    ) -> Response:
        ctx.state = RelayState.FAILED
        RELAY_FAILURES.labels(target=self.target.path_prefix, kind=kind).inc()
        log.error("[%s] %s (%s after %.3fs): %r", ctx.request_id, message, kind, ctx.elapsed(), exc)
        return PlainTextResponse(message, status_code=status_code)


def prepare_response_headers(ctx: RelayContext) -> MutableHeaders:
    """Client-facing headers for the upstream response; marks event streams on `ctx`."""
    upstream = ctx.upstream_response
    raw = [(k.decode("latin-1"), v.decode("latin-1")) for k, v in upstream.headers.raw]
    headers = filtered_copy(MutableHeaders(), raw)
    if EVENT_STREAM in upstream.headers.get("content-type", "").lower():
        ctx.is_streaming = True
        headers["content-type"] = EVENT_STREAM
        headers["cache-control"] = "no-cache"
        headers["connection"] = "keep-alive"
        # A stream's length is unknown
        del headers["content-length"]
    return headers


def _warn_unflushable(ctx: RelayContext) -> None:
    global _flush_warning_logged
    if not _flush_warning_logged:
        _flush_warning_logged = True
        log.warning(
            "[%s] Response sink does not support flush, streaming may not work properly",
            ctx.request_id,
        )


async def _copy_body(ctx: RelayContext, sink: ResponseSink, flusher: Flusher | None) -> None:
    reads = 0
    try:
        async for data in ctx.upstream_response.aiter_raw():
            for offset in range(0, len(data), CHUNK_SIZE):
                chunk = data[offset:offset + CHUNK_SIZE]
                reads += 1
                await sink.write(chunk)
                ctx.bytes_transferred += len(chunk)
                if ctx.is_streaming and flusher is not None:
                    await flusher.flush()
    except httpx.HTTPError as e:
        RELAY_FAILURES.labels(target=ctx.target.path_prefix, kind="upstream_read").inc()
        log.error(
            "[%s] Error reading response body after %d reads, %d bytes: %s",
            ctx.request_id, reads, ctx.bytes_transferred, e,
        )
        return
    log.info("[%s] Finished streaming: %d reads, %d bytes", ctx.request_id, reads, ctx.bytes_transferred)


async def relay_body(
    ctx: RelayContext,
    sink: ResponseSink,
    status_code: int,
    raw_headers: list[tuple[bytes, bytes]],
) -> None:
    """Write status, headers and body of the upstream response into `sink`.

    Bytes already written are never retracted: an upstream read error or the
    deadline ends the response early but still closes it normally.
    """
    flusher = sink if isinstance(sink, Flusher) else None
    if ctx.is_streaming and flusher is None:
        _warn_unflushable(ctx)
    try:
        with anyio.CancelScope(deadline=ctx.deadline) as scope:
            await sink.start(status_code, raw_headers)
            if ctx.is_streaming and flusher is not None:
                await flusher.flush()
            await _copy_body(ctx, sink, flusher)
        if scope.cancelled_caught:
            RELAY_FAILURES.labels(target=ctx.target.path_prefix, kind="timeout").inc()
            log.error("[%s] Request timed out after %d bytes", ctx.request_id, ctx.bytes_transferred)
        await sink.close()
    except OSError as e:
        ctx.state = RelayState.FAILED
        RELAY_FAILURES.labels(target=ctx.target.path_prefix, kind="client_write").inc()
        log.error("[%s] Error writing to client: %s", ctx.request_id, e)
        return
    ctx.state = RelayState.COMPLETE


def record_completion(ctx: RelayContext) -> None:
    duration = ctx.elapsed()
    label = ctx.target.path_prefix
    RELAY_BYTES.labels(target=label).inc(ctx.bytes_transferred)
    RELAY_DURATION.labels(target=label).observe(duration)
    r = ctx.inbound
    log.info(
        "[%s] Completed request: %s %s in %.3fs, transferred %d bytes",
        ctx.request_id, r.method, r.url.path, duration, ctx.bytes_transferred,
    )


class RelayResponse(Response):
    """ASGI response that relays an open upstream response to the client."""

    def __init__(self, ctx: RelayContext):
        super().__init__(status_code=ctx.upstream_response.status_code)
        self.ctx = ctx
        # Replaces the content-length Response derives from its empty body.
        self.raw_headers = prepare_response_headers(ctx).raw

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        ctx = self.ctx
        sink = ASGIResponseSink(send, buffer_size=CHUNK_SIZE)
        finished = False
        try:
            async with anyio.create_task_group() as tg:

                async def run_relay() -> None:
                    nonlocal finished
                    await relay_body(ctx, sink, self.status_code, self.raw_headers)
                    finished = True
                    tg.cancel_scope.cancel()

                tg.start_soon(run_relay)
                await wait_for_disconnect(receive)
                if not finished:
                    ctx.state = RelayState.FAILED
                    RELAY_FAILURES.labels(target=ctx.target.path_prefix, kind="client_disconnect").inc()
                    log.warning(
                        "[%s] Client disconnected after %d bytes", ctx.request_id, ctx.bytes_transferred
                    )
                tg.cancel_scope.cancel()
        finally:
            with anyio.CancelScope(shield=True):
                await ctx.upstream_response.aclose()
            record_completion(ctx)
