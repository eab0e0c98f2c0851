"""Client-origin extraction for the X-Forwarded-* headers sent upstream."""
from __future__ import annotations

from starlette.requests import Request


def split_host_port(addr: str) -> tuple[str, str]:
    """Split "host:port" or "[v6]:port"; raises ValueError for anything else."""
    if addr.startswith("["):
        host, sep, port = addr[1:].partition("]:")
    else:
        host, sep, port = addr.rpartition(":")
        if ":" in host:
            raise ValueError(f"too many colons in address {addr!r}")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    return host, port


def client_ip(request: Request) -> str:
    """Original client IP: leftmost X-Forwarded-For entry, else the connection peer."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()

    peer = request.scope.get("client")
    if not peer:
        return "unknown"
    if isinstance(peer, str):
        try:
            host, _ = split_host_port(peer)
        except ValueError:
            return peer
        return host
    return str(peer[0])


def scheme(request: Request) -> str:
    proto = request.headers.get("x-forwarded-proto")
    if proto:
        return proto
    return "https" if request.url.scheme == "https" else "http"
