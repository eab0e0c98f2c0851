"""Target resolution: from a prefixed inbound path to the upstream URL."""
from __future__ import annotations

from urllib.parse import quote

from starlette.types import Scope

from proxyai.models.schemas import ProxyTarget

# RFC 3986 pchar plus "/"; "?", "#" and "%" are always escaped
PATH_SAFE = "/:@!$&'()*+,;=-._~"


def request_path(scope: Scope, prefix: str) -> str:
    """Percent-encoded path of the inbound request.

    The client's own encoding (``raw_path``) is kept whenever it still starts
    with `prefix`; otherwise the decoded path is re-encoded.
    """
    raw = scope.get("raw_path")
    if raw:
        path = raw.decode("latin-1").partition("?")[0]
        if path.startswith(prefix):
            return path
    return quote(scope.get("path", "/"), safe=PATH_SAFE)


def resolve(target: ProxyTarget, path: str) -> tuple[str, str]:
    """Return the path after `target.path_prefix` (always rooted) and the upstream host."""
    suffix = path[len(target.path_prefix):] if path.startswith(target.path_prefix) else path
    return (suffix if suffix.startswith("/") else "/" + suffix), target.target_host


def upstream_url(host: str, suffix: str, query: str = "") -> str:
    """Upstreams are always reached over https, whatever scheme the client used.

    `suffix` must already be percent-encoded.
    """
    url = f"https://{host}{suffix}"
    return f"{url}?{query}" if query else url
