"""Hop-by-hop header filtering shared by both legs of the relay."""
from __future__ import annotations

from typing import Iterable

from starlette.datastructures import MutableHeaders

# RFC 9110 hop-by-hop headers (must not be forwarded)
HOP_BY_HOP = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "transfer-encoding", "upgrade",
})


def is_hop_by_hop(name: str) -> bool:
    return name.lower() in HOP_BY_HOP


def filtered_copy(
    destination: MutableHeaders,
    source: Iterable[tuple[str, str]],
    exclude: Iterable[str] = (),
) -> MutableHeaders:
    """Append every (name, value) pair of `source` to `destination`, skipping hop-by-hop names.

    Repeated headers keep all of their values in source order. `source` is only read.
    """
    skip = HOP_BY_HOP | {name.lower() for name in exclude}
    for name, value in source:
        if name.lower() not in skip:
            destination.append(name, value)
    return destination
