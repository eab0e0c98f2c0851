"""Configuration for the API proxy.

Provides an immutable, strongly-typed Settings object assembled once at startup
from built-in defaults, command line flags and environment variables. Request
handling code receives it explicitly and never looks configuration up itself.
"""

from __future__ import annotations

import argparse
import logging
import os
import re
from typing import Iterable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from proxyai.models.schemas import ProxyTarget

log = logging.getLogger("API-Proxy.Config")

DEFAULT_TARGETS: tuple[tuple[str, str], ...] = (
    ("/openai/", "api.openai.com"),
    ("/anthropic/", "api.anthropic.com"),
    ("/gemini/", "generativelanguage.googleapis.com"),
)

ENV_TARGET_PREFIX = "PROXY_TARGET_"

_BARE_SECONDS = re.compile(r"\d+(?:\.\d*)?|\.\d+")
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class Settings(BaseModel):
    """Pydantic settings for the proxy process."""

    model_config = ConfigDict(frozen=True)

    listen_addr: str = ":8080"
    request_timeout_s: float = 60.0
    read_header_timeout_s: float = 10.0
    debug: bool = False
    disable_forwarded_headers: bool = False
    targets: tuple[ProxyTarget, ...] = ()

    @field_validator("request_timeout_s", "read_header_timeout_s")
    @classmethod
    def positive_duration(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("targets")
    @classmethod
    def distinct_prefixes(cls, v: tuple[ProxyTarget, ...]) -> tuple[ProxyTarget, ...]:
        # Nested prefixes would shadow each other's routes.
        prefixes = [t.path_prefix for t in v]
        for i, a in enumerate(prefixes):
            for b in prefixes[i + 1:]:
                if a == b:
                    raise ValueError(f"duplicate path prefix {a}")
                if a.startswith(b) or b.startswith(a):
                    raise ValueError(f"overlapping path prefixes {a} and {b}")
        return v


def parse_duration(value: str) -> float:
    """Parse a Go-style duration ("90s", "1m30s", "500ms") or bare seconds."""
    text = value.strip()
    if not text:
        raise argparse.ArgumentTypeError("invalid duration: empty string")
    if _BARE_SECONDS.fullmatch(text):
        return float(text)
    pos, total = 0, 0.0
    while pos < len(text):
        m = _DURATION_PART.match(text, pos)
        if not m:
            raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    return total


def parse_target(definition: str) -> ProxyTarget | None:
    """Parse a "/prefix/:host" definition; returns None (and warns) if malformed."""
    prefix, sep, host = definition.partition(":")
    if not sep:
        log.warning("Invalid proxy target definition: %s", definition)
        return None
    try:
        return ProxyTarget(path_prefix=prefix, target_host=host)
    except ValidationError as e:
        log.warning("Invalid proxy target definition %s: %s", definition, e)
        return None


def merge_targets(
    base: Sequence[ProxyTarget], overrides: Iterable[ProxyTarget], source: str
) -> list[ProxyTarget]:
    """Merge `overrides` into `base` by path prefix; the last writer wins."""
    merged = list(base)
    for target in overrides:
        for i, existing in enumerate(merged):
            if existing.path_prefix == target.path_prefix:
                merged[i] = target
                log.info("Overriding proxy target for %s: %s", target.path_prefix, target.target_host)
                break
        else:
            merged.append(target)
            log.info("Added proxy target from %s: %s -> %s", source, target.path_prefix, target.target_host)
    return merged


def targets_from_flag(value: str) -> list[ProxyTarget]:
    parsed = (parse_target(d) for d in value.split(",") if d.strip())
    return [t for t in parsed if t is not None]


def targets_from_env(environ: Mapping[str, str]) -> list[ProxyTarget]:
    names = sorted(k for k in environ if k.startswith(ENV_TARGET_PREFIX))
    parsed = (parse_target(environ[k]) for k in names)
    return [t for t in parsed if t is not None]


def _env_flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def build_arg_parser(environ: Mapping[str, str]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="proxyai", description="Multi-API reverse proxy")
    parser.add_argument("--listen", default=environ.get("PROXY_LISTEN", ":8080"), help="Listen address")
    parser.add_argument(
        "--timeout",
        type=parse_duration,
        default=parse_duration(environ.get("PROXY_TIMEOUT", "60s")),
        help="Upstream request timeout",
    )
    parser.add_argument(
        "--header-timeout",
        type=parse_duration,
        default=parse_duration(environ.get("PROXY_HEADER_TIMEOUT", "10s")),
        help="Read header timeout",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=_env_flag(environ, "PROXY_DEBUG"),
        help="Enable debug logging",
    )
    parser.add_argument(
        "--disable-forwarded-headers",
        action="store_true",
        default=_env_flag(environ, "PROXY_DISABLE_FORWARDED_HEADERS"),
        help="Do not add X-Forwarded-For / X-Forwarded-Proto upstream",
    )
    parser.add_argument(
        "--targets",
        default="",
        help="Custom proxy targets in format: /path1/:host1,/path2/:host2",
    )
    return parser


def load_settings(
    argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None
) -> Settings:
    """Load settings from flags and environment variables and return a Settings object."""
    if environ is None:
        environ = os.environ
    try:
        parser = build_arg_parser(environ)
    except argparse.ArgumentTypeError as e:
        raise RuntimeError(f"Invalid configuration: {e}") from e
    args = parser.parse_args(argv)

    targets = [ProxyTarget(path_prefix=p, target_host=h) for p, h in DEFAULT_TARGETS]
    if args.targets:
        targets = merge_targets(targets, targets_from_flag(args.targets), "command line")
    targets = merge_targets(targets, targets_from_env(environ), "environment")

    try:
        return Settings(
            listen_addr=args.listen,
            request_timeout_s=args.timeout,
            read_header_timeout_s=args.header_timeout,
            debug=args.debug,
            disable_forwarded_headers=args.disable_forwarded_headers,
            targets=tuple(targets),
        )
    except ValidationError as e:
        raise RuntimeError(f"Invalid configuration: {e}") from e


def split_listen_addr(addr: str) -> tuple[str, int]:
    """Split ":8080" / "127.0.0.1:9000" / "[::1]:8080" into a uvicorn host and port."""
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise RuntimeError(f"Invalid configuration: bad listen address {addr!r}")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


def log_settings(settings: Settings) -> None:
    log.info("Configuration:")
    log.info("  Listen Address: %s", settings.listen_addr)
    log.info("  Request Timeout: %ss", settings.request_timeout_s)
    log.info("  Read Header Timeout: %ss", settings.read_header_timeout_s)
    log.info("  Debug Mode: %s", settings.debug)
    log.info("  Forwarded Headers: %s", "disabled" if settings.disable_forwarded_headers else "enabled")
    log.info("  Proxy Targets:")
    for target in settings.targets:
        log.info("    %s -> %s", target.path_prefix, target.target_host)
