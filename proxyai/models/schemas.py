"""Pydantic models used by the API proxy."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, field_validator


class ProxyTarget(BaseModel):
    """Maps a path prefix to the upstream host requests under it are sent to."""

    model_config = ConfigDict(frozen=True)

    path_prefix: str
    target_host: str

    @field_validator("path_prefix")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        v = v.strip()
        if not v or v == "/":
            raise ValueError("path prefix must not be empty")
        if not v.startswith("/"):
            v = "/" + v
        if not v.endswith("/"):
            v += "/"
        return v

    @field_validator("target_host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("target host must not be empty")
        if "://" in v or "/" in v:
            raise ValueError(f"target host must be a bare host name, got {v!r}")
        return v
