"""Event transports and the factory that picks one from configuration."""

from __future__ import annotations

import os
from typing import Optional

from ..config import KarigarConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _redis_transport(config: KarigarConfig) -> BaseTransport:
    from .redis import RedisTransport

    settings = config.transport.redis
    return RedisTransport(
        host=settings.host, port=settings.port, db=settings.db, password=settings.password
    )


def get_transport(
    backend: Optional[str] = None, config: Optional[KarigarConfig] = None
) -> BaseTransport:
    """Build the transport named by ``backend``, ``KARIGAR_TRANSPORT`` or the config."""

    config = config or load_config()
    name = (backend or os.getenv("KARIGAR_TRANSPORT") or config.transport.backend).lower()
    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        return _redis_transport(config)
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
