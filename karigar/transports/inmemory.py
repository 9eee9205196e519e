"""In-process transport used by tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Dict, List

from ..contracts import EngineEvent
from .base import BaseTransport


class InMemoryTransport(BaseTransport):
    """Keeps published events per topic in publication order."""

    def __init__(self) -> None:
        self._topics: Dict[str, List[EngineEvent]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, event: EngineEvent) -> None:
        async with self._lock:
            self._topics[topic].append(event)

    def pending(self, topic: str) -> List[EngineEvent]:
        """Events published on ``topic`` so far."""
        return list(self._topics[topic])
