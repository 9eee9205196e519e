"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import logging
from typing import Any, Optional

import redis.asyncio as redis

from ..contracts import EngineEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport):
    """Pushes events onto one Redis list per topic.

    Consumers ``BRPOP`` from ``karigar:<topic>``, so events come out in
    publication order.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"karigar:{topic}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.info(f"Connected to Redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, event: EngineEvent) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue_name(topic), event.to_json())
